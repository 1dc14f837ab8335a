"""HTTP API package: dependencies and routers."""
