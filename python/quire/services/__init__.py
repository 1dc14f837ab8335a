"""Service layer: publish session state machine, flows, dispatch and webhooks."""
