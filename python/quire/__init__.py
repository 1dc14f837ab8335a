"""Quire publish service.

Tracks book publishing runs from the moment a user asks for an export until
the CI workflow reports a result.
"""

__version__ = "0.1.0"
