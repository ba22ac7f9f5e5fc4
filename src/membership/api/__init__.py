"""aiohttp HTTP API."""

from membership.api.server import create_app, run_server

__all__ = ["create_app", "run_server"]
