"""HTTP surface: billing API routes, session auth and webhook endpoints."""

from soloai.api.server import create_app, main, run_server

__all__ = ["create_app", "main", "run_server"]
