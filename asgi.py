"""
asgi.py -- ASGI entry point for the MoveX auth service.

The application is assembled in api/main.py; this module only exposes it
under the name process managers expect.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
