"""
asgi.py -- ASGI entry point for AuthGate.

api/main.py owns the app; this module only re-exports it so process managers
have a short, stable import path.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app

__all__ = ["app"]
