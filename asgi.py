"""
asgi.py -- ASGI entry point for SessionWarden.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Kept separate from api/main.py so process managers have one stable import
path regardless of how the api/ package is laid out internally.
"""

from api.main import app

__all__ = ["app"]
