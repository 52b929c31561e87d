"""
asgi.py -- ASGI entry point for learngate.

Kept separate from api/main.py so process managers have one stable import
path regardless of how the API package is organized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
