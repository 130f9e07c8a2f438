"""
asgi.py -- ASGI entry point for AdminGate.

Kept separate from api/main.py so process managers have one stable import
path regardless of how the api/ package is organised internally.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --workers 4 --proxy-headers   (with RATE_LIMIT_STORAGE_URI=redis://...)
"""

from api.main import app

__all__ = ["app"]
