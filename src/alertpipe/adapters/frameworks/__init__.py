"""Framework adapters (ASGI, WSGI, FastAPI)."""
