"""
asgi.py -- ASGI entry point for the E-QMS API.

Settings are read from the environment once, here, when the module is imported.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app

app = create_app()
