"""
Deployment entrypoint.
Builds the FastAPI app from server.py so uvicorn can find it as main:app
"""

from server import create_app

app = create_app()

__all__ = ["app"]
