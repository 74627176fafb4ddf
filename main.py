"""ASGI entry point: ``uvicorn main:app``."""
from msupgrade.api import create_app

app = create_app()
