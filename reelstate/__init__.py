"""Top-level package exposing the ReelState FastAPI app."""

from __future__ import annotations

from app.main import app, create_app

__all__ = ["app", "create_app", "__version__"]

__version__ = "1.0.0"
