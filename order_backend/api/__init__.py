"""FastAPI application and routes."""
from .dependencies import Services, build_services
from .main import create_app

__all__ = ["Services", "build_services", "create_app"]
