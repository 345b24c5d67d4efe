"""FastAPI application and routes."""

from workflow_deployer.api.app import create_app
from workflow_deployer.api.routes import router

__all__ = ["create_app", "router"]
