# routers/__init__.py
from .payments import router as payments_router, get_orchestrator

__all__ = ["payments_router", "get_orchestrator"]
