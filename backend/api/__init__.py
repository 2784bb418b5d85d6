from .maintenance import router as maintenance_router

__all__ = ["maintenance_router"]
