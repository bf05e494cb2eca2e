"""SC Engine - API Routers"""
from .allocation import router as allocation_router
from .dao import router as dao_router
from .federation import router as federation_router
from .scheduler import router as scheduler_router
from .wallets import router as wallets_router

__all__ = [
    "allocation_router",
    "dao_router",
    "federation_router",
    "scheduler_router",
    "wallets_router",
]
