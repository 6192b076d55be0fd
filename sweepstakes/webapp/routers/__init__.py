"""
FastAPI routers of the sweepstakes API.
"""

from .promos import router as promos_router
from .entries import router as entries_router
from .webhooks import router as webhooks_router
from .winners import router as winners_router
from .stores import router as stores_router

__all__ = ['promos_router', 'entries_router', 'webhooks_router', 'winners_router', 'stores_router']
