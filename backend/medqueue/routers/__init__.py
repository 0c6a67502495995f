"""Routers package for MedQueue API."""

from .doctors import router as doctors_router
from .queue import router as queue_router
from .shifts import router as shifts_router

__all__ = [
    "doctors_router",
    "queue_router",
    "shifts_router"
]
