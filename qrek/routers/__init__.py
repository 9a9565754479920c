"""Router exports for the qrek service."""

from qrek.routers import system

__all__ = [
    "system",
]
