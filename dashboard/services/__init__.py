"""
Dashboard business logic services.
"""
from .sessions import SessionRegistry

__all__ = ["SessionRegistry"]
