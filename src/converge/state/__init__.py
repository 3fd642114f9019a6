"""State management module for tracking applied resources."""

from .manager import StateManager
from .models import State, StateRecord

__all__ = [
    "State",
    "StateRecord",
    "StateManager",
]
