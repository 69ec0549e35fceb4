"""
Persistence layer for the Automation Service.
"""

from .base import AutomationStore
from .memory import InMemoryStore

__all__ = ["AutomationStore", "InMemoryStore"]
