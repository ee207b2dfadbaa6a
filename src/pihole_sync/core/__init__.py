"""Pi-hole API client and per-endpoint session management."""

from .async_utils import run_sync
from .client import PiHoleClient
from .session import SessionManager

__all__ = ["PiHoleClient", "SessionManager", "run_sync"]
