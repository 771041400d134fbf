"""Durable session-record store implementations."""

from threadrelay.bridge.store.base import SessionStore
from threadrelay.bridge.store.local import JsonSessionStore

__all__ = ["JsonSessionStore", "SessionStore"]
