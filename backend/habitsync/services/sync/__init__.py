"""
Sync module
Offline-first engine, its pure state transitions, the pending-mutation queue
and the per-user engine registry
"""
from . import state
from .engine import SyncEngine
from .registry import SyncEngineRegistry
from .state import CacheSnapshot

__all__ = ['state', 'SyncEngine', 'SyncEngineRegistry', 'CacheSnapshot']
