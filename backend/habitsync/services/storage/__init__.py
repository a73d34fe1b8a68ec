"""
Storage module
Local key/value stores backing the offline cache and sync queue
"""
from .local_store import LocalStore, InMemoryStore, JsonFileStore

__all__ = ['LocalStore', 'InMemoryStore', 'JsonFileStore']
