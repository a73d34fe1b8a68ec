"""
Connectivity module
Background probing that feeds online/offline transitions to the sync engine
"""
from .monitor import ConnectivityMonitor

__all__ = ['ConnectivityMonitor']
