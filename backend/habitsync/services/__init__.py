"""
Business logic services
"""
from . import habits
from . import storage
from . import remote
from . import connectivity
from . import sync

__all__ = [
    'habits',
    'storage',
    'remote',
    'connectivity',
    'sync'
]
