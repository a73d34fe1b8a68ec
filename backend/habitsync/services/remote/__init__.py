"""
Remote service module
Contract and Supabase implementation of the remote habit store
"""
from .base import RemoteService, ConnectivityChannel, ConnectivityListener
from .supabase_service import SupabaseRemoteService

__all__ = ['RemoteService', 'ConnectivityChannel', 'ConnectivityListener', 'SupabaseRemoteService']
