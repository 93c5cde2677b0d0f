"""Incremental per-account synchronization"""
from .coordinator import AccountSyncResult, AccountView, SyncAllResult, SyncCoordinator, SyncState

__all__ = ['AccountSyncResult', 'AccountView', 'SyncAllResult', 'SyncCoordinator', 'SyncState']
