"""Sync Engine package."""

from .engine import AccountResult, FolderResult, SyncEngine, SyncOptions, SyncSummary

__all__ = ["AccountResult", "FolderResult", "SyncEngine", "SyncOptions", "SyncSummary"]
