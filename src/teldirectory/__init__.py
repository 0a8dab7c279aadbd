"""Telephone directory management and sync for Cisco IP Phone XML trees."""

from teldirectory.actions import DirectoryActions, set_directory_root
from teldirectory.auth import CredentialGate, StaticGate
from teldirectory.config import NetworkConfig
from teldirectory.core.store.tree import DirectoryTreeStore
from teldirectory.core.sync.engine import build_plan, reconcile
from teldirectory.models.directory import ExtensionRecord, ItemType, SyncResult

__all__ = [
    "CredentialGate",
    "DirectoryActions",
    "DirectoryTreeStore",
    "ExtensionRecord",
    "ItemType",
    "NetworkConfig",
    "StaticGate",
    "SyncResult",
    "build_plan",
    "reconcile",
    "set_directory_root",
]
