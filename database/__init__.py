"""
Database layer — Redis-backed state shared by the gatekeeper.

Components:
  - ConnectionManager: command + subscriber connections, one per process
  - PermissionStore: typed access to ``user:<id>:permissions`` records

Quick start:
  from database import ConnectionManager, PermissionStore
  connections = ConnectionManager("redis://localhost:6379")
  store = PermissionStore(connections.commands)
  keys = await store.scan_keys()
"""
from database.connection import (
    ConnectionManager, get_connection_manager, reset_connection_manager,
)
from database.permissions import (
    PermissionStore, PERMISSION_KEY_PATTERN, permission_key, user_id_from_key,
)

__all__ = [
    # Connections
    "ConnectionManager", "get_connection_manager", "reset_connection_manager",
    # Permission records
    "PermissionStore", "PERMISSION_KEY_PATTERN", "permission_key", "user_id_from_key",
]
