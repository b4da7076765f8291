"""
Canonical audit actions written to the audit log.
"""

ACTION_MEMORY_CREATED = "create"
ACTION_MEMORY_UPDATED = "update"
ACTION_MEMORY_DELETED = "delete"
ACTION_MEMORY_TRIGGERED = "trigger"

__all__ = [
    "ACTION_MEMORY_CREATED",
    "ACTION_MEMORY_UPDATED",
    "ACTION_MEMORY_DELETED",
    "ACTION_MEMORY_TRIGGERED",
]
