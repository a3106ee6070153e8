"""
VM Operator error taxonomy.

Every failure raised out of a reconcile is a VMOperatorError carrying a
``retriable`` flag so the controller can decide between requeue with
backoff and recording a terminal condition.
"""

from typing import Optional


class VMOperatorError(Exception):
    """Base exception for VM Operator"""

    retriable = True
    reason = "Error"

    def __init__(self, message: str, reason: Optional[str] = None):
        self.message = message
        if reason:
            self.reason = reason
        super().__init__(self.message)


class TerminalError(VMOperatorError):
    """User input or configuration error; not retried on the same generation"""

    retriable = False
    reason = "InvalidSpec"


# ---------------------------------------------------------------------------
# Store errors
# ---------------------------------------------------------------------------

class NotFoundError(VMOperatorError):
    """Object does not exist in the store"""

    reason = "NotFound"

    def __init__(self, kind: str, namespace: Optional[str], name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        key = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {key} not found")


class ConflictError(VMOperatorError):
    """Update rejected because the stored resourceVersion moved on"""

    reason = "Conflict"


# ---------------------------------------------------------------------------
# Remote (vSphere) errors
# ---------------------------------------------------------------------------

class RemoteNotFound(VMOperatorError):
    """Managed object no longer exists on vCenter"""

    reason = "RemoteNotFound"


class OperationTimeout(VMOperatorError):
    """A vCenter call did not finish within its time budget"""

    reason = "Timeout"


class TransientRemoteError(VMOperatorError):
    """Recoverable vCenter fault (busy host, session expired, ...)"""

    reason = "RemoteError"


class RemoteFault(TerminalError):
    """Non-recoverable vCenter fault (permissions, licensing, ...)"""

    reason = "RemoteFault"


class ReconcileCancelled(VMOperatorError):
    """Reconcile observed cancellation or its deadline at a call boundary"""

    reason = "Cancelled"


# ---------------------------------------------------------------------------
# Reconcile errors
# ---------------------------------------------------------------------------

class PlacementFailed(VMOperatorError):
    reason = "PlacementFailed"


class InstanceStorageNotReady(VMOperatorError):
    reason = "InstanceStorageNotReady"


class VolumeNotReady(VMOperatorError):
    reason = "VolumeNotReady"


class StorageClassRequired(TerminalError):
    reason = "StorageClassRequired"

    def __init__(self):
        super().__init__("storage class is required but not specified")


class InvalidClassConfig(TerminalError):
    reason = "InvalidClassConfig"


class UnknownStorageClass(TerminalError):
    reason = "UnknownStorageClass"

    def __init__(self, storage_class: str):
        self.storage_class = storage_class
        super().__init__(f"storage policy ID for storage class {storage_class} not found")


class ReferenceNotFound(TerminalError):
    reason = "ReferenceNotFound"


class ClusterModuleNotFound(TerminalError):
    reason = "ClusterModuleNotFound"

    def __init__(self, group_name: str):
        self.group_name = group_name
        super().__init__(f"ClusterModule {group_name} not found")


class ZoneUnavailable(TerminalError):
    reason = "ZoneUnavailable"

    def __init__(self, zone_name: str):
        self.zone_name = zone_name
        super().__init__(f"cannot use zone {zone_name} that is being deleted")


def is_retriable(error: Exception) -> bool:
    """Anything that is not a VMOperatorError is treated as transient."""
    if isinstance(error, VMOperatorError):
        return error.retriable
    return True
