"""
vCenter Fault Mapping

Maps vCenter/vmodl fault types to operator errors so a reconcile can tell
a retriable hiccup from a problem that needs a user to fix something.
"""

import re
import socket
from typing import Any, Dict, Optional, Tuple

import requests

from vm_operator.errors import (
    OperationTimeout,
    RemoteFault,
    RemoteNotFound,
    TransientRemoteError,
    VMOperatorError,
)

VCENTER_FAULTS: Dict[str, Dict[str, Any]] = {
    'vmodl.fault.ManagedObjectNotFound': {
        'title': 'Object Not Found',
        'message': 'The managed object no longer exists in vCenter.',
        'is_recoverable': True,
        'not_found': True,
    },
    'vim.fault.NotFound': {
        'title': 'Object Not Found',
        'message': 'The referenced object was not found in vCenter.',
        'is_recoverable': True,
        'not_found': True,
    },
    'vim.fault.Timedout': {
        'title': 'Operation Timeout',
        'message': 'The vCenter operation timed out. DRS may be busy or resources constrained.',
        'is_recoverable': True,
        'timeout': True,
    },
    'vmodl.fault.RequestCanceled': {
        'title': 'Task Cancelled',
        'message': 'The task was cancelled by a user in vCenter.',
        'is_recoverable': True,
    },
    'vim.fault.InvalidState': {
        'title': 'Invalid State',
        'message': 'The object is in an invalid state for this operation.',
        'is_recoverable': True,
    },
    'vim.fault.InvalidPowerState': {
        'title': 'Invalid Power State',
        'message': 'The VM power state does not allow this operation.',
        'is_recoverable': True,
    },
    'vim.fault.TaskInProgress': {
        'title': 'Task In Progress',
        'message': 'Another task is already running against this object.',
        'is_recoverable': True,
    },
    'vim.fault.NotAuthenticated': {
        'title': 'Session Expired',
        'message': 'The vCenter session is no longer authenticated.',
        'is_recoverable': True,
    },
    'vim.fault.InsufficientResourcesFault': {
        'title': 'Insufficient Resources',
        'message': 'Not enough CPU, memory or storage capacity for this operation.',
        'is_recoverable': True,
    },
    'vim.fault.VmConfigFault': {
        'title': 'VM Configuration Issue',
        'message': 'A VM configuration prevents this operation.',
        'is_recoverable': True,
    },
    'vim.fault.DuplicateName': {
        'title': 'Duplicate Name',
        'message': 'An object with this name already exists in the target folder.',
        'is_recoverable': True,
    },
    'vim.fault.NotEnoughLicenses': {
        'title': 'License Issue',
        'message': 'Insufficient vCenter/ESXi licenses for this operation.',
        'is_recoverable': False,
    },
    'vim.fault.InvalidLogin': {
        'title': 'Authentication Failed',
        'message': 'Invalid credentials for vCenter connection.',
        'is_recoverable': False,
    },
    'vim.fault.NoPermission': {
        'title': 'Permission Denied',
        'message': 'Insufficient permissions to perform this operation.',
        'is_recoverable': False,
    },
    'vim.fault.NotSupported': {
        'title': 'Operation Not Supported',
        'message': 'This operation is not supported on the target host or cluster.',
        'is_recoverable': False,
    },
    'vmodl.fault.InvalidArgument': {
        'title': 'Invalid Argument',
        'message': 'vCenter rejected an argument of the request.',
        'is_recoverable': False,
    },
}

_MSG_RE = re.compile(r"msg\s*=\s*'([^']+)'")


def parse_fault(error: Exception) -> Tuple[str, Optional[Dict[str, Any]]]:
    """
    Parse a vCenter exception.

    Returns:
        Tuple of (message, fault_info or None when the fault is not in the table)
    """
    error_str = str(error)
    error_type = type(error).__name__
    msg_match = _MSG_RE.search(error_str)
    actual_msg = msg_match.group(1) if msg_match else getattr(error, 'msg', None)

    for fault_type, info in VCENTER_FAULTS.items():
        if fault_type in error_type or fault_type in error_str:
            return actual_msg or info['message'], dict(info, fault_type=fault_type)

    return actual_msg or error_str, None


def classify_fault(error: Exception, action: str) -> VMOperatorError:
    """Turn a pyVmomi (or transport) exception into an operator error."""
    if isinstance(error, VMOperatorError):
        return error
    if isinstance(error, (socket.timeout, requests.Timeout)):
        return OperationTimeout(f"{action}: timed out ({error})")

    message, info = parse_fault(error)
    text = f"{action}: {message}"
    if info is None:
        # Unknown faults and socket level failures get another try
        return TransientRemoteError(text)
    if info.get('not_found'):
        return RemoteNotFound(text)
    if info.get('timeout'):
        return OperationTimeout(text)
    if info['is_recoverable']:
        return TransientRemoteError(text, reason=info['title'].replace(' ', ''))
    return RemoteFault(f"{info['title']}: {text}")
