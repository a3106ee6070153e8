"""
Match conditions for VirtualMachine admission.

A validator guarded by match conditions only runs when one of them holds
for the request; otherwise the request is allowed without evaluating the
validator body. Each condition is a pure predicate over the new and old
object, mirroring the CEL expressions of a webhook configuration.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from vm_operator.utils import get_path, has_path
from vm_operator.webhooks.common import CREATE, UPDATE, AdmissionRequest

BOOT_DISK_CAPACITY_PATH = "spec.advanced_options.boot_disk_capacity"
IMAGE_PATH = "spec.image_name"

Object = Optional[Dict[str, Any]]


@dataclass(frozen=True)
class MatchCondition:
    """A named predicate applying to one admission operation"""
    name: str
    operation: str
    expression: Callable[[Object, Object], bool]


def has_image(obj: Object, old_obj: Object) -> bool:
    # has(object.spec.image)
    return has_path(obj, IMAGE_PATH)


def boot_disk_changed(obj: Object, old_obj: Object) -> bool:
    # The new object sets a boot disk capacity the old one did not have, or a different one
    if not has_path(obj, BOOT_DISK_CAPACITY_PATH):
        return False
    if not has_path(old_obj, BOOT_DISK_CAPACITY_PATH):
        return True
    return get_path(obj, BOOT_DISK_CAPACITY_PATH) != get_path(old_obj, BOOT_DISK_CAPACITY_PATH)


STORAGE_QUOTA_CONDITIONS = (
    MatchCondition("has-image", CREATE, has_image),
    MatchCondition("boot-disk-change", UPDATE, boot_disk_changed),
)


def first_match(conditions: Iterable[MatchCondition], request: AdmissionRequest) -> Optional[str]:
    """Name of the first condition holding for ``request``, or None."""
    for condition in conditions:
        if condition.operation != request.operation:
            continue
        if condition.expression(request.object, request.old_object):
            return condition.name
    return None
