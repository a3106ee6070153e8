"""
Storage quota validation for VirtualMachines.

Runs only when a match condition holds (a new VM from an image, or a
changed boot disk capacity). Denies the request when the boot disk growth
exceeds what is left of the namespace's StorageQuota for the VM's storage
class. Shrinking is never denied.
"""

import logging
from typing import Optional

from vm_operator.models import StorageQuota
from vm_operator.utils import format_quantity, get_path, parse_quantity
from vm_operator.webhooks.common import (
    CREATE,
    AdmissionRequest,
    AdmissionResponse,
    Validator,
    allowed,
    build_validation_response,
    errored,
    field_forbidden,
)
from vm_operator.webhooks.matchconditions import BOOT_DISK_CAPACITY_PATH, STORAGE_QUOTA_CONDITIONS, first_match

logger = logging.getLogger(__name__)

INSUFFICIENT_QUOTA = "insufficient quota for storage class %s: requested %s, remaining %s"


def _capacity(obj) -> Optional[int]:
    value = get_path(obj, BOOT_DISK_CAPACITY_PATH)
    if value is None:
        return None
    return parse_quantity(value)


class StorageQuotaValidator(Validator):
    kind = "VirtualMachine"

    def __init__(self, store, conditions=STORAGE_QUOTA_CONDITIONS):
        self.store = store
        self.conditions = conditions

    def validate(self, request: AdmissionRequest) -> AdmissionResponse:
        matched = first_match(self.conditions, request)
        if matched is None:
            return allowed(request)
        logger.debug(f"Storage quota check for {request.namespace}/{request.name} matched {matched}")
        return super().validate(request)

    def validate_create(self, request: AdmissionRequest) -> AdmissionResponse:
        return self._check_growth(request)

    def validate_update(self, request: AdmissionRequest) -> AdmissionResponse:
        return self._check_growth(request)

    def _check_growth(self, request: AdmissionRequest) -> AdmissionResponse:
        obj = request.object or {}
        storage_class = get_path(obj, "spec.storage_class")
        if not storage_class:
            return allowed(request)

        try:
            requested = _capacity(obj)
            previous = None if request.operation == CREATE else _capacity(request.old_object)
        except ValueError as e:
            return errored(request, 400, str(e))
        if requested is None:
            return allowed(request)

        growth = requested - (previous or 0)
        if growth <= 0:
            return allowed(request)

        namespace = request.namespace or get_path(obj, "metadata.namespace")
        quotas = [q for q in self.store.list(StorageQuota.kind, namespace=namespace)
                  if q.spec.storage_class == storage_class]
        if not quotas:
            return allowed(request)

        remaining = min(q.spec.hard - q.status.used for q in quotas)
        if growth <= remaining:
            return allowed(request)

        logger.info(f"Denying VM {namespace}/{request.name}: boot disk growth {growth} exceeds "
                    f"remaining quota {remaining} of storage class {storage_class}")
        detail = INSUFFICIENT_QUOTA % (storage_class, format_quantity(growth), format_quantity(max(remaining, 0)))
        return build_validation_response(request, [field_forbidden(BOOT_DISK_CAPACITY_PATH, detail)])
