"""
VirtualMachine validation.

- The zone label may only name an existing zone that is not being deleted,
  and once set it may not be changed or removed.
- Instance storage volumes are added by the operator; users may not add,
  change or remove them.
"""

import logging
from typing import Any, Dict, List, Optional

from vm_operator.constants import ZONE_LABEL_KEY
from vm_operator.errors import NotFoundError
from vm_operator.models import Zone
from vm_operator.utils import get_path
from vm_operator.webhooks.common import (
    AdmissionRequest,
    AdmissionResponse,
    PrivilegedAccounts,
    Validator,
    allowed,
    build_validation_response,
    field_forbidden,
    field_invalid,
    field_not_found,
    label_path,
    labels_of,
)

logger = logging.getLogger(__name__)

FIELD_IMMUTABLE = "field is immutable"
ZONE_BEING_DELETED = "cannot use zone %s that is being deleted"
INSTANCE_STORAGE_VOLUMES_NOT_ALLOWED = "adding, modifying or removing instance storage volumes is not allowed"

VOLUMES_PATH = "spec.volumes"


def instance_storage_volumes(obj: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    volumes = get_path(obj, VOLUMES_PATH) or []
    return [
        v for v in volumes
        if isinstance(v, dict) and get_path(v, "persistent_volume_claim.instance_volume_claim") is not None
    ]


class VirtualMachineValidator(Validator):
    kind = "VirtualMachine"

    def __init__(self, store, privileged: PrivilegedAccounts):
        self.store = store
        self.privileged = privileged

    def validate_create(self, request: AdmissionRequest) -> AdmissionResponse:
        obj = request.object or {}
        reasons = self._validate_zone(request, obj)
        if not self.privileged.is_privileged(request) and instance_storage_volumes(obj):
            reasons.append(field_forbidden(VOLUMES_PATH, INSTANCE_STORAGE_VOLUMES_NOT_ALLOWED))
        return build_validation_response(request, reasons)

    def validate_update(self, request: AdmissionRequest) -> AdmissionResponse:
        if self.privileged.is_privileged(request):
            return allowed(request)

        obj = request.object or {}
        old_obj = request.old_object or {}
        reasons = []

        old_zone = labels_of(old_obj).get(ZONE_LABEL_KEY)
        new_zone = labels_of(obj).get(ZONE_LABEL_KEY)
        if old_zone and new_zone != old_zone:
            reasons.append(field_forbidden(label_path(ZONE_LABEL_KEY), FIELD_IMMUTABLE))
        elif new_zone and not old_zone:
            reasons.extend(self._validate_zone(request, obj))

        if instance_storage_volumes(obj) != instance_storage_volumes(old_obj):
            reasons.append(field_forbidden(VOLUMES_PATH, INSTANCE_STORAGE_VOLUMES_NOT_ALLOWED))
        return build_validation_response(request, reasons)

    def _validate_zone(self, request: AdmissionRequest, obj: Dict[str, Any]) -> List[str]:
        zone_name = labels_of(obj).get(ZONE_LABEL_KEY)
        if not zone_name:
            return []
        namespace = request.namespace or get_path(obj, "metadata.namespace")
        try:
            zone = self.store.get(Zone.kind, namespace, zone_name)
        except NotFoundError:
            return [field_not_found(label_path(ZONE_LABEL_KEY), zone_name)]
        if zone.is_deleting:
            logger.info(f"Denying VM {namespace}/{request.name}: zone {zone_name} is being deleted")
            return [field_invalid(label_path(ZONE_LABEL_KEY), zone_name, ZONE_BEING_DELETED % zone_name)]
        return []
