"""
PersistentVolumeClaim validation.

Instance storage claims are created and managed by the operator and the
cluster's volume controllers only. Anyone else may not create, modify or
delete a claim carrying the instance storage label, nor add the label to
an existing claim.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from vm_operator.constants import INSTANCE_STORAGE_LABEL_KEY, REQUESTED_TOPOLOGY_ANNOTATION_KEY, ZONE_LABEL_KEY
from vm_operator.errors import NotFoundError
from vm_operator.models import Zone
from vm_operator.webhooks.common import (
    CREATE,
    DELETE,
    UPDATE,
    AdmissionRequest,
    AdmissionResponse,
    PrivilegedAccounts,
    Validator,
    allowed,
    annotations_of,
    build_validation_response,
    field_forbidden,
    field_invalid,
    label_path,
    labels_of,
)

logger = logging.getLogger(__name__)

OPERATION_NOT_ALLOWED_ON_PVC = "%s operation on PVC with instance storage label is not allowed"
ADDING_IS_LABEL_NOT_ALLOWED = "adding instance storage label is not allowed"
INVALID_ZONE = "cannot use zone that is being deleted"

ANNOTATION_PATH = "metadata.annotation"

# Kubernetes controllers that bind, protect and garbage collect claims
PVC_SYSTEM_ACCOUNTS = frozenset({
    "system:serviceaccount:kube-system:persistent-volume-binder",
    "system:serviceaccount:kube-system:pvc-protection-controller",
    "system:serviceaccount:kube-system:generic-garbage-collector",
    "system:serviceaccount:kube-system:namespace-controller",
    "system:serviceaccount:vmware-system-csi:vsphere-csi-controller",
})


def has_instance_storage_label(obj: Optional[Dict[str, Any]]) -> bool:
    return INSTANCE_STORAGE_LABEL_KEY in labels_of(obj)


def requested_topologies(obj: Dict[str, Any]) -> Optional[List[Dict[str, str]]]:
    """Parse the requested topology annotation; None when absent."""
    raw = annotations_of(obj).get(REQUESTED_TOPOLOGY_ANNOTATION_KEY)
    if not raw:
        return None
    metadata = obj.get("metadata") or {}
    try:
        topologies = json.loads(raw)
    except ValueError as e:
        raise ValueError(
            f'failed to parse annotation: "{REQUESTED_TOPOLOGY_ANNOTATION_KEY}" value {raw} from the claim: '
            f'"{metadata.get("name", "")}", namespace: "{metadata.get("namespace", "")}". err: {e}'
        )
    if not isinstance(topologies, list) or not all(isinstance(t, dict) for t in topologies):
        raise ValueError(f'annotation "{REQUESTED_TOPOLOGY_ANNOTATION_KEY}" must be a list of objects')
    return topologies


class PersistentVolumeClaimValidator(Validator):
    kind = "PersistentVolumeClaim"

    def __init__(self, store, privileged: PrivilegedAccounts, workload_domain_isolation: bool = False):
        self.store = store
        self.privileged = privileged
        self.workload_domain_isolation = workload_domain_isolation

    @classmethod
    def from_config(cls, store, privileged: PrivilegedAccounts, config) -> "PersistentVolumeClaimValidator":
        return cls(store, privileged, workload_domain_isolation=config.workload_domain_isolation_enabled)

    def _is_privileged(self, request: AdmissionRequest) -> bool:
        return self.privileged.is_privileged(request) or request.user_info.username in PVC_SYSTEM_ACCOUNTS

    def validate_create(self, request: AdmissionRequest) -> AdmissionResponse:
        if self._is_privileged(request):
            return allowed(request)

        reasons = []
        if has_instance_storage_label(request.object):
            reasons.append(field_forbidden(label_path(INSTANCE_STORAGE_LABEL_KEY), OPERATION_NOT_ALLOWED_ON_PVC % CREATE))
        if self.workload_domain_isolation:
            reasons.extend(self.validate_zone(request.object or {}))
        return build_validation_response(request, reasons)

    def validate_update(self, request: AdmissionRequest) -> AdmissionResponse:
        if self._is_privileged(request):
            return allowed(request)

        reasons = []
        # Immutable once present, whatever the new value
        if has_instance_storage_label(request.old_object):
            reasons.append(field_forbidden(label_path(INSTANCE_STORAGE_LABEL_KEY), OPERATION_NOT_ALLOWED_ON_PVC % UPDATE))
        elif has_instance_storage_label(request.object):
            reasons.append(field_forbidden(label_path(INSTANCE_STORAGE_LABEL_KEY), ADDING_IS_LABEL_NOT_ALLOWED))
        return build_validation_response(request, reasons)

    def validate_delete(self, request: AdmissionRequest) -> AdmissionResponse:
        if self._is_privileged(request):
            return allowed(request)

        reasons = []
        if has_instance_storage_label(request.current):
            reasons.append(field_forbidden(label_path(INSTANCE_STORAGE_LABEL_KEY), OPERATION_NOT_ALLOWED_ON_PVC % DELETE))
        return build_validation_response(request, reasons)

    def validate_zone(self, obj: Dict[str, Any]) -> List[str]:
        """Deny requested topologies naming a zone that is missing or being deleted."""
        metadata = obj.get("metadata") or {}
        name = metadata.get("name", "")
        try:
            topologies = requested_topologies(obj)
        except ValueError as e:
            return [field_invalid(ANNOTATION_PATH, json.dumps(metadata.get("annotations") or {}), str(e))]
        if not topologies:
            return []

        for topology in topologies:
            zone_name = topology.get(ZONE_LABEL_KEY)
            if not zone_name:
                continue
            try:
                zone = self.store.get(Zone.kind, metadata.get("namespace"), zone_name)
            except NotFoundError as e:
                return [field_invalid(ANNOTATION_PATH, name, e.message)]
            if zone.is_deleting:
                logger.info(f"Denying claim {metadata.get('namespace')}/{name}: zone {zone_name} is being deleted")
                return [field_invalid(ANNOTATION_PATH, name, INVALID_ZONE)]
        return []
