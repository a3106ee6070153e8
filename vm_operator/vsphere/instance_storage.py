"""
Instance storage gate.

A VM whose class declares instance storage gets one claim-backed volume
per class template. The claims are bound by the external volume
controller to the host chosen at placement; until that has happened and
every claim reports attached, the VM may not be created or powered on.

    Unconfigured -> Claimed -> Pending -> Ready
"""

import logging
from enum import Enum
from typing import Iterable, List, Optional, Type

from vm_operator.constants import (
    CLAIM_SELECTED_NODE_ANNOTATION_KEY,
    INSTANCE_STORAGE_LABEL_KEY,
    INSTANCE_STORAGE_PVC_NAME_PREFIX,
    INSTANCE_STORAGE_PVCS_BOUND_ANNOTATION_KEY,
    INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY,
    INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY,
)
from vm_operator.errors import (
    ConflictError,
    InstanceStorageNotReady,
    NotFoundError,
    VMOperatorError,
    VolumeNotReady,
)
from vm_operator.models import (
    InstanceStorage,
    InstanceVolumeClaim,
    ObjectMeta,
    PersistentVolumeClaimSource,
    StorageClaim,
    StorageClaimSpec,
    VirtualMachine,
    Volume,
    VolumeStatus,
)

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5


class GateState(str, Enum):
    UNCONFIGURED = "Unconfigured"
    CLAIMED = "Claimed"
    PENDING = "Pending"
    READY = "Ready"


def is_configured(vm: VirtualMachine) -> bool:
    return bool(vm.instance_storage_volumes)


def claim_name(vm_name: str, index: int) -> str:
    return f"{INSTANCE_STORAGE_PVC_NAME_PREFIX}{vm_name}-{index}"


def volumes_for_class(vm_name: str, instance_storage: InstanceStorage) -> List[Volume]:
    """Volume entries for the class's instance storage templates, in template order."""
    volumes = []
    for index, template in enumerate(instance_storage.volumes):
        name = claim_name(vm_name, index)
        volumes.append(Volume(
            name=name,
            persistent_volume_claim=PersistentVolumeClaimSource(
                claim_name=name,
                instance_volume_claim=InstanceVolumeClaim(
                    storage_class=instance_storage.storage_class,
                    size=template.size,
                ),
            ),
        ))
    return volumes


def verify_attached(volumes: Iterable[Volume], statuses: List[VolumeStatus],
                    error_cls: Type[VMOperatorError] = VolumeNotReady):
    """
    Raise ``error_cls`` for the first volume that is not attached.

    Status entries are matched to volumes by name.
    """
    by_name = {status.name: status for status in statuses}
    for volume in volumes:
        status = by_name.get(volume.name)
        if status is None or (not status.attached and not status.error):
            raise error_cls(f"status update pending for persistent volume: {volume.name} on VM")
        if not status.attached:
            raise error_cls(f"persistent volume: {volume.name} not attached to VM")


class InstanceStorageGate:
    """Creates and tracks the storage claims backing a VM's instance storage."""

    def __init__(self, store):
        self.store = store

    def _update_vm(self, vm: VirtualMachine, mutate) -> VirtualMachine:
        """Apply ``mutate`` to a fresh copy of the VM and store it, retrying on conflict."""
        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = self.store.get(VirtualMachine.kind, vm.namespace, vm.name)
            if not mutate(current):
                return current
            try:
                return self.store.update(current)
            except ConflictError:
                logger.debug(f"Conflict updating VM {vm.namespace}/{vm.name}, re-reading")
        raise ConflictError(f"could not update VM {vm.namespace}/{vm.name}")

    def ensure_volumes(self, vm: VirtualMachine, instance_storage: InstanceStorage) -> VirtualMachine:
        """Unconfigured -> Claimed, part one: add the class's volume entries to the VM spec."""
        if not instance_storage.volumes or is_configured(vm):
            return vm

        def add_volumes(current: VirtualMachine) -> bool:
            if is_configured(current):
                return False
            current.spec.volumes.extend(volumes_for_class(current.name, instance_storage))
            return True

        logger.info(f"Adding {len(instance_storage.volumes)} instance storage volume(s) to VM {vm.namespace}/{vm.name}")
        return self._update_vm(vm, add_volumes)

    def ensure_claims(self, vm: VirtualMachine, host_name: str, host_moid: str) -> VirtualMachine:
        """
        Unconfigured -> Claimed, part two: create a StorageClaim per instance
        storage volume and annotate the VM with the selected node.

        The selected node is recorded once; an existing annotation wins.
        """
        def annotate(current: VirtualMachine) -> bool:
            annotations = current.metadata.annotations
            if annotations.get(INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY):
                return False
            annotations[INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY] = host_name
            annotations[INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY] = host_moid
            return True

        vm = self._update_vm(vm, annotate)
        selected_node = vm.metadata.annotations[INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY]

        for volume in vm.instance_storage_volumes:
            self._ensure_claim(vm, volume, selected_node)
        return vm

    def _ensure_claim(self, vm: VirtualMachine, volume: Volume, selected_node: str):
        source = volume.persistent_volume_claim
        try:
            self.store.get(StorageClaim.kind, vm.namespace, source.claim_name)
            return
        except NotFoundError:
            pass

        claim = StorageClaim(
            metadata=ObjectMeta(
                name=source.claim_name,
                namespace=vm.namespace,
                labels={INSTANCE_STORAGE_LABEL_KEY: "true"},
                annotations={CLAIM_SELECTED_NODE_ANNOTATION_KEY: selected_node},
            ),
            spec=StorageClaimSpec(
                storage_class=source.instance_volume_claim.storage_class,
                size=source.instance_volume_claim.size,
                vm_name=vm.name,
            ),
        )
        try:
            self.store.create(claim)
            logger.info(f"Created instance storage claim {vm.namespace}/{claim.name} on node {selected_node}")
        except ConflictError:
            logger.debug(f"Instance storage claim {vm.namespace}/{claim.name} already exists")

    def volume_statuses(self, vm: VirtualMachine, volumes: Optional[Iterable[Volume]] = None) -> List[VolumeStatus]:
        """
        Attachment status of the VM's claim-backed volumes, as published on
        their claims. Volumes whose claim has not been reported on yet get
        no entry.
        """
        if volumes is None:
            volumes = [v for v in vm.spec.volumes if v.is_claim_backed]
        statuses = []
        for volume in volumes:
            try:
                claim = self.store.get(StorageClaim.kind, vm.namespace, volume.persistent_volume_claim.claim_name)
            except NotFoundError:
                continue
            if claim.status.attached is None:
                continue
            statuses.append(VolumeStatus(
                name=volume.name,
                attached=claim.status.attached,
                error=claim.status.error,
            ))
        return statuses

    def state(self, vm: VirtualMachine) -> GateState:
        """
        Claimed while the node is selected but claims are still being
        created, Pending until the claims are bound and attached.
        """
        if not is_configured(vm):
            return GateState.UNCONFIGURED
        if INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY not in vm.metadata.annotations:
            return GateState.UNCONFIGURED
        for volume in vm.instance_storage_volumes:
            try:
                self.store.get(StorageClaim.kind, vm.namespace, volume.persistent_volume_claim.claim_name)
            except NotFoundError:
                return GateState.CLAIMED
        if INSTANCE_STORAGE_PVCS_BOUND_ANNOTATION_KEY not in vm.metadata.annotations:
            return GateState.PENDING
        try:
            verify_attached(vm.instance_storage_volumes, self.volume_statuses(vm, vm.instance_storage_volumes))
        except VolumeNotReady:
            return GateState.PENDING
        return GateState.READY

    def check(self, vm: VirtualMachine):
        """Raise InstanceStorageNotReady unless the gate is Ready."""
        if not is_configured(vm):
            return
        if INSTANCE_STORAGE_PVCS_BOUND_ANNOTATION_KEY not in vm.metadata.annotations:
            raise InstanceStorageNotReady("instance storage PVCs are not bound yet")
        verify_attached(
            vm.instance_storage_volumes,
            self.volume_statuses(vm, vm.instance_storage_volumes),
            InstanceStorageNotReady,
        )
