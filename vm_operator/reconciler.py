"""
VirtualMachine Reconciler
=========================

Converges one VirtualMachine onto vCenter per invocation:

1. Deletion: power off, destroy, drop the finalizer
2. Creation: placement, instance storage barrier, clone/deploy
3. Update: minimal reconfigure (CPU/memory while off, disk growth,
   NICs, ExtraConfig)
4. Power state transition last
5. Status write-back, always

Every invocation re-reads the VM and the live vCenter VM; nothing is
cached between invocations so it is safe to run any number of times.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pyVmomi import vim

from vm_operator.constants import (
    CLUSTER_MODULE_GROUP_ANNOTATION_KEY,
    READY_CONDITION_TYPE,
    ZONE_LABEL_KEY,
)
from vm_operator.context import ReconcileContext
from vm_operator.errors import (
    ClusterModuleNotFound,
    ConflictError,
    NotFoundError,
    PlacementFailed,
    ReconcileCancelled,
    ReferenceNotFound,
    RemoteFault,
    RemoteNotFound,
    StorageClassRequired,
    TerminalError,
    UnknownStorageClass,
    VMOperatorError,
    VolumeNotReady,
)
from vm_operator.models import (
    ConfigMap,
    CreateVMArgs,
    Event,
    ObjectMeta,
    ObservedVM,
    Phase,
    PowerState,
    StorageClass,
    VirtualMachine,
    VirtualMachineClass,
    VirtualMachineImage,
    VirtualMachineSetResourcePolicy,
    VirtualMachineStatus,
    VMMetadataTransport,
    Zone,
)
from vm_operator.vsphere.client import POWER_OFF, POWER_ON, SUSPEND
from vm_operator.vsphere.configspec import (
    DeviceKeyAllocator,
    build_extra_config,
    create_config_spec,
    create_instance_storage_disk_devices,
    device_keys,
    extra_config_options,
    memory_quantity_to_mb,
)
from vm_operator.vsphere.instance_storage import InstanceStorageGate, is_configured, verify_attached
from vm_operator.vsphere.network import (
    CARD_TYPES,
    NetworkProvider,
    create_backing,
    create_nic_device,
    network_identity,
)
from vm_operator.vsphere.placement import PlacementPlanner, PlacementResult

logger = logging.getLogger(__name__)

FINALIZER = "vmoperator.vmware.com/virtualmachine"

SEVERITY_ERROR = "Error"

MAX_METADATA_UPDATE_ATTEMPTS = 5


class _Session:
    """Mutable state of a single reconcile invocation."""

    def __init__(self, ctx: ReconcileContext, vm: VirtualMachine):
        self.ctx = ctx
        self.vm = vm
        self.status: VirtualMachineStatus = vm.status.model_copy(deep=True)
        self.observed: Optional[ObservedVM] = None
        self.vm_class: Optional[VirtualMachineClass] = None

    @property
    def label(self) -> str:
        return f"{self.vm.namespace}/{self.vm.name}"


class VirtualMachineReconciler:
    """
    Only writer of VirtualMachine status.

    Retriable failures propagate to the caller for requeue with backoff;
    terminal failures are recorded as a Ready=False condition with
    severity Error plus a Warning event and are not retried until the
    VM's generation changes.
    """

    def __init__(self, store, client, min_cpu_freq_mhz: int = 0,
                 global_extra_config: Optional[Dict[str, str]] = None,
                 instance_storage_enabled: bool = True, fault_domains_enabled: bool = True,
                 status_update_retries: int = 5):
        self.store = store
        self.client = client
        self.min_cpu_freq_mhz = min_cpu_freq_mhz
        self.global_extra_config = global_extra_config or {}
        self.instance_storage_enabled = instance_storage_enabled
        self.status_update_retries = status_update_retries
        self.planner = PlacementPlanner(store, client, min_cpu_freq_mhz, fault_domains_enabled)
        self.gate = InstanceStorageGate(store)
        self.network = NetworkProvider(client)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, ctx: ReconcileContext):
        namespace, name = ctx.key
        try:
            vm = self.store.get(VirtualMachine.kind, namespace, name)
        except NotFoundError:
            logger.debug(f"VM {namespace}/{name} no longer exists")
            return

        if vm.is_deleting:
            self.reconcile_delete(ctx, vm)
            return

        if self._failed_terminally(vm):
            logger.debug(f"VM {namespace}/{name} generation {vm.metadata.generation} failed terminally, skipping")
            return

        self.reconcile_normal(ctx, vm)

    def _failed_terminally(self, vm: VirtualMachine) -> bool:
        condition = vm.status.get_condition(READY_CONDITION_TYPE)
        return (
            condition is not None
            and condition.status == "False"
            and condition.severity == SEVERITY_ERROR
            and condition.observed_generation == vm.metadata.generation
        )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def reconcile_delete(self, ctx: ReconcileContext, vm: VirtualMachine):
        session = _Session(ctx, vm)
        logger.info(f"Deleting VM {session.label}")
        try:
            observed = self._fetch_observed(session)
            if observed is not None:
                try:
                    if observed.power_state == PowerState.POWERED_ON.value:
                        self.client.power_op(observed.moid, POWER_OFF, timeout=ctx.call_timeout())
                    self.client.destroy(observed.moid, timeout=ctx.call_timeout())
                except RemoteNotFound:
                    logger.info(f"VM {session.label} already deleted from vCenter")
        except ReconcileCancelled:
            raise
        except Exception as e:
            logger.warning(f"Deleting VM {session.label} failed: {e}")
            self._record_failure(session, getattr(e, "reason", "Error"), str(e))
            raise

        self._update_metadata(vm, self._drop_finalizer)
        logger.info(f"VM {session.label} deleted")

    @staticmethod
    def _drop_finalizer(vm: VirtualMachine) -> bool:
        if FINALIZER not in vm.metadata.finalizers:
            return False
        vm.metadata.finalizers = [f for f in vm.metadata.finalizers if f != FINALIZER]
        return True

    # ------------------------------------------------------------------
    # Create or update
    # ------------------------------------------------------------------

    def reconcile_normal(self, ctx: ReconcileContext, vm: VirtualMachine):
        session = _Session(ctx, vm)
        try:
            session.vm = self._update_metadata(vm, self._add_finalizer)
            session.observed = self._fetch_observed(session)
            if session.observed is None:
                self._create(session)
            self._update(session)
            self._set_status_from_observed(session)
            session.status.mark_ready(session.vm.metadata.generation)
            session.status.observed_generation = session.vm.metadata.generation
        except ReconcileCancelled:
            # Status stays as last written
            logger.warning(f"Reconcile of VM {session.label} cancelled")
            raise
        except TerminalError as e:
            logger.error(f"VM {session.label}: {e.message}")
            if isinstance(e, RemoteFault) and session.status.phase != Phase.CREATED:
                session.status.phase = Phase.ERROR
            self._record_failure(session, e.reason, e.message, SEVERITY_ERROR)
            self._record_event(session.vm, "Warning", e.reason, e.message)
            raise
        except Exception as e:
            logger.warning(f"VM {session.label}: {e}")
            self._record_failure(session, getattr(e, "reason", "Error"), str(e))
            raise
        self._write_status(session)

    @staticmethod
    def _add_finalizer(vm: VirtualMachine) -> bool:
        if FINALIZER in vm.metadata.finalizers:
            return False
        vm.metadata.finalizers.append(FINALIZER)
        return True

    def _fetch_observed(self, session: _Session) -> Optional[ObservedVM]:
        vm = session.vm
        if vm.status.unique_id:
            session.ctx.check()
            observed = self.client.get_vm(vm.status.unique_id)
            if observed is not None:
                return observed
        # Status may have been lost after a successful create
        zone_name = vm.metadata.labels.get(ZONE_LABEL_KEY)
        if zone_name:
            folder_moid = self._zone_folder(vm.namespace, zone_name)
            session.ctx.check()
            return self.client.find_vm(vm.name, folder_moid)
        return None

    def _zone_folder(self, namespace: str, zone_name: str) -> str:
        try:
            return self.store.get(Zone.kind, namespace, zone_name).spec.folder_moid
        except NotFoundError:
            return ""

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def _get_ref(self, model, namespace: Optional[str], name: str):
        try:
            return self.store.get(model.kind, namespace, name)
        except NotFoundError:
            key = f"{namespace}/{name}" if namespace and model.namespaced else name
            raise ReferenceNotFound(f"{model.kind} {key} not found")

    def _vm_class(self, session: _Session) -> VirtualMachineClass:
        if session.vm_class is None:
            session.vm_class = self._get_ref(VirtualMachineClass, None, session.vm.spec.class_name)
        return session.vm_class

    def _storage_policy_ids(self, vm: VirtualMachine) -> Dict[str, str]:
        names = set()
        if vm.spec.storage_class:
            names.add(vm.spec.storage_class)
        for volume in vm.instance_storage_volumes:
            names.add(volume.persistent_volume_claim.instance_volume_claim.storage_class)

        policy_ids = {}
        for name in sorted(names):
            try:
                storage_class = self.store.get(StorageClass.kind, None, name)
            except NotFoundError:
                raise UnknownStorageClass(name)
            if not storage_class.storage_policy_id:
                raise UnknownStorageClass(name)
            policy_ids[name] = storage_class.storage_policy_id
        return policy_ids

    def _resource_policy(self, vm: VirtualMachine) -> Optional[VirtualMachineSetResourcePolicy]:
        if not vm.spec.resource_policy_name:
            return None
        return self._get_ref(VirtualMachineSetResourcePolicy, vm.namespace, vm.spec.resource_policy_name)

    def _cluster_module_uuid(self, vm: VirtualMachine,
                             policy: Optional[VirtualMachineSetResourcePolicy]) -> Optional[str]:
        group_name = vm.metadata.annotations.get(CLUSTER_MODULE_GROUP_ANNOTATION_KEY)
        if not group_name:
            return None
        if policy is not None:
            for module in policy.status.cluster_modules:
                if module.group_name == group_name:
                    return module.module_uuid
        raise ClusterModuleNotFound(group_name)

    def _desired_extra_config(self, vm: VirtualMachine) -> Dict[str, str]:
        metadata = {}
        if vm.spec.vm_metadata is not None:
            if vm.spec.vm_metadata.transport != VMMetadataTransport.EXTRA_CONFIG:
                raise TerminalError(f"VM metadata transport {vm.spec.vm_metadata.transport.value} is not supported")
            metadata = self._get_ref(ConfigMap, vm.namespace, vm.spec.vm_metadata.config_map_name).data
        return build_extra_config(self.global_extra_config, metadata)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _create(self, session: _Session):
        ctx = session.ctx
        vm = session.vm

        # Validate every reference before anything is written
        if not vm.spec.storage_class:
            raise StorageClassRequired()
        vm_class = self._vm_class(session)
        image = self._get_ref(VirtualMachineImage, None, vm.spec.image_name)
        policy = self._resource_policy(vm)
        module_uuid = self._cluster_module_uuid(vm, policy)
        extra_config = self._desired_extra_config(vm)

        if self.instance_storage_enabled:
            vm = session.vm = self.gate.ensure_volumes(vm, vm_class.spec.hardware.instance_storage)
        policy_ids = self._storage_policy_ids(vm)

        if session.status.phase is None:
            session.status.phase = Phase.PENDING

        placement, vm = self.planner.plan(ctx, vm, vm_class.spec, policy_ids)
        session.vm = vm
        session.status.zone = placement.zone_name

        if is_configured(vm):
            vm = session.vm = self.gate.ensure_claims(vm, placement.host_name, placement.host_moid)
            session.status.volumes = self.gate.volume_statuses(vm)
            self.gate.check(vm)

        resource_pool_moid, folder_moid = self._resolve_policy_location(ctx, placement, policy)

        config_spec = create_config_spec(vm.name, vm_class.spec, self.min_cpu_freq_mhz, extra_config)
        allocator = DeviceKeyAllocator(device_keys(config_spec))
        ctx.check()
        self.network.apply_interfaces(config_spec, vm.spec.network_interfaces, allocator)
        config_spec.deviceChange.extend(
            create_instance_storage_disk_devices(vm.instance_storage_volumes, policy_ids, allocator)
        )
        advanced = vm.spec.advanced_options
        if advanced is not None and advanced.change_block_tracking is not None:
            config_spec.changeTrackingEnabled = advanced.change_block_tracking

        provisioning = advanced.default_volume_provisioning if advanced is not None else None
        args = CreateVMArgs(
            name=vm.name,
            image_provider_kind=image.spec.provider_kind.value,
            image_provider_id=image.spec.provider_id,
            resource_pool_moid=resource_pool_moid,
            folder_moid=folder_moid,
            host_moid=placement.host_moid,
            datastore_moid=placement.datastore_moid,
            storage_policy_id=policy_ids.get(vm.spec.storage_class, ""),
            thin_provisioned=provisioning.thin_provisioned if provisioning else None,
            eager_zeroed=provisioning.eager_zeroed if provisioning else None,
        )

        logger.info(f"Creating VM {session.label} in zone {placement.zone_name or '-'}")
        observed = self.client.create_vm(args, config_spec, timeout=ctx.call_timeout())

        session.observed = observed
        session.status.unique_id = observed.moid
        session.status.phase = Phase.CREATED
        logger.info(f"Created VM {session.label} as {observed.moid}")

        if module_uuid:
            ctx.check()
            self.client.add_cluster_module_member(module_uuid, observed.moid)

    def _resolve_policy_location(self, ctx: ReconcileContext, placement: PlacementResult,
                                 policy: Optional[VirtualMachineSetResourcePolicy]):
        """Child resource pool and folder named by the resource policy, if any."""
        resource_pool_moid = placement.resource_pool_moid
        folder_moid = placement.folder_moid
        if policy is None:
            return resource_pool_moid, folder_moid

        if policy.spec.resource_pool_name:
            ctx.check()
            child = self.client.find_child_resource_pool(resource_pool_moid, policy.spec.resource_pool_name)
            if child is None:
                raise PlacementFailed(f"resource pool {policy.spec.resource_pool_name} not found")
            resource_pool_moid = child
        if policy.spec.folder_name and folder_moid:
            ctx.check()
            child = self.client.find_child_folder(folder_moid, policy.spec.folder_name)
            if child is None:
                raise PlacementFailed(f"folder {policy.spec.folder_name} not found")
            folder_moid = child
        return resource_pool_moid, folder_moid

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _update(self, session: _Session):
        ctx = session.ctx
        vm = session.vm
        observed = session.observed
        desired_power = vm.spec.power_state
        changed = False

        # Hardware edits below need the VM off
        if desired_power == PowerState.POWERED_OFF and observed.power_state != PowerState.POWERED_OFF.value:
            self.client.power_op(observed.moid, POWER_OFF, timeout=ctx.call_timeout())
            changed = True
            observed = self._refresh(session)

        config_spec = self._diff(session, observed)
        if config_spec is not None:
            self.client.reconfigure(observed.moid, config_spec, timeout=ctx.call_timeout())
            changed = True

        session.status.volumes = self.gate.volume_statuses(vm)

        if desired_power == PowerState.POWERED_ON and observed.power_state != PowerState.POWERED_ON.value:
            if is_configured(vm):
                self.gate.check(vm)
            other_claims = [v for v in vm.spec.volumes if v.is_claim_backed and not v.is_instance_storage]
            verify_attached(other_claims, session.status.volumes, VolumeNotReady)
            self.client.power_op(observed.moid, POWER_ON, timeout=ctx.call_timeout())
            changed = True
        elif desired_power == PowerState.SUSPENDED and observed.power_state == PowerState.POWERED_ON.value:
            self.client.power_op(observed.moid, SUSPEND, timeout=ctx.call_timeout())
            changed = True

        if changed:
            self._refresh(session)

        zone = self.planner.reverse_lookup(vm, session.observed)
        if zone and not vm.metadata.labels.get(ZONE_LABEL_KEY):
            session.vm, zone = self.planner.record_zone(vm, zone)
        if zone:
            session.status.zone = zone

        policy = self._resource_policy(session.vm)
        module_uuid = self._cluster_module_uuid(session.vm, policy)
        if module_uuid:
            ctx.check()
            self.client.add_cluster_module_member(module_uuid, session.observed.moid)

    def _refresh(self, session: _Session) -> ObservedVM:
        session.ctx.check()
        observed = self.client.get_vm(session.observed.moid)
        if observed is None:
            raise RemoteNotFound(f"VM {session.label} ({session.observed.moid}) disappeared from vCenter")
        session.observed = observed
        return observed

    def _diff(self, session: _Session, observed: ObservedVM) -> Optional[vim.vm.ConfigSpec]:
        """ConfigSpec carrying only what differs from the live VM, or None."""
        vm = session.vm
        vm_class = self._vm_class(session)
        config_spec = vim.vm.ConfigSpec()
        changed = False

        if observed.power_state == PowerState.POWERED_OFF.value:
            if observed.num_cpus != vm_class.spec.hardware.cpus:
                config_spec.numCPUs = vm_class.spec.hardware.cpus
                changed = True
            memory_mb = memory_quantity_to_mb(vm_class.spec.hardware.memory)
            if observed.memory_mb != memory_mb:
                config_spec.memoryMB = memory_mb
                changed = True

        extra_config = {
            k: v for k, v in self._desired_extra_config(vm).items()
            if observed.extra_config.get(k) != v
        }
        if extra_config:
            config_spec.extraConfig = extra_config_options(extra_config)
            changed = True

        disk_changes = self._disk_changes(vm, observed)
        nic_changes = self._nic_changes(session, observed)
        if disk_changes or nic_changes:
            config_spec.deviceChange = disk_changes + nic_changes
            changed = True

        return config_spec if changed else None

    def _disk_changes(self, vm: VirtualMachine, observed: ObservedVM) -> List[vim.vm.device.VirtualDeviceSpec]:
        """Grow-only: a requested capacity at or below the live one is ignored."""
        requested = {}
        advanced = vm.spec.advanced_options
        if advanced is not None and advanced.boot_disk_capacity and observed.boot_disk is not None:
            requested[observed.boot_disk.key] = advanced.boot_disk_capacity
        for volume in vm.spec.volumes:
            source = volume.vsphere_volume
            if source is None or source.device_key is None or not source.capacity:
                continue
            requested[source.device_key] = max(source.capacity, requested.get(source.device_key, 0))

        changes = []
        for key in sorted(requested):
            disk = observed.disk_by_key(key)
            if disk is None:
                logger.warning(f"VM {vm.namespace}/{vm.name} has no disk with device key {key}")
                continue
            if requested[key] <= disk.capacity_bytes:
                continue
            device = vim.vm.device.VirtualDisk()
            device.key = disk.key
            device.controllerKey = disk.controller_key
            device.unitNumber = disk.unit_number
            device.capacityInBytes = requested[key]
            device.backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
                fileName=disk.file_name,
                diskMode='persistent',
            )
            change = vim.vm.device.VirtualDeviceSpec()
            change.operation = vim.vm.device.VirtualDeviceSpec.Operation.edit
            change.device = device
            changes.append(change)
            logger.info(f"Growing disk {key} of VM {vm.namespace}/{vm.name} "
                        f"from {disk.capacity_bytes} to {requested[key]} bytes")
        return changes

    def _nic_changes(self, session: _Session, observed: ObservedVM) -> List[vim.vm.device.VirtualDeviceSpec]:
        """
        Match NICs to interfaces by position. A NIC already backed by the
        interface's network, by name or by resolved identity, is left alone.
        """
        interfaces = session.vm.spec.network_interfaces
        allocator = DeviceKeyAllocator([n.key for n in observed.nics] + [d.key for d in observed.disks])
        changes = []

        for index in range(max(len(interfaces), len(observed.nics))):
            interface = interfaces[index] if index < len(interfaces) else None
            nic = observed.nics[index] if index < len(observed.nics) else None

            if interface is None:
                change = vim.vm.device.VirtualDeviceSpec()
                change.operation = vim.vm.device.VirtualDeviceSpec.Operation.remove
                change.device = CARD_TYPES.get(nic.card_type, vim.vm.device.VirtualVmxnet3)(key=nic.key)
                changes.append(change)
                continue

            if nic is not None and nic.network_name == interface.network_name:
                continue

            session.ctx.check()
            network = self.network.resolve(interface)
            if nic is not None and nic.network_id and nic.network_id == network_identity(network):
                continue
            change = vim.vm.device.VirtualDeviceSpec()
            if nic is None:
                change.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
                change.device = create_nic_device(network, interface.ethernet_card_type, allocator.next())
            else:
                device = CARD_TYPES.get(nic.card_type, vim.vm.device.VirtualVmxnet3)()
                device.key = nic.key
                device.backing = create_backing(network)
                if nic.mac_address:
                    device.macAddress = nic.mac_address
                change.operation = vim.vm.device.VirtualDeviceSpec.Operation.edit
                change.device = device
            changes.append(change)
        return changes

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _set_status_from_observed(self, session: _Session):
        observed = session.observed
        status = session.status
        status.phase = Phase.CREATED
        status.unique_id = observed.moid
        status.instance_uuid = observed.instance_uuid
        status.bios_uuid = observed.bios_uuid
        status.host = observed.host
        status.guest_heartbeat = observed.guest_heartbeat
        try:
            status.power_state = PowerState(observed.power_state)
        except ValueError:
            status.power_state = None

    def _record_failure(self, session: _Session, reason: str, message: str, severity: str = ""):
        """Best-known truth plus a Ready=False condition, written unconditionally."""
        if session.observed is not None:
            self._set_status_from_observed(session)
        session.status.mark_not_ready(session.vm.metadata.generation, reason, message, severity)
        self._write_status(session)

    def _write_status(self, session: _Session):
        """Write the session's status onto the latest stored VM, retrying on conflict."""
        vm = session.vm
        for _ in range(self.status_update_retries):
            try:
                current = self.store.get(VirtualMachine.kind, vm.namespace, vm.name)
            except NotFoundError:
                return
            if current.status == session.status:
                return
            current.status = session.status.model_copy(deep=True)
            try:
                self.store.update_status(current)
                return
            except ConflictError:
                logger.debug(f"Conflict writing status of VM {session.label}, re-reading")
        raise ConflictError(f"could not write status of VM {session.label}")

    def _update_metadata(self, vm: VirtualMachine, mutate) -> VirtualMachine:
        for _ in range(MAX_METADATA_UPDATE_ATTEMPTS):
            try:
                current = self.store.get(VirtualMachine.kind, vm.namespace, vm.name)
            except NotFoundError:
                return vm
            if not mutate(current):
                return current
            try:
                return self.store.update(current)
            except ConflictError:
                logger.debug(f"Conflict updating VM {vm.namespace}/{vm.name}, re-reading")
        raise ConflictError(f"could not update VM {vm.namespace}/{vm.name}")

    def _record_event(self, vm: VirtualMachine, event_type: str, reason: str, message: str):
        event = Event(
            metadata=ObjectMeta(name=f"{vm.name}.{uuid.uuid4().hex[:10]}", namespace=vm.namespace),
            involved_kind=VirtualMachine.kind,
            involved_name=vm.name,
            type=event_type,
            reason=reason,
            message=message,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self.store.create(event)
        except VMOperatorError as e:
            logger.warning(f"Failed to record event for VM {vm.namespace}/{vm.name}: {e}")
