import threading
import unittest

from pyVmomi import vim

from vm_operator.constants import (
    CLAIM_SELECTED_NODE_ANNOTATION_KEY,
    CLUSTER_MODULE_GROUP_ANNOTATION_KEY,
    INSTANCE_STORAGE_LABEL_KEY,
    INSTANCE_STORAGE_PVCS_BOUND_ANNOTATION_KEY,
    INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY,
    INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY,
    READY_CONDITION_TYPE,
    ZONE_LABEL_KEY,
)
from vm_operator.context import ReconcileContext
from vm_operator.errors import (
    ClusterModuleNotFound,
    InstanceStorageNotReady,
    NotFoundError,
    PlacementFailed,
    ReconcileCancelled,
    RemoteNotFound,
    StorageClassRequired,
    TerminalError,
    TransientRemoteError,
    VolumeNotReady,
)
from vm_operator.models import (
    AdvancedOptions,
    ClusterModuleStatus,
    ConfigMap,
    Event,
    NetworkInterface,
    ObjectMeta,
    PersistentVolumeClaimSource,
    Phase,
    PowerState,
    ResourcePolicySpec,
    ResourcePolicyStatus,
    StorageClaim,
    StorageClaimSpec,
    StorageClaimStatus,
    VirtualMachine,
    VirtualMachineClass,
    VirtualMachineSetResourcePolicy,
    VirtualMachineStatus,
    VMMetadata,
    VMMetadataTransport,
    Volume,
)
from vm_operator.reconciler import FINALIZER, VirtualMachineReconciler
from vm_operator.tests.fakes import (
    GiB,
    HOST_MOID,
    HOST_NAME,
    NAMESPACE,
    POOL_A,
    FakeVSphereClient,
    make_vm,
    seeded_store,
)
from vm_operator.vsphere.client import POWER_OFF, POWER_ON


class ReconcilerTestCase(unittest.TestCase):
    def setUp(self):
        self.store = seeded_store()
        self.client = FakeVSphereClient()
        self.reconciler = VirtualMachineReconciler(self.store, self.client)

    def reconcile(self, name: str = "my-vm", cancel_event=None):
        self.reconciler.reconcile(ReconcileContext((NAMESPACE, name), cancel_event))

    def get(self, name: str = "my-vm") -> VirtualMachine:
        return self.store.get(VirtualMachine.kind, NAMESPACE, name)

    def update_vm(self, mutate, name: str = "my-vm") -> VirtualMachine:
        vm = self.get(name)
        mutate(vm)
        return self.store.update(vm)

    def live(self, name: str = "my-vm") -> dict:
        return self.client.vms[self.get(name).status.unique_id]


class CreateTests(ReconcilerTestCase):
    def test_create_places_clones_and_powers_on(self):
        self.store.create(make_vm())

        self.reconcile()

        vm = self.get()
        self.assertIn(FINALIZER, vm.metadata.finalizers)
        self.assertEqual(vm.metadata.labels[ZONE_LABEL_KEY], "zone-a")
        self.assertEqual(vm.status.phase, Phase.CREATED)
        self.assertEqual(vm.status.power_state, PowerState.POWERED_ON)
        self.assertEqual(vm.status.zone, "zone-a")
        self.assertEqual(vm.status.host, HOST_NAME)
        self.assertEqual(vm.status.instance_uuid, f"instance-{vm.status.unique_id}")
        self.assertEqual(vm.status.observed_generation, vm.metadata.generation)
        ready = vm.status.get_condition(READY_CONDITION_TYPE)
        self.assertEqual(ready.status, "True")

        _, args, config_spec = self.client.calls_to("create_vm")[0]
        self.assertEqual(args.resource_pool_moid, POOL_A)
        self.assertEqual(args.folder_moid, "group-zone-a")
        self.assertEqual(args.storage_policy_id, "policy-gold")
        self.assertEqual(config_spec.numCPUs, 2)
        self.assertEqual(config_spec.memoryMB, 4096)

        live = self.live()
        self.assertEqual(live["power_state"], "poweredOn")
        self.assertEqual(live["extra_config"]["disk.enableUUID"], "TRUE")
        self.assertEqual([n.network_name for n in live["nics"]], ["vm-network"])

    def test_second_reconcile_is_a_no_op(self):
        self.store.create(make_vm())
        self.reconcile()
        calls = list(self.client.mutating_calls())
        status = self.get().status
        version = self.get().metadata.resource_version

        self.reconcile()

        self.assertEqual(self.client.mutating_calls(), calls)
        self.assertEqual(self.get().status, status)
        self.assertEqual(self.get().metadata.resource_version, version)
        self.assertEqual(len(self.client.calls_to("recommend")), 1)

    def test_missing_storage_class_is_terminal(self):
        self.store.create(make_vm(storage_class=""))

        with self.assertRaises(StorageClassRequired) as cm:
            self.reconcile()

        self.assertEqual(cm.exception.message, "storage class is required but not specified")
        vm = self.get()
        self.assertIn(vm.status.phase, (None, Phase.PENDING))
        ready = vm.status.get_condition(READY_CONDITION_TYPE)
        self.assertEqual(ready.status, "False")
        self.assertEqual(ready.reason, "StorageClassRequired")
        self.assertEqual(ready.severity, "Error")
        self.assertEqual(self.client.mutating_calls(), [])

        events = self.store.list(Event.kind, namespace=NAMESPACE)
        self.assertEqual([(e.type, e.reason) for e in events], [("Warning", "StorageClassRequired")])

    def test_terminal_failure_waits_for_generation_change(self):
        self.store.create(make_vm(storage_class=""))
        with self.assertRaises(StorageClassRequired):
            self.reconcile()
        calls = len(self.client.calls)

        # Same generation: skipped
        self.reconcile()
        self.assertEqual(len(self.client.calls), calls)

        def set_storage_class(vm):
            vm.spec.storage_class = "gold"
        self.update_vm(set_storage_class)
        self.reconcile()

        self.assertEqual(self.get().status.phase, Phase.CREATED)

    def test_unknown_class_is_terminal(self):
        self.store.create(make_vm(class_name="missing"))

        with self.assertRaises(TerminalError) as cm:
            self.reconcile()

        self.assertIn("VirtualMachineClass missing not found", cm.exception.message)

    def test_retriable_failure_is_recorded_and_recovers(self):
        self.store.create(make_vm())
        self.client.fail_next["create_vm"] = TransientRemoteError("host busy")

        with self.assertRaises(TransientRemoteError):
            self.reconcile()

        vm = self.get()
        self.assertEqual(vm.status.phase, Phase.PENDING)
        ready = vm.status.get_condition(READY_CONDITION_TYPE)
        self.assertEqual(ready.status, "False")
        self.assertEqual(ready.reason, "RemoteError")
        self.assertEqual(ready.severity, "")

        self.reconcile()

        vm = self.get()
        self.assertEqual(vm.status.phase, Phase.CREATED)
        self.assertEqual(vm.status.get_condition(READY_CONDITION_TYPE).status, "True")
        # The zone recorded on the first attempt is reused
        self.assertEqual(len(self.client.calls_to("recommend")), 1)

    def test_cancelled_reconcile_leaves_status_untouched(self):
        self.store.create(make_vm())
        cancel = threading.Event()
        cancel.set()

        with self.assertRaises(ReconcileCancelled):
            self.reconcile(cancel_event=cancel)

        self.assertEqual(self.get().status, VirtualMachineStatus())
        self.assertEqual(self.client.mutating_calls(), [])

    def test_metadata_configmap_guestinfo_lands_in_extra_config(self):
        self.store.create(ConfigMap(
            metadata=ObjectMeta(name="my-vm-metadata", namespace=NAMESPACE),
            data={"guestinfo.userdata": "I2Nsb3VkLWNvbmZpZw==", "hostname": "ignored"},
        ))
        self.store.create(make_vm(vm_metadata=VMMetadata(config_map_name="my-vm-metadata")))

        self.reconcile()

        extra_config = self.live()["extra_config"]
        self.assertEqual(extra_config["guestinfo.userdata"], "I2Nsb3VkLWNvbmZpZw==")
        self.assertNotIn("hostname", extra_config)

    def test_ovf_env_transport_is_terminal(self):
        self.store.create(ConfigMap(metadata=ObjectMeta(name="md", namespace=NAMESPACE)))
        self.store.create(make_vm(vm_metadata=VMMetadata(config_map_name="md", transport=VMMetadataTransport.OVF_ENV)))

        with self.assertRaises(TerminalError):
            self.reconcile()


class ResourcePolicyTests(ReconcilerTestCase):
    def setUp(self):
        super().setUp()
        self.store.create(VirtualMachineSetResourcePolicy(
            metadata=ObjectMeta(name="policy", namespace=NAMESPACE),
            spec=ResourcePolicySpec(resource_pool_name="rp1", folder_name="f1"),
            status=ResourcePolicyStatus(cluster_modules=[ClusterModuleStatus(group_name="g1", module_uuid="mod-1")]),
        ))
        self.client.child_pools[(POOL_A, "rp1")] = "resgroup-child"
        self.client.child_folders[("group-zone-a", "f1")] = "group-child"

    def test_vm_created_in_policy_pool_and_folder(self):
        self.store.create(make_vm(resource_policy_name="policy"))

        self.reconcile()

        _, args, _ = self.client.calls_to("create_vm")[0]
        self.assertEqual(args.resource_pool_moid, "resgroup-child")
        self.assertEqual(args.folder_moid, "group-child")

    def test_missing_child_pool_is_retriable(self):
        del self.client.child_pools[(POOL_A, "rp1")]
        self.store.create(make_vm(resource_policy_name="policy"))

        with self.assertRaises(PlacementFailed):
            self.reconcile()
        self.assertEqual(self.client.calls_to("create_vm"), [])

    def test_vm_joins_cluster_module_once(self):
        self.store.create(make_vm(
            resource_policy_name="policy",
            annotations={CLUSTER_MODULE_GROUP_ANNOTATION_KEY: "g1"},
        ))

        self.reconcile()
        self.reconcile()

        moid = self.get().status.unique_id
        self.assertEqual(self.client.cluster_modules["mod-1"], [moid])
        self.assertEqual(len(self.client.calls_to("add_cluster_module_member")), 1)

    def test_unknown_cluster_module_group_is_terminal(self):
        self.store.create(make_vm(
            resource_policy_name="policy",
            annotations={CLUSTER_MODULE_GROUP_ANNOTATION_KEY: "g2"},
        ))

        with self.assertRaises(ClusterModuleNotFound) as cm:
            self.reconcile()
        self.assertEqual(cm.exception.message, "ClusterModule g2 not found")


class UpdateTests(ReconcilerTestCase):
    def setUp(self):
        super().setUp()
        self.store.create(make_vm())
        self.reconcile()

    def test_boot_disk_grows_but_never_shrinks(self):
        def grow(vm):
            vm.spec.advanced_options = AdvancedOptions(boot_disk_capacity=20 * GiB)
        self.update_vm(grow)
        self.reconcile()

        reconfigures = self.client.calls_to("reconfigure")
        self.assertEqual(len(reconfigures), 1)
        change = reconfigures[0][2].deviceChange[0]
        self.assertEqual(change.operation, vim.vm.device.VirtualDeviceSpec.Operation.edit)
        self.assertEqual(change.device.key, 2000)
        self.assertEqual(self.live()["disks"][0].capacity_bytes, 20 * GiB)

        def shrink(vm):
            vm.spec.advanced_options = AdvancedOptions(boot_disk_capacity=5 * GiB)
        self.update_vm(shrink)
        self.reconcile()

        self.assertEqual(len(self.client.calls_to("reconfigure")), 1)
        self.assertEqual(self.live()["disks"][0].capacity_bytes, 20 * GiB)
        self.assertEqual(self.get().status.get_condition(READY_CONDITION_TYPE).status, "True")

    def test_cpu_change_applied_only_while_powered_off(self):
        vm_class = self.store.get(VirtualMachineClass.kind, None, "small")
        vm_class.spec.hardware.cpus = 4
        self.store.update(vm_class)

        self.reconcile()
        self.assertEqual(self.client.calls_to("reconfigure"), [])
        self.assertEqual(self.live()["num_cpus"], 2)

        def power_off(vm):
            vm.spec.power_state = PowerState.POWERED_OFF
        self.update_vm(power_off)
        self.reconcile()

        mutating = [c[0] for c in self.client.mutating_calls()]
        self.assertEqual(mutating[-2:], ["power_op", "reconfigure"])
        self.assertEqual(self.client.calls_to("power_op")[-1][2], POWER_OFF)
        self.assertEqual(self.live()["num_cpus"], 4)
        self.assertEqual(self.get().status.power_state, PowerState.POWERED_OFF)

    def test_network_interfaces_are_converged(self):
        def change_networks(vm):
            vm.spec.network_interfaces = [
                NetworkInterface(network_name="dev-network"),
                NetworkInterface(network_name="dvpg-prod"),
            ]
        self.update_vm(change_networks)
        self.reconcile()

        changes = self.client.calls_to("reconfigure")[0][2].deviceChange
        self.assertEqual(
            [c.operation for c in changes],
            [vim.vm.device.VirtualDeviceSpec.Operation.edit, vim.vm.device.VirtualDeviceSpec.Operation.add],
        )
        self.assertEqual([n.network_name for n in self.live()["nics"]], ["dev-network", "dvpg-prod"])

        def drop_network(vm):
            vm.spec.network_interfaces = vm.spec.network_interfaces[:1]
        self.update_vm(drop_network)
        self.reconcile()

        self.assertEqual([n.network_name for n in self.live()["nics"]], ["dev-network"])

    def test_nsx_segment_interface_converges_once(self):
        def to_segment(vm):
            vm.spec.network_interfaces = [NetworkInterface(network_name="nsx-seg")]
        self.update_vm(to_segment)
        self.reconcile()

        self.assertEqual(len(self.client.calls_to("reconfigure")), 1)
        self.assertEqual(self.live()["nics"][0].network_id, "ls-1234")
        calls = list(self.client.mutating_calls())

        self.reconcile()
        self.reconcile()

        self.assertEqual(self.client.mutating_calls(), calls)

    def test_power_on_waits_for_claim_backed_volumes(self):
        def power_off(vm):
            vm.spec.power_state = PowerState.POWERED_OFF
        self.update_vm(power_off)
        self.reconcile()

        def add_volume_and_power_on(vm):
            vm.spec.power_state = PowerState.POWERED_ON
            vm.spec.volumes.append(Volume(
                name="data",
                persistent_volume_claim=PersistentVolumeClaimSource(claim_name="data-pvc"),
            ))
        self.update_vm(add_volume_and_power_on)

        with self.assertRaises(VolumeNotReady) as cm:
            self.reconcile()
        self.assertEqual(cm.exception.message, "status update pending for persistent volume: data on VM")
        self.assertEqual(self.live()["power_state"], "poweredOff")

        self.store.create(StorageClaim(
            metadata=ObjectMeta(name="data-pvc", namespace=NAMESPACE),
            spec=StorageClaimSpec(storage_class="gold", size="10Gi", vm_name="my-vm"),
            status=StorageClaimStatus(attached=True),
        ))
        self.reconcile()

        self.assertEqual(self.live()["power_state"], "poweredOn")
        self.assertEqual([(v.name, v.attached) for v in self.get().status.volumes], [("data", True)])

    def test_missing_zone_label_is_restored_from_resource_pool(self):
        def drop_label(vm):
            del vm.metadata.labels[ZONE_LABEL_KEY]
        self.update_vm(drop_label)
        vm = self.get()
        vm.status.zone = ""
        self.store.update_status(vm)

        self.reconcile()

        vm = self.get()
        self.assertEqual(vm.metadata.labels[ZONE_LABEL_KEY], "zone-a")
        self.assertEqual(vm.status.zone, "zone-a")

    def test_status_is_refreshed_from_a_lost_unique_id(self):
        moid = self.get().status.unique_id
        vm = self.get()
        vm.status = VirtualMachineStatus()
        self.store.update_status(vm)

        self.reconcile()

        self.assertEqual(self.get().status.unique_id, moid)
        self.assertEqual(len(self.client.calls_to("create_vm")), 1)


class DeleteTests(ReconcilerTestCase):
    def setUp(self):
        super().setUp()
        self.store.create(make_vm())
        self.reconcile()
        self.moid = self.get().status.unique_id

    def test_delete_powers_off_destroys_and_drops_finalizer(self):
        self.store.delete(VirtualMachine.kind, NAMESPACE, "my-vm")

        self.reconcile()

        self.assertEqual(
            [c[0] for c in self.client.mutating_calls()][-2:],
            ["power_op", "destroy"],
        )
        self.assertEqual(self.client.calls_to("power_op")[-1], ("power_op", self.moid, POWER_OFF))
        self.assertNotIn(self.moid, self.client.vms)
        with self.assertRaises(NotFoundError):
            self.get()

    def test_delete_of_vm_already_gone_succeeds(self):
        del self.client.vms[self.moid]
        self.store.delete(VirtualMachine.kind, NAMESPACE, "my-vm")

        self.reconcile()

        self.assertEqual(self.client.calls_to("destroy"), [])
        with self.assertRaises(NotFoundError):
            self.get()

    def test_not_found_during_destroy_is_success(self):
        self.client.fail_next["destroy"] = RemoteNotFound("gone")
        self.store.delete(VirtualMachine.kind, NAMESPACE, "my-vm")

        self.reconcile()

        with self.assertRaises(NotFoundError):
            self.get()

    def test_failed_destroy_keeps_finalizer(self):
        self.client.fail_next["destroy"] = TransientRemoteError("busy")
        self.store.delete(VirtualMachine.kind, NAMESPACE, "my-vm")

        with self.assertRaises(TransientRemoteError):
            self.reconcile()

        self.assertIn(FINALIZER, self.get().metadata.finalizers)
        self.reconcile()
        with self.assertRaises(NotFoundError):
            self.get()


class InstanceStorageTests(ReconcilerTestCase):
    def bind(self):
        def annotate(vm):
            vm.metadata.annotations[INSTANCE_STORAGE_PVCS_BOUND_ANNOTATION_KEY] = "2026-10-19T10:00:00Z"
        self.update_vm(annotate)

    def attach_claims(self):
        for claim in self.store.list(StorageClaim.kind, namespace=NAMESPACE):
            claim.status = StorageClaimStatus(attached=True)
            self.store.update_status(claim)

    def test_vm_is_created_only_after_claims_are_bound_and_attached(self):
        self.store.create(make_vm(class_name="is-class"))

        with self.assertRaises(InstanceStorageNotReady) as cm:
            self.reconcile()
        self.assertEqual(cm.exception.message, "instance storage PVCs are not bound yet")

        vm = self.get()
        self.assertEqual(vm.status.phase, Phase.PENDING)
        self.assertEqual(vm.metadata.annotations[INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY], HOST_NAME)
        self.assertEqual(vm.metadata.annotations[INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY], HOST_MOID)
        self.assertEqual(len(vm.instance_storage_volumes), 2)

        claims = self.store.list(StorageClaim.kind, namespace=NAMESPACE)
        self.assertEqual([c.name for c in claims], ["instance-pvc-my-vm-0", "instance-pvc-my-vm-1"])
        self.assertEqual([c.spec.size for c in claims], [256 * GiB, 512 * GiB])
        for claim in claims:
            self.assertEqual(claim.metadata.labels[INSTANCE_STORAGE_LABEL_KEY], "true")
            self.assertEqual(claim.metadata.annotations[CLAIM_SELECTED_NODE_ANNOTATION_KEY], HOST_NAME)
            self.assertEqual(claim.spec.vm_name, "my-vm")
        self.assertEqual(self.client.calls_to("create_vm"), [])

        self.bind()
        with self.assertRaises(InstanceStorageNotReady) as cm:
            self.reconcile()
        self.assertEqual(cm.exception.message,
                         "status update pending for persistent volume: instance-pvc-my-vm-0 on VM")
        self.assertEqual(self.get().status.phase, Phase.PENDING)

        self.attach_claims()
        self.reconcile()

        vm = self.get()
        self.assertEqual(vm.status.phase, Phase.CREATED)
        self.assertEqual(vm.status.power_state, PowerState.POWERED_ON)
        self.assertEqual(
            [(v.name, v.attached) for v in vm.status.volumes],
            [("instance-pvc-my-vm-0", True), ("instance-pvc-my-vm-1", True)],
        )

        _, args, config_spec = self.client.calls_to("create_vm")[0]
        self.assertEqual(args.host_moid, HOST_MOID)
        disks = [c for c in config_spec.deviceChange if isinstance(c.device, vim.vm.device.VirtualDisk)]
        self.assertEqual([d.device.capacityInBytes for d in disks], [256 * GiB, 512 * GiB])
        self.assertEqual([d.profile[0].profileId for d in disks], ["policy-local", "policy-local"])
        self.assertEqual(len({d.device.key for d in disks}), 2)
        # Placement ran once; later attempts reuse the selected node
        self.assertEqual(len(self.client.calls_to("recommend")), 1)

    def test_detached_claim_with_error_blocks_creation(self):
        self.store.create(make_vm(class_name="is-class"))
        with self.assertRaises(InstanceStorageNotReady):
            self.reconcile()
        self.bind()
        claims = self.store.list(StorageClaim.kind, namespace=NAMESPACE)
        claims[0].status = StorageClaimStatus(attached=True)
        self.store.update_status(claims[0])
        claims[1].status = StorageClaimStatus(attached=False, error="disk full")
        self.store.update_status(claims[1])

        with self.assertRaises(InstanceStorageNotReady) as cm:
            self.reconcile()

        self.assertEqual(cm.exception.message, "persistent volume: instance-pvc-my-vm-1 not attached to VM")
        self.assertEqual(self.client.calls_to("create_vm"), [])

    def test_detach_after_power_on_leaves_vm_running(self):
        self.store.create(make_vm(class_name="is-class"))
        with self.assertRaises(InstanceStorageNotReady):
            self.reconcile()
        self.bind()
        self.attach_claims()
        self.reconcile()
        self.assertEqual(self.get().status.power_state, PowerState.POWERED_ON)
        power_ops = list(self.client.calls_to("power_op"))

        claim = self.store.get(StorageClaim.kind, NAMESPACE, "instance-pvc-my-vm-1")
        claim.status = StorageClaimStatus(attached=False, error="x")
        self.store.update_status(claim)
        self.reconcile()

        self.assertEqual(self.client.calls_to("power_op"), power_ops)
        vm = self.get()
        self.assertEqual(vm.status.phase, Phase.CREATED)
        self.assertEqual(vm.status.power_state, PowerState.POWERED_ON)
        self.assertEqual(
            [(v.name, v.attached, v.error) for v in vm.status.volumes],
            [("instance-pvc-my-vm-0", True, ""), ("instance-pvc-my-vm-1", False, "x")],
        )
        self.assertEqual(self.live()["power_state"], "poweredOn")

    def test_instance_storage_feature_disabled(self):
        reconciler = VirtualMachineReconciler(self.store, self.client, instance_storage_enabled=False)
        self.store.create(make_vm(class_name="is-class"))

        reconciler.reconcile(ReconcileContext((NAMESPACE, "my-vm")))

        self.assertEqual(self.get().status.phase, Phase.CREATED)
        self.assertEqual(self.store.list(StorageClaim.kind, namespace=NAMESPACE), [])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
