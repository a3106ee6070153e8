import threading
import unittest
from unittest import mock

from vm_operator.config import Settings
from vm_operator.controller import Controller
from vm_operator.errors import StorageClassRequired, TransientRemoteError
from vm_operator.models import ObjectMeta, StorageClaim, StorageClaimSpec, VirtualMachine
from vm_operator.store import InMemoryStore
from vm_operator.tests.fakes import NAMESPACE, make_vm

KEY = (NAMESPACE, "my-vm")


class ControllerTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryStore()
        self.reconciler = mock.Mock()
        self.controller = Controller(self.store, self.reconciler, worker_count=1, resync_interval=0,
                                     backoff_base=0.001, backoff_max=0.01)

    def test_sync_enqueues_changed_vms_once(self):
        self.store.create(make_vm())

        self.assertEqual(self.controller.sync(), 1)
        self.assertEqual(self.controller.sync(), 0)

    def test_own_status_writes_do_not_requeue(self):
        vm = self.store.create(make_vm())
        self.controller.sync()

        vm.status.unique_id = "vm-101"
        self.store.update_status(vm)

        self.assertEqual(self.controller.sync(), 0)

    def test_spec_and_metadata_changes_requeue(self):
        vm = self.store.create(make_vm())
        self.controller.sync()

        vm.metadata.labels["x"] = "y"
        self.store.update(vm)

        self.assertEqual(self.controller.sync(), 1)

    def test_storage_claim_maps_to_owning_vm(self):
        self.store.create(StorageClaim(
            metadata=ObjectMeta(name="instance-pvc-my-vm-0", namespace=NAMESPACE),
            spec=StorageClaimSpec(storage_class="local", size="1Gi", vm_name="my-vm"),
        ))
        self.store.create(StorageClaim(
            metadata=ObjectMeta(name="unowned", namespace=NAMESPACE),
            spec=StorageClaimSpec(storage_class="local", size="1Gi"),
        ))

        self.controller.sync()

        self.assertEqual(self.controller.queue.get(0), (KEY, False))
        self.assertEqual(self.controller.queue.get(0), (None, False))

    def test_watch_events_reach_workers(self):
        reconciled = threading.Event()
        self.reconciler.reconcile.side_effect = lambda ctx: reconciled.set()
        self.controller.start()
        self.addCleanup(self.controller.stop)

        self.store.create(make_vm())

        self.assertTrue(reconciled.wait(2))
        self.assertEqual(self.reconciler.reconcile.call_args[0][0].key, KEY)
        # Already seen through the watch
        self.assertFalse(self.controller.observe(self.store.get(VirtualMachine.kind, NAMESPACE, "my-vm")))

    def test_success_resets_backoff(self):
        self.controller.queue.add_rate_limited(KEY)
        self.controller.queue.add(KEY)

        self.controller.process_next(timeout=0.5)

        self.reconciler.reconcile.assert_called_once()
        ctx = self.reconciler.reconcile.call_args[0][0]
        self.assertEqual(ctx.key, KEY)
        self.assertEqual(self.controller.queue.num_requeues(KEY), 0)

    def test_retriable_failure_is_requeued_with_backoff(self):
        self.reconciler.reconcile.side_effect = TransientRemoteError("busy")
        self.controller.queue.add(KEY)

        self.controller.process_next(timeout=0)

        self.assertEqual(self.controller.queue.num_requeues(KEY), 1)
        self.assertEqual(self.controller.failures, 1)
        self.assertEqual(self.controller.queue.get(1.0), (KEY, False))

    def test_terminal_failure_is_not_requeued(self):
        self.reconciler.reconcile.side_effect = StorageClassRequired()
        self.controller.queue.add(KEY)

        self.controller.process_next(timeout=0)

        self.assertEqual(self.controller.queue.num_requeues(KEY), 0)
        self.assertEqual(self.controller.queue.get(0.05), (None, False))

    def test_resync_after_success(self):
        controller = Controller(self.store, self.reconciler, resync_interval=0.05)
        controller.queue.add(KEY)

        controller.process_next(timeout=0)

        self.assertEqual(controller.queue.get(1.0), (KEY, False))

    def test_stop_cancels_in_flight_context(self):
        seen = []

        def reconcile(ctx):
            self.controller.stop_event.set()
            seen.append(ctx.cancel_event.is_set())
            raise TransientRemoteError("interrupted")
        self.reconciler.reconcile.side_effect = reconcile
        self.controller.queue.add(KEY)

        self.controller.process_next(timeout=0)

        self.assertEqual(seen, [True])
        # Not requeued once shutting down
        self.assertEqual(self.controller.queue.num_requeues(KEY), 0)

    def test_from_settings(self):
        config = Settings(worker_count=2, resync_interval_seconds=30, backoff_max_seconds=60)

        controller = Controller.from_settings(self.store, self.reconciler, config)

        self.assertEqual(controller.worker_count, 2)
        self.assertEqual(controller.resync_interval, 30)
        self.assertEqual(controller.queue.backoff_max, 60)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
