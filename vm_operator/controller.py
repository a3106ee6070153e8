#!/usr/bin/env python3
"""
VM Operator controller
======================

Long running process that keeps every VirtualMachine converged:

- Watches the store (when the store supports it) and polls it every
  ``poll_interval`` seconds for changed VirtualMachines and storage claims
- Hands VM keys to a pool of worker threads through a rate limited work
  queue, one in-flight reconcile per key
- Requeues retriable failures with per-key exponential backoff and
  re-syncs converged VMs every ``resync_interval`` seconds

Usage:
    vm-operator-controller

Configuration comes from VMOP_* environment variables, see
vm_operator/config.py.
"""

import logging
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Tuple

from vm_operator import __version__
from vm_operator.config import Settings, settings
from vm_operator.context import ReconcileContext
from vm_operator.errors import is_retriable
from vm_operator.models import Resource, StorageClaim, VirtualMachine
from vm_operator.reconciler import VirtualMachineReconciler
from vm_operator.store import DELETED, RestStore
from vm_operator.vsphere import VSphereClient, parse_global_extra_config
from vm_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)

# How long a worker blocks on an empty queue before re-checking for shutdown
WORKER_POLL_SECONDS = 1.0


def _fingerprint(obj: Resource) -> str:
    """Everything a reconcile reacts to; resourceVersion alone also moves on our own status writes."""
    if isinstance(obj, VirtualMachine):
        exclude = {"status": True, "metadata": {"resource_version"}}
    else:
        exclude = {"metadata": {"resource_version"}}
    return obj.model_dump_json(exclude=exclude)


class Controller:
    """Work queue plus worker pool driving a VirtualMachineReconciler."""

    def __init__(self, store, reconciler: VirtualMachineReconciler, worker_count: int = 4,
                 resync_interval: float = 600, poll_interval: float = 10,
                 reconcile_timeout: Optional[float] = 900, call_timeout: float = 300,
                 backoff_base: float = 1.0, backoff_max: float = 300.0):
        self.store = store
        self.reconciler = reconciler
        self.worker_count = worker_count
        self.resync_interval = resync_interval
        self.poll_interval = poll_interval
        self.reconcile_timeout = reconcile_timeout
        self.call_timeout = call_timeout
        self.queue = WorkQueue(backoff_base, backoff_max)
        self.stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._seen: Dict[Tuple[str, Optional[str], str], str] = {}

        # Counters reported in the shutdown summary
        self.reconciles = 0
        self.failures = 0

    @classmethod
    def from_settings(cls, store, reconciler: VirtualMachineReconciler, config: Settings) -> "Controller":
        return cls(
            store,
            reconciler,
            worker_count=config.worker_count,
            resync_interval=config.resync_interval_seconds,
            poll_interval=config.poll_interval_seconds,
            reconcile_timeout=config.reconcile_timeout_seconds,
            call_timeout=config.remote_call_timeout_seconds,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
        )

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    @staticmethod
    def _vm_key(obj: Resource) -> Optional[Tuple[Optional[str], str]]:
        if isinstance(obj, VirtualMachine):
            return obj.key
        if isinstance(obj, StorageClaim) and obj.spec.vm_name:
            return obj.namespace, obj.spec.vm_name
        return None

    def observe(self, obj: Resource, deleted: bool = False) -> bool:
        """Enqueue the VM owning ``obj`` if it changed since last seen. Returns True when enqueued."""
        key = self._vm_key(obj)
        if key is None:
            return False
        seen_key = (obj.kind, obj.namespace, obj.name)
        with self._lock:
            if deleted:
                self._seen.pop(seen_key, None)
            else:
                fingerprint = _fingerprint(obj)
                if self._seen.get(seen_key) == fingerprint:
                    return False
                self._seen[seen_key] = fingerprint
        self.queue.add(key)
        return True

    def _on_event(self, event_type: str, obj: Resource):
        self.observe(obj, deleted=event_type == DELETED)

    def sync(self) -> int:
        """List VMs and claims and enqueue whatever changed. Returns the number of keys enqueued."""
        enqueued = 0
        live = set()
        for kind in (VirtualMachine.kind, StorageClaim.kind):
            for obj in self.store.list(kind):
                live.add((obj.kind, obj.namespace, obj.name))
                if self.observe(obj):
                    enqueued += 1

        with self._lock:
            gone = [k for k in self._seen if k not in live]
            for seen_key in gone:
                del self._seen[seen_key]
        for kind, namespace, name in gone:
            if kind == VirtualMachine.kind:
                self.queue.forget((namespace, name))
        return enqueued

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process_next(self, timeout: Optional[float] = WORKER_POLL_SECONDS) -> bool:
        """
        Reconcile one key from the queue.

        Returns False once the queue has been shut down.
        """
        key, shutdown = self.queue.get(timeout)
        if shutdown:
            return False
        if key is None:
            return True
        try:
            self.reconcile_key(key)
        finally:
            self.queue.done(key)
        return True

    def reconcile_key(self, key: Tuple[Optional[str], str]):
        ctx = ReconcileContext(key, self.stop_event, self.reconcile_timeout, self.call_timeout)
        namespace, name = key
        self.reconciles += 1
        try:
            self.reconciler.reconcile(ctx)
        except Exception as e:
            self.failures += 1
            if self.stop_event.is_set():
                logger.info(f"Reconcile of VM {namespace}/{name} interrupted by shutdown")
                return
            if not is_retriable(e):
                # Recorded on the VM; retried when its generation changes
                self.queue.forget(key)
                return
            delay = self.queue.add_rate_limited(key)
            logger.warning(f"Reconcile of VM {namespace}/{name} failed, retrying in {delay:.1f}s: {e}")
            logger.debug(f"Reconcile failure detail for VM {namespace}/{name}", exc_info=True)
            return

        self.queue.forget(key)
        if self.resync_interval:
            self.queue.add_after(key, self.resync_interval)

    def _worker(self, index: int):
        logger.debug(f"Worker {index} started")
        while self.process_next():
            pass
        logger.debug(f"Worker {index} stopped")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self._executor is not None:
            return
        if hasattr(self.store, "watch"):
            self.store.watch(VirtualMachine.kind, self._on_event)
            self.store.watch(StorageClaim.kind, self._on_event)
        self._executor = ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix="reconcile")
        for index in range(self.worker_count):
            self._executor.submit(self._worker, index)
        logger.info(f"Started {self.worker_count} reconcile worker(s)")

    def run(self):
        """Start workers and poll the store until ``stop_event`` is set."""
        logger.info("=" * 70)
        logger.info(f"VM Operator controller v{__version__}")
        logger.info(f"Workers: {self.worker_count}")
        logger.info(f"Poll interval: {self.poll_interval}s, resync interval: {self.resync_interval}s")
        logger.info("=" * 70)

        self.start()
        while not self.stop_event.is_set():
            try:
                enqueued = self.sync()
                if enqueued:
                    logger.debug(f"Enqueued {enqueued} changed VM(s)")
            except Exception as e:
                logger.error(f"Error polling store: {e}")
            self.stop_event.wait(self.poll_interval)

    def stop(self, wait: bool = True):
        """Cancel in-flight reconciles at their next call boundary and stop the workers."""
        self.stop_event.set()
        self.queue.shutdown()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info(f"Controller stopped after {self.reconciles} reconcile(s), {self.failures} failure(s)")


def main():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        global_extra_config = parse_global_extra_config(settings.json_extra_config)
    except ValueError as e:
        logger.error(f"Invalid VMOP_JSON_EXTRA_CONFIG: {e}")
        sys.exit(1)

    store = RestStore(settings.store_url, settings.store_token, settings.verify_ssl, settings.store_timeout_seconds)
    client = VSphereClient(
        settings.vcenter_host,
        settings.vcenter_user,
        settings.vcenter_password,
        port=settings.vcenter_port,
        verify_ssl=settings.verify_ssl,
        datacenter=settings.datacenter,
        timeout=settings.remote_call_timeout_seconds,
    )
    reconciler = VirtualMachineReconciler(
        store,
        client,
        min_cpu_freq_mhz=settings.min_cpu_freq_mhz,
        global_extra_config=global_extra_config,
        instance_storage_enabled=settings.instance_storage_enabled,
        fault_domains_enabled=settings.fault_domains_enabled,
        status_update_retries=settings.status_update_retries,
    )
    controller = Controller.from_settings(store, reconciler, settings)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        controller.stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)

    try:
        controller.run()
    except KeyboardInterrupt:
        logger.info("Shutting down controller...")
    finally:
        controller.stop()
        client.close()


if __name__ == "__main__":
    main()
