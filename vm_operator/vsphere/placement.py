"""
Placement planner.

Runs once, when a VM has no live counterpart yet. Picks the zone,
resource pool, host and datastore for the new VM and records the zone as
a label on the VirtualMachine so later reconciles stay in the same zone.
"""

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from vm_operator.constants import (
    INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY,
    INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY,
    ZONE_LABEL_KEY,
)
from vm_operator.context import ReconcileContext
from vm_operator.errors import (
    ConflictError,
    PlacementFailed,
    ReconcileCancelled,
    ReferenceNotFound,
    ZoneUnavailable,
)
from vm_operator.models import ObservedVM, Recommendation, VirtualMachine, VirtualMachineClassSpec, Zone
from vm_operator.vsphere.configspec import create_config_spec_for_placement

logger = logging.getLogger(__name__)

# Bounded: a label can only be set once, so two rounds always settle
MAX_LABEL_WRITE_ATTEMPTS = 5


class PlacementResult(BaseModel):
    zone_name: str = ""
    resource_pool_moid: str
    folder_moid: str = ""
    host_moid: str = ""
    host_name: str = ""
    datastore_moid: str = ""


class PlacementPlanner:
    """Builds placement requests and resolves them into a PlacementResult."""

    def __init__(self, store, client, min_cpu_freq_mhz: int = 0, fault_domains_enabled: bool = True):
        self.store = store
        self.client = client
        self.min_cpu_freq_mhz = min_cpu_freq_mhz
        self.fault_domains_enabled = fault_domains_enabled

    def _zones(self, namespace: str) -> List[Zone]:
        return self.store.list(Zone.kind, namespace=namespace)

    def plan(self, ctx: ReconcileContext, vm: VirtualMachine, class_spec: VirtualMachineClassSpec,
             policy_ids: Dict[str, str]) -> Tuple[PlacementResult, VirtualMachine]:
        """
        Place ``vm``.

        Returns the result and the VirtualMachine as last written to the
        store (the zone label may have been added).
        """
        zones = self._zones(vm.namespace)
        needs_host = bool(vm.instance_storage_volumes)
        zone_name = vm.metadata.labels.get(ZONE_LABEL_KEY)

        if zone_name:
            zone = self._zone_by_name(zones, zone_name)
            result = self._place_in_zone(ctx, vm, class_spec, policy_ids, zone, needs_host)
            return result, vm

        candidates = [z for z in zones if not z.is_deleting]
        if not candidates:
            raise PlacementFailed(f"no eligible zone for VM {vm.namespace}/{vm.name}")
        if not self.fault_domains_enabled:
            candidates = candidates[:1]

        pool_to_zone = {}
        for zone in candidates:
            for pool in zone.spec.resource_pool_moids:
                pool_to_zone[pool] = zone

        recommendation = self._recommend(ctx, vm, class_spec, policy_ids, list(pool_to_zone))
        zone = pool_to_zone.get(recommendation.resource_pool_moid)
        if zone is None:
            raise PlacementFailed(
                f"recommended resource pool {recommendation.resource_pool_moid} is not in any zone"
            )

        vm, recorded_zone = self.record_zone(vm, zone.name)
        if recorded_zone != zone.name:
            # Someone else picked a zone first; theirs wins
            logger.info(f"VM {vm.namespace}/{vm.name} already placed in zone {recorded_zone}, "
                        f"discarding recommendation for {zone.name}")
            zone = self._zone_by_name(zones, recorded_zone)
            return self._place_in_zone(ctx, vm, class_spec, policy_ids, zone, needs_host), vm

        logger.info(f"Placed VM {vm.namespace}/{vm.name} in zone {zone.name} "
                    f"(pool {recommendation.resource_pool_moid}, host {recommendation.host_name or '-'})")
        return self._result(zone, recommendation), vm

    def _zone_by_name(self, zones: List[Zone], zone_name: str) -> Zone:
        for zone in zones:
            if zone.name == zone_name:
                if zone.is_deleting:
                    raise ZoneUnavailable(zone_name)
                return zone
        raise ReferenceNotFound(f"zone {zone_name} not found")

    def _place_in_zone(self, ctx, vm, class_spec, policy_ids, zone: Zone, needs_host: bool) -> PlacementResult:
        pools = zone.spec.resource_pool_moids
        if not pools:
            raise PlacementFailed(f"zone {zone.name} has no resource pool")

        selected_node = vm.metadata.annotations.get(INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY)
        selected_moid = vm.metadata.annotations.get(INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY)
        if needs_host and selected_node and selected_moid:
            return PlacementResult(
                zone_name=zone.name,
                resource_pool_moid=pools[0],
                folder_moid=zone.spec.folder_moid,
                host_moid=selected_moid,
                host_name=selected_node,
            )

        if len(pools) == 1 and not needs_host:
            return PlacementResult(zone_name=zone.name, resource_pool_moid=pools[0],
                                   folder_moid=zone.spec.folder_moid)

        recommendation = self._recommend(ctx, vm, class_spec, policy_ids, pools)
        return self._result(zone, recommendation)

    def _recommend(self, ctx, vm, class_spec, policy_ids, pools: List[str]) -> Recommendation:
        config_spec = create_config_spec_for_placement(vm, class_spec, self.min_cpu_freq_mhz, policy_ids)
        ctx.check()
        try:
            recommendations = self.client.recommend(config_spec, pools)
        except ReconcileCancelled:
            raise
        except Exception as e:
            raise PlacementFailed(f"placement recommendation for VM {vm.namespace}/{vm.name} failed: {e}")
        if not recommendations:
            raise PlacementFailed(f"no placement recommendation for VM {vm.namespace}/{vm.name}")
        return recommendations[0]

    def _result(self, zone: Zone, recommendation: Recommendation) -> PlacementResult:
        return PlacementResult(
            zone_name=zone.name,
            resource_pool_moid=recommendation.resource_pool_moid,
            folder_moid=zone.spec.folder_moid,
            host_moid=recommendation.host_moid,
            host_name=recommendation.host_name,
            datastore_moid=recommendation.datastore_moids[0] if recommendation.datastore_moids else "",
        )

    def record_zone(self, vm: VirtualMachine, zone_name: str) -> Tuple[VirtualMachine, str]:
        """
        Set the zone label first-write-wins.

        Returns the stored VM and the zone it ended up labelled with,
        which is the previously stored label if one exists.
        """
        for _ in range(MAX_LABEL_WRITE_ATTEMPTS):
            current = self.store.get(VirtualMachine.kind, vm.namespace, vm.name)
            existing = current.metadata.labels.get(ZONE_LABEL_KEY)
            if existing:
                return current, existing
            current.metadata.labels[ZONE_LABEL_KEY] = zone_name
            try:
                return self.store.update(current), zone_name
            except ConflictError:
                logger.debug(f"Conflict labelling VM {vm.namespace}/{vm.name} with zone, re-reading")
        raise ConflictError(f"could not record zone for VM {vm.namespace}/{vm.name}")

    def reverse_lookup(self, vm: VirtualMachine, observed: ObservedVM) -> Optional[str]:
        """Zone of an existing VM: its label, its status, else the zone owning its resource pool."""
        label = vm.metadata.labels.get(ZONE_LABEL_KEY)
        if label:
            return label
        if vm.status.zone:
            return vm.status.zone
        for zone in self._zones(vm.namespace):
            if observed.resource_pool_moid in zone.spec.resource_pool_moids:
                return zone.name
        return None
