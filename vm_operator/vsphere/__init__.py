"""vSphere side of the operator: client, ConfigSpec synthesis, placement and instance storage"""

from .client import POWER_OFF, POWER_ON, SUSPEND, VSphereClient
from .configspec import (
    DeviceKeyAllocator,
    build_extra_config,
    create_config_spec,
    create_config_spec_for_placement,
    create_instance_storage_disk_devices,
    decode_config_spec,
    parse_global_extra_config,
)
from .faults import classify_fault, parse_fault
from .instance_storage import GateState, InstanceStorageGate, verify_attached
from .network import NetworkProvider
from .placement import PlacementPlanner, PlacementResult

__all__ = [
    'POWER_OFF', 'POWER_ON', 'SUSPEND', 'VSphereClient',
    'DeviceKeyAllocator', 'build_extra_config', 'create_config_spec', 'create_config_spec_for_placement',
    'create_instance_storage_disk_devices', 'decode_config_spec', 'parse_global_extra_config',
    'classify_fault', 'parse_fault',
    'GateState', 'InstanceStorageGate', 'verify_attached',
    'NetworkProvider',
    'PlacementPlanner', 'PlacementResult',
]
