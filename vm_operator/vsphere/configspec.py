"""
ConfigSpec synthesis.

Pure functions turning a VirtualMachineClass (plus the VM's instance
storage volumes) into a ``vim.vm.ConfigSpec``. Nothing here talks to
vCenter; the output is deterministic for identical input so that specs
built on different reconciles compare equal.

Raw class overrides are base64 encoded vim25 XML of a
VirtualMachineConfigSpec, the same document govc and the vSphere SDKs
marshal, e.g.::

    <obj xmlns:vim25="urn:vim25" xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
         xsi:type="vim25:VirtualMachineConfigSpec"><name>dummy-VM</name></obj>
"""

import base64
import binascii
import json
import logging
import math
from typing import Dict, Iterable, List, Optional
from xml.parsers.expat import ExpatError

from pyVmomi import SoapAdapter, vim

from vm_operator.constants import DEFAULT_EXTRA_CONFIG, DEFAULT_SCSI_CONTROLLER_KEY, GUESTINFO_PREFIX
from vm_operator.errors import InvalidClassConfig, UnknownStorageClass
from vm_operator.models import VirtualMachine, VirtualMachineClassSpec, Volume

logger = logging.getLogger(__name__)

VM_ANNOTATION = "Virtual Machine managed by the vSphere Virtual Machine service"

# Temporary keys handed to devices added by the operator start here, above
# any key vCenter assigns to existing devices.
NEW_DEVICE_KEY_START = 100000

# PlaceVmsXCluster wants at least one disk; a tiny stand-in for the boot disk
PLACEMENT_DUMMY_DISK_BYTES = 1024 * 1024

SPS_EXTENSION_KEY = "com.vmware.vim.sps"


class DeviceKeyAllocator:
    """Hands out increasing device keys above every key already in use."""

    def __init__(self, in_use: Iterable[int] = (), start: int = NEW_DEVICE_KEY_START):
        used = [k for k in in_use if k is not None]
        self._next = max([start] + [k + 1 for k in used])

    def next(self) -> int:
        key = self._next
        self._next += 1
        return key


# ---------------------------------------------------------------------------
# Raw override decoding
# ---------------------------------------------------------------------------

def decode_config_spec(encoded: str) -> vim.vm.ConfigSpec:
    """
    Decode a class ConfigSpec override.

    Raises InvalidClassConfig if the document is not valid base64, not
    well formed XML, or not a VirtualMachineConfigSpec.
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidClassConfig(f"failed to decode class ConfigSpec: {e}")

    try:
        config_spec = SoapAdapter.Deserialize(raw)
    except (ExpatError, KeyError, TypeError, AttributeError, ValueError) as e:
        raise InvalidClassConfig(f"failed to unmarshal class ConfigSpec: {e}")

    if not isinstance(config_spec, vim.vm.ConfigSpec):
        raise InvalidClassConfig(f"class ConfigSpec has type {type(config_spec).__name__}")
    return config_spec


# ---------------------------------------------------------------------------
# Resource conversion
# ---------------------------------------------------------------------------

def cpu_quantity_to_mhz(millicores: int, min_cpu_freq_mhz: int) -> int:
    return int(math.ceil(millicores * min_cpu_freq_mhz / 1000.0))


def memory_quantity_to_mb(num_bytes: int) -> int:
    return int(math.ceil(num_bytes / (1024.0 * 1024.0)))


def _allocation(reservation: Optional[int], limit: Optional[int]) -> vim.ResourceAllocationInfo:
    allocation = vim.ResourceAllocationInfo(
        shares=vim.SharesInfo(level=vim.SharesInfo.Level.normal, shares=0)
    )
    if reservation:
        allocation.reservation = reservation
    if limit:
        allocation.limit = limit
    return allocation


def create_config_spec(name: str, class_spec: VirtualMachineClassSpec, min_cpu_freq_mhz: int,
                       extra_config: Optional[Dict[str, str]] = None) -> vim.vm.ConfigSpec:
    """
    Build the hardware part of a VM's ConfigSpec from its class.

    Starts from the class's raw override when it has one; CPU and memory
    always come from the class hardware.
    """
    if class_spec.config_spec:
        config_spec = decode_config_spec(class_spec.config_spec)
    else:
        config_spec = vim.vm.ConfigSpec()

    config_spec.name = name
    config_spec.annotation = VM_ANNOTATION
    config_spec.numCPUs = class_spec.hardware.cpus
    config_spec.memoryMB = memory_quantity_to_mb(class_spec.hardware.memory)

    resources = class_spec.policies.resources
    cpu_reservation = cpu_limit = None
    if min_cpu_freq_mhz:
        if resources.requests.cpu:
            cpu_reservation = cpu_quantity_to_mhz(resources.requests.cpu, min_cpu_freq_mhz)
        if resources.limits.cpu:
            cpu_limit = cpu_quantity_to_mhz(resources.limits.cpu, min_cpu_freq_mhz)
    config_spec.cpuAllocation = _allocation(cpu_reservation, cpu_limit)

    mem_reservation = memory_quantity_to_mb(resources.requests.memory) if resources.requests.memory else None
    mem_limit = memory_quantity_to_mb(resources.limits.memory) if resources.limits.memory else None
    config_spec.memoryAllocation = _allocation(mem_reservation, mem_limit)

    if extra_config:
        config_spec.extraConfig = extra_config_options(extra_config)

    return config_spec


def extra_config_options(values: Dict[str, str]) -> List[vim.option.OptionValue]:
    return [vim.option.OptionValue(key=k, value=values[k]) for k in sorted(values)]


def build_extra_config(global_extra_config: Optional[Dict[str, str]] = None,
                       metadata: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    ExtraConfig every VM should carry: the defaults, the operator wide
    JSON extra config, then the ``guestinfo.*`` keys of the VM's
    metadata ConfigMap. Anything else in the ConfigMap is ignored.
    """
    values = dict(DEFAULT_EXTRA_CONFIG)
    values.update(global_extra_config or {})
    for key, value in (metadata or {}).items():
        if key.startswith(GUESTINFO_PREFIX):
            values[key] = value
    return values


def parse_global_extra_config(raw: str) -> Dict[str, str]:
    """Parse the operator wide JSON extra config setting."""
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("global extra config must be a JSON object")
    return {str(k): str(v) for k, v in parsed.items()}


# ---------------------------------------------------------------------------
# Disks
# ---------------------------------------------------------------------------

def _storage_profile(policy_id: str) -> vim.vm.DefinedProfileSpec:
    return vim.vm.DefinedProfileSpec(
        profileId=policy_id,
        profileData=vim.vm.ProfileRawData(extensionKey=SPS_EXTENSION_KEY),
    )


def create_disk_device_change(key: int, capacity_bytes: int, policy_id: Optional[str],
                              thin_provisioned: bool = False, eager_zeroed: bool = False,
                              controller_key: int = DEFAULT_SCSI_CONTROLLER_KEY) -> vim.vm.device.VirtualDeviceSpec:
    disk = vim.vm.device.VirtualDisk()
    disk.key = key
    disk.controllerKey = controller_key
    disk.capacityInBytes = capacity_bytes
    disk.backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo()
    disk.backing.diskMode = 'persistent'
    disk.backing.thinProvisioned = thin_provisioned
    if eager_zeroed and not thin_provisioned:
        disk.backing.eagerlyScrub = True

    disk_spec = vim.vm.device.VirtualDeviceSpec()
    disk_spec.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
    disk_spec.fileOperation = vim.vm.device.VirtualDeviceSpec.FileOperation.create
    disk_spec.device = disk
    if policy_id:
        disk_spec.profile = [_storage_profile(policy_id)]
    return disk_spec


def create_instance_storage_disk_devices(volumes: List[Volume], policy_ids: Dict[str, str],
                                         allocator: DeviceKeyAllocator) -> List[vim.vm.device.VirtualDeviceSpec]:
    """One add-disk device change per instance storage volume, in volume order."""
    changes = []
    for volume in volumes:
        claim = volume.persistent_volume_claim.instance_volume_claim
        policy_id = policy_ids.get(claim.storage_class)
        if not policy_id:
            raise UnknownStorageClass(claim.storage_class)
        changes.append(create_disk_device_change(allocator.next(), claim.size, policy_id))
    return changes


def create_config_spec_for_placement(vm: VirtualMachine, class_spec: VirtualMachineClassSpec,
                                     min_cpu_freq_mhz: int, policy_ids: Dict[str, str],
                                     allocator: Optional[DeviceKeyAllocator] = None) -> vim.vm.ConfigSpec:
    """
    ConfigSpec used only to ask vCenter for a placement recommendation.

    Instance storage disks are included since their footprint decides
    which hosts and datastores are eligible.
    """
    config_spec = create_config_spec(vm.name, class_spec, min_cpu_freq_mhz)
    if allocator is None:
        allocator = DeviceKeyAllocator(device_keys(config_spec))

    vm_policy_id = policy_ids.get(vm.spec.storage_class) if vm.spec.storage_class else None
    config_spec.deviceChange.append(create_disk_device_change(
        allocator.next(), PLACEMENT_DUMMY_DISK_BYTES, vm_policy_id, thin_provisioned=True,
    ))
    config_spec.deviceChange.extend(
        create_instance_storage_disk_devices(vm.instance_storage_volumes, policy_ids, allocator)
    )
    return config_spec


def device_keys(config_spec: vim.vm.ConfigSpec) -> List[int]:
    """Keys of every device carried by the spec's device changes."""
    return [
        change.device.key
        for change in config_spec.deviceChange
        if change.device is not None and change.device.key is not None
    ]
