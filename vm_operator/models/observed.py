"""
Snapshots of live vCenter state, built fresh on every reconcile.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ObservedDisk(BaseModel):
    key: int
    label: str = ""
    controller_key: Optional[int] = None
    unit_number: Optional[int] = None
    capacity_bytes: int = 0
    file_name: str = ""


class ObservedNic(BaseModel):
    key: int
    label: str = ""
    network_name: str = ""
    # Port group key, opaque network id or standard network name
    network_id: str = ""
    card_type: str = ""
    mac_address: str = ""


class ObservedVM(BaseModel):
    """Live VM as seen on vCenter."""
    moid: str
    name: str = ""
    instance_uuid: str = ""
    bios_uuid: str = ""
    host: str = ""
    host_moid: str = ""
    resource_pool_moid: str = ""
    power_state: str = "poweredOff"
    num_cpus: int = 0
    memory_mb: int = 0
    disks: List[ObservedDisk] = Field(default_factory=list)
    nics: List[ObservedNic] = Field(default_factory=list)
    extra_config: Dict[str, str] = Field(default_factory=dict)
    guest_heartbeat: str = ""

    @property
    def max_device_key(self) -> int:
        keys = [d.key for d in self.disks] + [n.key for n in self.nics]
        return max(keys) if keys else 0

    def disk_by_key(self, key: int) -> Optional[ObservedDisk]:
        for disk in self.disks:
            if disk.key == key:
                return disk
        return None

    @property
    def boot_disk(self) -> Optional[ObservedDisk]:
        if not self.disks:
            return None
        return min(self.disks, key=lambda d: d.key)


class Recommendation(BaseModel):
    """One ranked placement recommendation."""
    resource_pool_moid: str
    host_moid: str = ""
    host_name: str = ""
    datastore_moids: List[str] = Field(default_factory=list)


class NetworkRef(BaseModel):
    """A resolved vSphere network."""
    moid: str
    name: str
    # Network, DistributedVirtualPortgroup, OpaqueNetwork
    network_type: str = "Network"
    switch_uuid: str = ""
    portgroup_key: str = ""


class CreateVMArgs(BaseModel):
    """Everything the client needs to materialize a new VM."""
    name: str
    image_provider_kind: str
    image_provider_id: str
    resource_pool_moid: str
    folder_moid: str = ""
    host_moid: str = ""
    datastore_moid: str = ""
    storage_policy_id: str = ""
    thin_provisioned: Optional[bool] = None
    eager_zeroed: Optional[bool] = None
