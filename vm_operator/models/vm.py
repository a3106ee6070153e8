"""
Pydantic models for VirtualMachine resources (desired state + status).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from vm_operator.constants import READY_CONDITION_TYPE
from vm_operator.models.meta import Condition, Quantity, Resource


class PowerState(str, Enum):
    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    SUSPENDED = "suspended"


class Phase(str, Enum):
    PENDING = "Pending"
    CREATED = "Created"
    ERROR = "Error"


class NetworkInterface(BaseModel):
    network_name: str = ""
    ethernet_card_type: str = "vmxnet3"


class InstanceVolumeClaim(BaseModel):
    storage_class: str
    size: Quantity


class PersistentVolumeClaimSource(BaseModel):
    claim_name: str
    read_only: bool = False
    # Set only for volumes generated from the class's instance storage
    instance_volume_claim: Optional[InstanceVolumeClaim] = None


class VsphereVolumeSource(BaseModel):
    device_key: Optional[int] = None
    capacity: Optional[Quantity] = None


class Volume(BaseModel):
    name: str
    persistent_volume_claim: Optional[PersistentVolumeClaimSource] = None
    vsphere_volume: Optional[VsphereVolumeSource] = None

    @property
    def is_claim_backed(self) -> bool:
        return self.persistent_volume_claim is not None

    @property
    def is_instance_storage(self) -> bool:
        return (
            self.persistent_volume_claim is not None
            and self.persistent_volume_claim.instance_volume_claim is not None
        )


class VolumeProvisioningOptions(BaseModel):
    thin_provisioned: Optional[bool] = None
    eager_zeroed: Optional[bool] = None


class AdvancedOptions(BaseModel):
    boot_disk_capacity: Optional[Quantity] = None
    default_volume_provisioning: Optional[VolumeProvisioningOptions] = None
    change_block_tracking: Optional[bool] = None


class VMMetadataTransport(str, Enum):
    EXTRA_CONFIG = "ExtraConfig"
    OVF_ENV = "OvfEnv"


class VMMetadata(BaseModel):
    config_map_name: str
    transport: VMMetadataTransport = VMMetadataTransport.EXTRA_CONFIG


class VirtualMachineSpec(BaseModel):
    class_name: str
    image_name: str
    storage_class: str = ""
    power_state: PowerState = PowerState.POWERED_ON
    network_interfaces: List[NetworkInterface] = Field(default_factory=list)
    volumes: List[Volume] = Field(default_factory=list)
    advanced_options: Optional[AdvancedOptions] = None
    resource_policy_name: str = ""
    vm_metadata: Optional[VMMetadata] = None


class VolumeStatus(BaseModel):
    name: str
    attached: bool = False
    error: str = ""


class VirtualMachineStatus(BaseModel):
    phase: Optional[Phase] = None
    power_state: Optional[PowerState] = None
    unique_id: str = ""
    instance_uuid: str = ""
    bios_uuid: str = ""
    host: str = ""
    zone: str = ""
    guest_heartbeat: str = ""
    volumes: List[VolumeStatus] = Field(default_factory=list)
    conditions: List[Condition] = Field(default_factory=list)
    observed_generation: int = 0

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(self, condition: Condition):
        """Insert or replace, keeping the transition time when status is unchanged."""
        existing = self.get_condition(condition.type)
        if existing is not None and existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        elif condition.last_transition_time is None:
            condition.last_transition_time = datetime.now(timezone.utc)
        self.conditions = [c for c in self.conditions if c.type != condition.type]
        self.conditions.append(condition)

    def mark_ready(self, generation: int):
        self.set_condition(Condition(
            type=READY_CONDITION_TYPE,
            status="True",
            observed_generation=generation,
        ))

    def mark_not_ready(self, generation: int, reason: str, message: str, severity: str = ""):
        self.set_condition(Condition(
            type=READY_CONDITION_TYPE,
            status="False",
            reason=reason,
            message=message,
            severity=severity,
            observed_generation=generation,
        ))


class VirtualMachine(Resource):
    kind: ClassVar[str] = "VirtualMachine"

    spec: VirtualMachineSpec
    status: VirtualMachineStatus = Field(default_factory=VirtualMachineStatus)

    @property
    def instance_storage_volumes(self) -> List[Volume]:
        return [v for v in self.spec.volumes if v.is_instance_storage]
