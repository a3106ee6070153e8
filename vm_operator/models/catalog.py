"""
Pydantic models for the resources a VirtualMachine references:
classes, images, storage classes, resource policies and config maps.
"""

from enum import Enum
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from vm_operator.constants import STORAGE_POLICY_ID_PARAMETER
from vm_operator.models.meta import Quantity, Resource


class InstanceStorageVolume(BaseModel):
    size: Quantity


class InstanceStorage(BaseModel):
    storage_class: str = ""
    volumes: List[InstanceStorageVolume] = Field(default_factory=list)


class VirtualMachineClassHardware(BaseModel):
    cpus: int
    memory: Quantity
    instance_storage: InstanceStorage = Field(default_factory=InstanceStorage)


class VirtualMachineResourceSpec(BaseModel):
    cpu: Optional[int] = None  # millicores
    memory: Optional[Quantity] = None


class VirtualMachineClassResources(BaseModel):
    requests: VirtualMachineResourceSpec = Field(default_factory=VirtualMachineResourceSpec)
    limits: VirtualMachineResourceSpec = Field(default_factory=VirtualMachineResourceSpec)


class VirtualMachineClassPolicies(BaseModel):
    resources: VirtualMachineClassResources = Field(default_factory=VirtualMachineClassResources)


class VirtualMachineClassSpec(BaseModel):
    hardware: VirtualMachineClassHardware
    policies: VirtualMachineClassPolicies = Field(default_factory=VirtualMachineClassPolicies)
    # Base64 encoded vim25 XML of a VirtualMachineConfigSpec overriding the generated one
    config_spec: Optional[str] = None


class VirtualMachineClass(Resource):
    kind: ClassVar[str] = "VirtualMachineClass"
    namespaced: ClassVar[bool] = False

    spec: VirtualMachineClassSpec


class ImageProviderKind(str, Enum):
    VIRTUAL_MACHINE = "VirtualMachine"
    CONTENT_LIBRARY_ITEM = "ContentLibraryItem"


class VirtualMachineImageSpec(BaseModel):
    provider_kind: ImageProviderKind = ImageProviderKind.VIRTUAL_MACHINE
    # Template VM moid or content library item id
    provider_id: str


class VirtualMachineImage(Resource):
    kind: ClassVar[str] = "VirtualMachineImage"
    namespaced: ClassVar[bool] = False

    spec: VirtualMachineImageSpec


class StorageClass(Resource):
    kind: ClassVar[str] = "StorageClass"
    namespaced: ClassVar[bool] = False

    parameters: Dict[str, str] = Field(default_factory=dict)

    @property
    def storage_policy_id(self) -> Optional[str]:
        return self.parameters.get(STORAGE_POLICY_ID_PARAMETER)


class ClusterModuleStatus(BaseModel):
    group_name: str
    module_uuid: str
    cluster_moid: str = ""


class ResourcePolicySpec(BaseModel):
    resource_pool_name: str = ""
    folder_name: str = ""
    cluster_module_groups: List[str] = Field(default_factory=list)


class ResourcePolicyStatus(BaseModel):
    cluster_modules: List[ClusterModuleStatus] = Field(default_factory=list)


class VirtualMachineSetResourcePolicy(Resource):
    kind: ClassVar[str] = "VirtualMachineSetResourcePolicy"

    spec: ResourcePolicySpec = Field(default_factory=ResourcePolicySpec)
    status: ResourcePolicyStatus = Field(default_factory=ResourcePolicyStatus)


class ConfigMap(Resource):
    kind: ClassVar[str] = "ConfigMap"

    data: Dict[str, str] = Field(default_factory=dict)
