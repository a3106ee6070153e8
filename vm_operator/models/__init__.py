"""Pydantic models for VM Operator resources"""

from .meta import Condition, ObjectMeta, Quantity, Resource
from .vm import (
    AdvancedOptions,
    InstanceVolumeClaim,
    NetworkInterface,
    PersistentVolumeClaimSource,
    Phase,
    PowerState,
    VirtualMachine,
    VirtualMachineSpec,
    VirtualMachineStatus,
    VMMetadata,
    VMMetadataTransport,
    Volume,
    VolumeProvisioningOptions,
    VolumeStatus,
    VsphereVolumeSource,
)
from .catalog import (
    ClusterModuleStatus,
    ConfigMap,
    ImageProviderKind,
    InstanceStorage,
    InstanceStorageVolume,
    ResourcePolicySpec,
    ResourcePolicyStatus,
    StorageClass,
    VirtualMachineClass,
    VirtualMachineClassHardware,
    VirtualMachineClassPolicies,
    VirtualMachineClassResources,
    VirtualMachineClassSpec,
    VirtualMachineImage,
    VirtualMachineImageSpec,
    VirtualMachineResourceSpec,
    VirtualMachineSetResourcePolicy,
)
from .storage import (
    Event,
    StorageClaim,
    StorageClaimSpec,
    StorageClaimStatus,
    StorageQuota,
    StorageQuotaSpec,
    StorageQuotaStatus,
    Zone,
    ZoneSpec,
)
from .observed import (
    CreateVMArgs,
    NetworkRef,
    ObservedDisk,
    ObservedNic,
    ObservedVM,
    Recommendation,
)

# Kind name -> model, used by the store to (de)serialize objects
KINDS = {
    model.kind: model
    for model in (
        VirtualMachine,
        VirtualMachineClass,
        VirtualMachineImage,
        StorageClass,
        VirtualMachineSetResourcePolicy,
        ConfigMap,
        StorageClaim,
        Zone,
        StorageQuota,
        Event,
    )
}

__all__ = [
    'Condition', 'ObjectMeta', 'Quantity', 'Resource',
    'AdvancedOptions', 'InstanceVolumeClaim', 'NetworkInterface', 'PersistentVolumeClaimSource',
    'Phase', 'PowerState', 'VirtualMachine', 'VirtualMachineSpec', 'VirtualMachineStatus',
    'VMMetadata', 'VMMetadataTransport', 'Volume', 'VolumeProvisioningOptions', 'VolumeStatus',
    'VsphereVolumeSource',
    'ClusterModuleStatus', 'ConfigMap', 'ImageProviderKind', 'InstanceStorage', 'InstanceStorageVolume',
    'ResourcePolicySpec', 'ResourcePolicyStatus', 'StorageClass', 'VirtualMachineClass',
    'VirtualMachineClassHardware', 'VirtualMachineClassPolicies', 'VirtualMachineClassResources',
    'VirtualMachineClassSpec', 'VirtualMachineImage', 'VirtualMachineImageSpec',
    'VirtualMachineResourceSpec', 'VirtualMachineSetResourcePolicy',
    'Event', 'StorageClaim', 'StorageClaimSpec', 'StorageClaimStatus', 'StorageQuota',
    'StorageQuotaSpec', 'StorageQuotaStatus', 'Zone', 'ZoneSpec',
    'CreateVMArgs', 'NetworkRef', 'ObservedDisk', 'ObservedNic', 'ObservedVM', 'Recommendation',
    'KINDS',
]
