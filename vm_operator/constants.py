"""Well-known label, annotation and naming constants."""

# Topology
ZONE_LABEL_KEY = "topology.kubernetes.io/zone"
REQUESTED_TOPOLOGY_ANNOTATION_KEY = "csi.vsphere.volume-requested-topology"

# Instance storage
INSTANCE_STORAGE_LABEL_KEY = "vmoperator.vmware.com/instance-storage-resource"
INSTANCE_STORAGE_SELECTED_NODE_ANNOTATION_KEY = "vmoperator.vmware.com/instance-storage-selected-node"
INSTANCE_STORAGE_SELECTED_NODE_MOID_ANNOTATION_KEY = "vmoperator.vmware.com/instance-storage-selected-node-moid"
INSTANCE_STORAGE_PVCS_BOUND_ANNOTATION_KEY = "vmoperator.vmware.com/instance-storage-pvcs-bound"
INSTANCE_STORAGE_PVC_NAME_PREFIX = "instance-pvc-"
CLAIM_SELECTED_NODE_ANNOTATION_KEY = "volume.kubernetes.io/selected-node"

# Resource policy
CLUSTER_MODULE_GROUP_ANNOTATION_KEY = "vsphere-cluster-module-group"

# StorageClass parameter holding the SPBM policy ID
STORAGE_POLICY_ID_PARAMETER = "storagePolicyID"

# ExtraConfig defaults applied to every VM
DEFAULT_EXTRA_CONFIG = {
    "disk.enableUUID": "TRUE",
    "vmware.tools.gosc.ignoretoolscheck": "TRUE",
}
GUESTINFO_PREFIX = "guestinfo."

# Condition types / reasons
READY_CONDITION_TYPE = "Ready"

# Default SCSI controller key for disks added by the operator
DEFAULT_SCSI_CONTROLLER_KEY = 1000
