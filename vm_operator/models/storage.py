"""
Pydantic models for storage claims, zones, quotas and events.
"""

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from vm_operator.models.meta import Quantity, Resource


class StorageClaimSpec(BaseModel):
    storage_class: str
    size: Quantity
    # Owning VM by name (same namespace)
    vm_name: str = ""


class StorageClaimStatus(BaseModel):
    # None until the volume controller reports on the claim
    attached: Optional[bool] = None
    error: str = ""


class StorageClaim(Resource):
    kind: ClassVar[str] = "PersistentVolumeClaim"

    spec: StorageClaimSpec
    status: StorageClaimStatus = Field(default_factory=StorageClaimStatus)


class ZoneSpec(BaseModel):
    # Namespace resource pools backing the zone, one per vSphere cluster
    resource_pool_moids: List[str] = Field(default_factory=list)
    folder_moid: str = ""


class Zone(Resource):
    kind: ClassVar[str] = "Zone"

    spec: ZoneSpec = Field(default_factory=ZoneSpec)


class StorageQuotaSpec(BaseModel):
    storage_class: str
    hard: Quantity


class StorageQuotaStatus(BaseModel):
    used: Quantity = 0


class StorageQuota(Resource):
    kind: ClassVar[str] = "StorageQuota"

    spec: StorageQuotaSpec
    status: StorageQuotaStatus = Field(default_factory=StorageQuotaStatus)


class Event(Resource):
    kind: ClassVar[str] = "Event"

    involved_kind: str
    involved_name: str
    type: str = "Normal"  # Normal, Warning
    reason: str = ""
    message: str = ""
    timestamp: Optional[datetime] = None
