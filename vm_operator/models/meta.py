"""
Pydantic models shared by every stored resource.
"""

from datetime import datetime
from typing import Annotated, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, BeforeValidator, Field

from vm_operator.utils import parse_quantity

# Byte count accepting "256Gi" style input
Quantity = Annotated[int, BeforeValidator(parse_quantity)]


class ObjectMeta(BaseModel):
    """Standard object metadata."""
    name: str
    namespace: Optional[str] = None
    uid: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    generation: int = 1
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


class Resource(BaseModel):
    """Base class for anything kept in the declarative store."""

    kind: ClassVar[str] = ""
    namespaced: ClassVar[bool] = True

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    @property
    def key(self) -> Tuple[Optional[str], str]:
        return self.metadata.namespace, self.metadata.name

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def __str__(self) -> str:
        if self.metadata.namespace:
            return f"{self.kind} {self.metadata.namespace}/{self.metadata.name}"
        return f"{self.kind} {self.metadata.name}"


class Condition(BaseModel):
    """Status condition."""
    type: str
    status: str  # True, False, Unknown
    reason: str = ""
    message: str = ""
    # Error for failures that need the spec to change, empty otherwise
    severity: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[datetime] = None
