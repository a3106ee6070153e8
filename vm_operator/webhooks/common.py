"""
Shared admission plumbing: the AdmissionReview v1 request/response shapes,
field error formatting and the privileged account check.
"""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

ADMISSION_API_VERSION = "admission.k8s.io/v1"

CREATE = "CREATE"
UPDATE = "UPDATE"
DELETE = "DELETE"

# Cluster admin and the operator's own service account
PRIVILEGED_SYSTEM_ACCOUNTS = frozenset({
    "kubernetes-admin",
    "system:serviceaccount:vmware-system-vmop:vmware-system-vmop-default",
})


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class UserInfo(BaseModel):
    username: str = ""
    uid: str = ""
    groups: List[str] = Field(default_factory=list)


class AdmissionRequest(BaseModel):
    """The ``request`` member of an AdmissionReview."""

    model_config = ConfigDict(populate_by_name=True)

    uid: str
    kind: GroupVersionKind = Field(default_factory=GroupVersionKind)
    name: str = ""
    namespace: str = ""
    operation: str
    user_info: UserInfo = Field(default_factory=UserInfo, alias="userInfo")
    object: Optional[Dict[str, Any]] = None
    old_object: Optional[Dict[str, Any]] = Field(default=None, alias="oldObject")
    dry_run: bool = Field(default=False, alias="dryRun")

    @classmethod
    def from_review(cls, review: Dict[str, Any]) -> "AdmissionRequest":
        request = review.get("request")
        if not isinstance(request, dict):
            raise ValueError("AdmissionReview has no request")
        return cls.model_validate(request)

    @property
    def current(self) -> Dict[str, Any]:
        """The object the operation applies to; DELETE only carries the old one."""
        if self.operation == DELETE:
            return self.old_object or {}
        return self.object or {}


class AdmissionResponse(BaseModel):
    uid: str
    allowed: bool
    reasons: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    code: int = 200

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons)

    def to_review(self) -> Dict[str, Any]:
        """Wrap in an AdmissionReview v1 document."""
        response: Dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if not self.allowed:
            response["status"] = {
                "code": self.code,
                "reason": self.reason,
                "message": self.reason,
            }
        if self.warnings:
            response["warnings"] = self.warnings
        return {
            "apiVersion": ADMISSION_API_VERSION,
            "kind": "AdmissionReview",
            "response": response,
        }


def build_validation_response(request: AdmissionRequest, reasons: Optional[Iterable[str]] = None,
                              warnings: Optional[Iterable[str]] = None) -> AdmissionResponse:
    """Allowed when there are no reasons, denied with 403 otherwise."""
    reasons = list(reasons or [])
    return AdmissionResponse(
        uid=request.uid,
        allowed=not reasons,
        reasons=reasons,
        warnings=list(warnings or []),
        code=403 if reasons else 200,
    )


def allowed(request: AdmissionRequest) -> AdmissionResponse:
    return build_validation_response(request)


def errored(request: AdmissionRequest, code: int, message: str) -> AdmissionResponse:
    return AdmissionResponse(uid=request.uid, allowed=False, reasons=[message], code=code)


def label_path(key: str) -> str:
    return f"metadata.labels[{key}]"


def field_forbidden(path: str, detail: str) -> str:
    return f"{path}: Forbidden: {detail}"


def field_invalid(path: str, value: Any, detail: str) -> str:
    if isinstance(value, str):
        value = f'"{value}"'
    return f"{path}: Invalid value: {value}: {detail}"


def field_not_found(path: str, value: Any) -> str:
    if isinstance(value, str):
        value = f'"{value}"'
    return f"{path}: Not found: {value}"


def labels_of(obj: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return ((obj or {}).get("metadata") or {}).get("labels") or {}


def annotations_of(obj: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return ((obj or {}).get("metadata") or {}).get("annotations") or {}


class PrivilegedAccounts:
    """
    Identities that bypass user facing restrictions.

    The fixed system accounts are always included; ``privileged_users``
    comes from configuration and is injected at construction.
    """

    def __init__(self, privileged_users: Iterable[str] = (),
                 system_accounts: Iterable[str] = PRIVILEGED_SYSTEM_ACCOUNTS):
        self._accounts = frozenset(system_accounts) | frozenset(u for u in privileged_users if u)

    def __contains__(self, username: str) -> bool:
        return username in self._accounts

    def is_privileged(self, request: AdmissionRequest) -> bool:
        return request.user_info.username in self._accounts


class Validator:
    """
    Base for per-kind validators.

    Subclasses override any of ``validate_create``, ``validate_update``
    and ``validate_delete``; the defaults allow.
    """

    kind = ""

    @classmethod
    def from_config(cls, store, privileged: PrivilegedAccounts, config) -> "Validator":
        return cls(store, privileged)

    def validate(self, request: AdmissionRequest) -> AdmissionResponse:
        handler = {
            CREATE: self.validate_create,
            UPDATE: self.validate_update,
            DELETE: self.validate_delete,
        }.get(request.operation)
        if handler is None:
            return allowed(request)
        return handler(request)

    def validate_create(self, request: AdmissionRequest) -> AdmissionResponse:
        return allowed(request)

    def validate_update(self, request: AdmissionRequest) -> AdmissionResponse:
        return allowed(request)

    def validate_delete(self, request: AdmissionRequest) -> AdmissionResponse:
        return allowed(request)
