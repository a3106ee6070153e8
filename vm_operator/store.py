"""
Declarative store clients.

Two implementations share one surface:

- InMemoryStore: thread-safe, process local, supports watch callbacks.
  Used by tests and when the operator is embedded.
- RestStore: talks to the resource API over HTTP with requests, using
  resourceVersion preconditions for optimistic concurrency.

Both return deep copies so callers never share mutable objects.
"""

import itertools
import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Type

import requests

from vm_operator.errors import ConflictError, NotFoundError, TransientRemoteError
from vm_operator.models import KINDS, Resource

logger = logging.getLogger(__name__)

WatchHandler = Callable[[str, Resource], None]

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


def _matches_labels(obj: Resource, label_selector: Optional[Dict[str, str]]) -> bool:
    if not label_selector:
        return True
    labels = obj.metadata.labels
    return all(labels.get(k) == v for k, v in label_selector.items())


def _spec_fingerprint(obj: Resource) -> dict:
    """Everything except metadata and status; a change bumps generation."""
    return obj.model_dump(exclude={"metadata", "status"}, mode="json")


class InMemoryStore:
    """Process local store with update-with-conflict-detection semantics."""

    def __init__(self):
        self._lock = threading.RLock()
        self._objects: Dict[Tuple[str, Optional[str], str], Resource] = {}
        self._versions = itertools.count(1)
        self._watchers: Dict[str, List[WatchHandler]] = defaultdict(list)

    def _key(self, kind: str, namespace: Optional[str], name: str):
        model = KINDS.get(kind)
        if model is not None and not model.namespaced:
            namespace = None
        return kind, namespace, name

    def _notify(self, event_type: str, obj: Resource):
        for handler in list(self._watchers.get(obj.kind, [])):
            try:
                handler(event_type, obj.model_copy(deep=True))
            except Exception as e:
                logger.error(f"Watch handler for {obj.kind} failed: {e}", exc_info=True)

    def watch(self, kind: str, handler: WatchHandler):
        """Register a callback invoked on every change to objects of ``kind``."""
        with self._lock:
            self._watchers[kind].append(handler)

    def get(self, kind: str, namespace: Optional[str], name: str) -> Resource:
        with self._lock:
            obj = self._objects.get(self._key(kind, namespace, name))
            if obj is None:
                raise NotFoundError(kind, namespace, name)
            return obj.model_copy(deep=True)

    def list(self, kind: str, namespace: Optional[str] = None,
             label_selector: Optional[Dict[str, str]] = None) -> List[Resource]:
        with self._lock:
            result = []
            for (obj_kind, obj_ns, _), obj in self._objects.items():
                if obj_kind != kind:
                    continue
                if namespace is not None and obj_ns is not None and obj_ns != namespace:
                    continue
                if _matches_labels(obj, label_selector):
                    result.append(obj.model_copy(deep=True))
            return sorted(result, key=lambda o: (o.metadata.namespace or "", o.metadata.name))

    def create(self, obj: Resource) -> Resource:
        with self._lock:
            key = self._key(obj.kind, obj.metadata.namespace, obj.metadata.name)
            if key in self._objects:
                raise ConflictError(f"{obj} already exists")
            stored = obj.model_copy(deep=True)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.generation = 1
            stored.metadata.resource_version = str(next(self._versions))
            stored.metadata.creation_timestamp = datetime.now(timezone.utc)
            self._objects[key] = stored
            result = stored.model_copy(deep=True)
        self._notify(ADDED, result)
        return result

    def update(self, obj: Resource) -> Resource:
        """Replace metadata and spec; status is left untouched."""
        with self._lock:
            key = self._key(obj.kind, obj.metadata.namespace, obj.metadata.name)
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(obj.kind, obj.metadata.namespace, obj.metadata.name)
            if obj.metadata.resource_version != current.metadata.resource_version:
                raise ConflictError(
                    f"{obj} has been modified (have {obj.metadata.resource_version}, "
                    f"stored {current.metadata.resource_version})"
                )
            stored = obj.model_copy(deep=True)
            if hasattr(current, "status"):
                stored.status = current.status.model_copy(deep=True)
            stored.metadata.uid = current.metadata.uid
            stored.metadata.creation_timestamp = current.metadata.creation_timestamp
            # deletionTimestamp is never cleared once set
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            stored.metadata.generation = current.metadata.generation
            if _spec_fingerprint(stored) != _spec_fingerprint(current):
                stored.metadata.generation += 1
            stored.metadata.resource_version = str(next(self._versions))

            if stored.is_deleting and not stored.metadata.finalizers:
                del self._objects[key]
                result = stored.model_copy(deep=True)
                event = DELETED
            else:
                self._objects[key] = stored
                result = stored.model_copy(deep=True)
                event = MODIFIED
        self._notify(event, result)
        return result

    def update_status(self, obj: Resource) -> Resource:
        """Replace only the status sub-object."""
        with self._lock:
            key = self._key(obj.kind, obj.metadata.namespace, obj.metadata.name)
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(obj.kind, obj.metadata.namespace, obj.metadata.name)
            if obj.metadata.resource_version != current.metadata.resource_version:
                raise ConflictError(f"{obj} status has been modified")
            stored = current.model_copy(deep=True)
            stored.status = obj.status.model_copy(deep=True)
            stored.metadata.resource_version = str(next(self._versions))
            self._objects[key] = stored
            result = stored.model_copy(deep=True)
        self._notify(MODIFIED, result)
        return result

    def delete(self, kind: str, namespace: Optional[str], name: str):
        """Delete, or mark for deletion when finalizers are present."""
        with self._lock:
            key = self._key(kind, namespace, name)
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(kind, namespace, name)
            if current.metadata.finalizers:
                if current.metadata.deletion_timestamp is None:
                    current.metadata.deletion_timestamp = datetime.now(timezone.utc)
                    current.metadata.resource_version = str(next(self._versions))
                result = current.model_copy(deep=True)
                event = MODIFIED
            else:
                del self._objects[key]
                result = current.model_copy(deep=True)
                event = DELETED
        self._notify(event, result)


class RestStore:
    """
    Store backed by an HTTP resource API.

    Objects live at ``/apis/<kind>/namespaces/<ns>/<name>`` (or
    ``/apis/<kind>/<name>`` when cluster scoped). Writes carry the
    object's resourceVersion in ``If-Match``; 409/412 surface as
    ConflictError.
    """

    def __init__(self, base_url: str, token: str = "", verify_ssl: bool = False, timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = verify_ssl
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _model(self, kind: str) -> Type[Resource]:
        model = KINDS.get(kind)
        if model is None:
            raise ValueError(f"Unknown kind: {kind}")
        return model

    def _url(self, kind: str, namespace: Optional[str] = None, name: Optional[str] = None) -> str:
        model = self._model(kind)
        url = f"{self.base_url}/apis/{kind}"
        if model.namespaced and namespace:
            url += f"/namespaces/{namespace}"
        if name:
            url += f"/{name}"
        return url

    def _request(self, method: str, url: str, kind: str, namespace: Optional[str],
                 name: Optional[str], **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransientRemoteError(f"store request {method} {url} failed: {e}")
        if response.status_code == 404:
            raise NotFoundError(kind, namespace, name or "")
        if response.status_code in (409, 412):
            raise ConflictError(f"{kind} {namespace}/{name} has been modified")
        if response.status_code >= 500:
            raise TransientRemoteError(f"store returned HTTP {response.status_code} for {method} {url}")
        response.raise_for_status()
        return response

    def _decode(self, kind: str, data: dict) -> Resource:
        return self._model(kind).model_validate(data)

    def get(self, kind: str, namespace: Optional[str], name: str) -> Resource:
        response = self._request("GET", self._url(kind, namespace, name), kind, namespace, name)
        return self._decode(kind, response.json())

    def list(self, kind: str, namespace: Optional[str] = None,
             label_selector: Optional[Dict[str, str]] = None) -> List[Resource]:
        params = {}
        if label_selector:
            params["labelSelector"] = ",".join(f"{k}={v}" for k, v in sorted(label_selector.items()))
        response = self._request("GET", self._url(kind, namespace), kind, namespace, None, params=params)
        return [self._decode(kind, item) for item in response.json().get("items", [])]

    def create(self, obj: Resource) -> Resource:
        response = self._request(
            "POST", self._url(obj.kind, obj.metadata.namespace), obj.kind,
            obj.metadata.namespace, obj.metadata.name, json=obj.model_dump(mode="json"),
        )
        return self._decode(obj.kind, response.json())

    def _put(self, obj: Resource, suffix: str = "") -> Resource:
        url = self._url(obj.kind, obj.metadata.namespace, obj.metadata.name) + suffix
        response = self._request(
            "PUT", url, obj.kind, obj.metadata.namespace, obj.metadata.name,
            json=obj.model_dump(mode="json"),
            headers={"If-Match": obj.metadata.resource_version},
        )
        return self._decode(obj.kind, response.json())

    def update(self, obj: Resource) -> Resource:
        return self._put(obj)

    def update_status(self, obj: Resource) -> Resource:
        return self._put(obj, "/status")

    def delete(self, kind: str, namespace: Optional[str], name: str):
        self._request("DELETE", self._url(kind, namespace, name), kind, namespace, name)
