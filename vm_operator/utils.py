import re
from typing import Any, Optional

_QUANTITY_SUFFIXES = {
    "": 1,
    "k": 1000,
    "M": 1000 ** 2,
    "G": 1000 ** 3,
    "T": 1000 ** 4,
    "P": 1000 ** 5,
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "Pi": 1024 ** 5,
}

_QUANTITY_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([kMGTP]i?)?\s*$")


def parse_quantity(value: Any) -> int:
    """
    Parse a Kubernetes style quantity ("256Gi", "4G", "1024") into bytes.

    Integers are returned unchanged.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity: {value!r}")
    if isinstance(value, int):
        return value
    match = _QUANTITY_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid quantity: {value!r}")
    number, suffix = match.groups()
    return int(float(number) * _QUANTITY_SUFFIXES[suffix or ""])


def format_quantity(num_bytes: int) -> str:
    """Render bytes using the largest exact binary suffix."""
    for suffix in ("Pi", "Ti", "Gi", "Mi", "Ki"):
        unit = _QUANTITY_SUFFIXES[suffix]
        if num_bytes and num_bytes % unit == 0:
            return f"{num_bytes // unit}{suffix}"
    return str(num_bytes)


def get_path(obj: Any, path: str) -> Optional[Any]:
    """Walk a dotted path through nested dicts, returning None when absent."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def has_path(obj: Any, path: str) -> bool:
    """CEL style has(): true when every segment of the path is present and not null."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or current.get(part) is None:
            return False
        current = current[part]
    return True
