"""
Tolerant field extractors for Rally payloads.

WSAPI returns references as objects (``{"_refObjectName": ...}``) while the
Lookback API returns bare ids or strings, so every extractor accepts any shape
and returns None when nothing usable is present.
"""

import re
from typing import Any

UNKNOWN_PROJECT = "Unknown Project"

_PROJECT_REF = re.compile(r"/project/(\d+)", re.IGNORECASE)

_OWNER_NAME_KEYS = ("_refObjectName", "DisplayName", "Name", "UserName")
_STATUS_NAME_KEYS = ("_refObjectName", "Name", "DisplayName")


def non_empty_str(value: Any) -> str | None:
    """Return the value if it is a string with visible content."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def _name_from(value: Any, keys: tuple[str, ...]) -> str | None:
    if not value:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, dict):
        for key in keys:
            name = non_empty_str(value.get(key))
            if name:
                return name
    return None


def extract_owner_name(owner: Any) -> str | None:
    return _name_from(owner, _OWNER_NAME_KEYS)


def extract_status_name(status: Any) -> str | None:
    return _name_from(status, _STATUS_NAME_KEYS)


def extract_ready_flag(ready: Any) -> bool | None:
    """Tri-state ready flag: True, False or None when unknown."""
    if isinstance(ready, bool):
        return ready
    if isinstance(ready, str):
        normalized = ready.strip().lower()
        if normalized == "true":
            return True
        if normalized == "false":
            return False
    return None


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def extract_object_id(value: Any) -> int | None:
    """Numeric ObjectID from an int, float or numeric string."""
    return _to_int(value)


def extract_project_id(project: Any) -> int | None:
    """Project ObjectID from a bare id, a ref path or a reference object."""
    if isinstance(project, str):
        match = _PROJECT_REF.search(project)
        if match:
            return int(match.group(1))
        return _to_int(project)

    if isinstance(project, dict):
        ref = project.get("_ref")
        if isinstance(ref, str):
            match = _PROJECT_REF.search(ref)
            if match:
                return int(match.group(1))
        return _to_int(project.get("ObjectID"))

    return _to_int(project)


def extract_project_name(project: Any, project_names: dict[int, str]) -> str | None:
    """Project name via the batch-fetched id map, then the embedded name."""
    project_id = extract_project_id(project)
    if project_id is not None:
        resolved = project_names.get(project_id)
        if resolved:
            return resolved

    if isinstance(project, dict):
        return non_empty_str(project.get("_refObjectName")) or non_empty_str(
            project.get("Name")
        )
    return None


def extract_previous_values(snapshot: dict[str, Any]) -> dict[str, Any]:
    previous = snapshot.get("_PreviousValues")
    if isinstance(previous, dict):
        return previous
    return {}


def extract_changed_fields(snapshot: dict[str, Any]) -> list[str]:
    """Names of the fields a snapshot changed, excluding Lookback internals."""
    return [
        name
        for name in extract_previous_values(snapshot)
        if not str(name).startswith("_")
    ]


def normalize_schedule_state(value: str | None) -> str:
    """Lower-case and collapse whitespace/underscores so "In Progress" == "in-progress"."""
    return re.sub(r"[\s_]+", "-", (value or "").strip().lower())
