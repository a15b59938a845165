"""State document shape, conflict records and built-in validators."""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

VERSION_KEY = "version"
TIMESTAMP_KEY = "timestamp"
SCHEMA_VERSION_KEY = "_schema_version"
RESERVED_KEYS = frozenset({VERSION_KEY, TIMESTAMP_KEY, SCHEMA_VERSION_KEY})

REQUIRED_KEYS = ("activeTab",)

KNOWN_TABS = (
    "general",
    "menu",
    "adminbar",
    "content",
    "logos",
    "advanced",
)

Validator = Callable[[Any], bool]


class ConflictStrategy(StrEnum):
    """How a diverging persisted or broadcast document is reconciled."""

    TIMESTAMP = "timestamp"
    MERGE = "merge"
    MANUAL = "manual"


class ConflictResolution(StrEnum):
    """Answer handed back by a caller-mediated resolver."""

    USE_STORED = "use_stored"
    USE_CURRENT = "use_current"
    MERGE = "merge"


class ConflictRecord(BaseModel):
    """Transient description of a divergence; never persisted."""

    type: Literal["timestamp", "version"]
    source: str
    stored_version: int
    stored_timestamp: int
    current_version: int
    current_timestamp: int
    stored_state: dict[str, Any]
    current_state: dict[str, Any]


class StateUpdateMessage(BaseModel):
    """Inter-context broadcast envelope; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["state-update"] = "state-update"
    state: dict[str, Any]
    timestamp: int


class StateHealth(BaseModel):
    size_bytes: int = Field(ge=0)
    max_bytes: int
    version: int
    timestamp: int
    corrupted: bool
    sync_enabled: bool
    conflict_strategy: ConflictStrategy
    validators: int


def default_document(schema_version: int = 1, timestamp: int = 0) -> dict[str, Any]:
    """Build the fixed-shape fallback document.

    Args:
        schema_version: Schema version stamped into the document.
        timestamp: Epoch milliseconds for the ``timestamp`` key.

    Returns:
        A fresh default state document.
    """
    return {
        "activeTab": "general",
        "form": {},
        "ui": {"theme": "default", "animations": True, "notifications": True},
        "preferences": {"rememberTab": True, "autoSave": False, "syncEnabled": True},
        VERSION_KEY: 0,
        TIMESTAMP_KEY: timestamp,
        SCHEMA_VERSION_KEY: schema_version,
    }


def _is_mapping(value: Any) -> bool:
    return isinstance(value, Mapping)


def default_validators() -> dict[str, Validator]:
    return {
        "activeTab": lambda value: isinstance(value, str) and value in KNOWN_TABS,
        "form": _is_mapping,
        "ui": _is_mapping,
        "preferences": _is_mapping,
    }


def application_keys(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return a deep copy of ``document`` without the reserved keys."""
    return {
        key: copy.deepcopy(value)
        for key, value in document.items()
        if key not in RESERVED_KEYS
    }


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``overlay`` onto ``base``; overlay wins on leaves."""
    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        existing = merged.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
