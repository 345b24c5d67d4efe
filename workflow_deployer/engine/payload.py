"""
Engine payload sanitization and structural fingerprints.

The engine treats several workflow fields as read-only and rejects writes
that contain them, so every payload is built from a whitelist.
"""

import hashlib
import json
from typing import Any, Mapping, Optional

from workflow_deployer.core.models import DeployedWorkflowRecord, WorkflowDefinition

# Engine-owned fields: identifiers, activation flags, audit metadata.
RESERVED_FIELDS: frozenset[str] = frozenset({
    "id",
    "active",
    "tags",
    "pinData",
    "triggerCount",
    "versionId",
    "createdAt",
    "updatedAt",
    "meta",
    "shared",
    "isArchived",
})

WRITABLE_FIELDS: tuple[str, ...] = ("name", "nodes", "connections", "settings", "staticData")

DEFAULT_WORKFLOW_SETTINGS: dict[str, Any] = {"executionOrder": "v1"}

# Node keys that carry no meaning for change detection.
_VOLATILE_NODE_KEYS = frozenset({"id"})

FINGERPRINT_LENGTH = 16


def sanitize_payload(raw: Mapping[str, Any]) -> dict[str, Any]:
    """
    Build a create/update body from a raw workflow mapping.

    Only whitelisted fields survive; reserved fields are dropped even when a
    future whitelist change would otherwise let them through.
    """
    payload: dict[str, Any] = {}
    for key in WRITABLE_FIELDS:
        if key in RESERVED_FIELDS:
            continue
        value = raw.get(key)
        if value is None:
            continue
        payload[key] = value

    payload.setdefault("connections", {})
    if not payload.get("settings"):
        payload["settings"] = dict(DEFAULT_WORKFLOW_SETTINGS)
    return payload


def definition_payload(definition: WorkflowDefinition) -> dict[str, Any]:
    """Sanitized engine payload for a local definition."""
    raw = definition.model_dump(mode="json", by_alias=True, exclude_none=True)
    return sanitize_payload(raw)


def record_payload(record: DeployedWorkflowRecord) -> Optional[dict[str, Any]]:
    """Sanitized view of what the engine holds, or None when content is unknown."""
    if not record.has_content:
        return None
    raw = record.model_dump(mode="json", by_alias=True, exclude_none=True)
    return sanitize_payload(raw)


def _normalize_node(node: Mapping[str, Any]) -> dict[str, Any]:
    normalized = {k: v for k, v in node.items() if k not in _VOLATILE_NODE_KEYS and v is not None}
    # Engines report integral versions as ints or floats interchangeably.
    version = normalized.get("typeVersion")
    if isinstance(version, float) and version.is_integer():
        normalized["typeVersion"] = int(version)
    position = normalized.get("position")
    if isinstance(position, list):
        normalized["position"] = [
            int(p) if isinstance(p, float) and p.is_integer() else p for p in position
        ]
    return normalized


def compute_fingerprint(payload: Mapping[str, Any]) -> str:
    """
    Structural hash of a sanitized payload.

    Key order, node order and node ids do not affect the result.
    """
    nodes = sorted(
        (_normalize_node(node) for node in payload.get("nodes", [])),
        key=lambda n: str(n.get("name", "")),
    )
    canonical = {
        "name": payload.get("name"),
        "nodes": nodes,
        "connections": payload.get("connections") or {},
        "settings": payload.get("settings") or DEFAULT_WORKFLOW_SETTINGS,
        "staticData": payload.get("staticData"),
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def definition_fingerprint(definition: WorkflowDefinition) -> str:
    return compute_fingerprint(definition_payload(definition))


def record_fingerprint(record: DeployedWorkflowRecord) -> Optional[str]:
    payload = record_payload(record)
    if payload is None:
        return None
    return compute_fingerprint(payload)
