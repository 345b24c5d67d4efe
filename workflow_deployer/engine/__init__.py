"""Workflow engine boundary: client protocol, HTTP client and payload rules."""

from workflow_deployer.engine.client import EngineClient, HttpEngineClient
from workflow_deployer.engine.payload import RESERVED_FIELDS, compute_fingerprint, sanitize_payload

__all__ = [
    "EngineClient",
    "HttpEngineClient",
    "RESERVED_FIELDS",
    "compute_fingerprint",
    "sanitize_payload",
]
