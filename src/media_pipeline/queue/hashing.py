"""Payload fingerprinting for enqueue deduplication."""

import hashlib
import json
from typing import Any


def compute_payload_hash(job_type: str, payload: Any) -> str:
    """Compute deterministic hash of a job payload.

    Args:
        job_type: Payload discriminator
        payload: Pydantic model or dict

    Returns:
        SHA-256 hex digest of the sorted JSON representation

    Notes:
        - Same type and payload always produce the same hash
        - Used to collapse duplicate webhook deliveries into one job
    """
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")

    payload_json = json.dumps({"type": job_type, "payload": payload}, sort_keys=True, indent=None)
    return hashlib.sha256(payload_json.encode()).hexdigest()
