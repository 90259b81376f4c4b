"""
Canonicalization and hashing of saved canvas snapshots.

The content hash establishes a verifiable relationship between:
- the SaveRecord snapshot held by the persistence collaborator,
- the VerificationRecord bound to it, and
- the hash embedded in every exported artifact.

IMPORTANT DESIGN RULE:
- Canonicalization happens in exactly one place (this module).
- compute_content_hash hashes bytes, and bytes only.
"""

import hashlib
import json
from datetime import date, datetime
from typing import Any, Dict, Union


def _canonical_json_default(obj: Any) -> str:
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    raise TypeError(
        f"Object of type {obj.__class__.__name__} is not JSON serializable"
    )


def canonicalize_payload(payload: Dict[str, Any]) -> bytes:
    """
    Serialize a payload into canonical JSON bytes.

    Keys are sorted and separators are compact so that two equal
    payloads always produce identical bytes.
    """
    return json.dumps(
        payload,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
        default=_canonical_json_default,
    ).encode("utf-8")


def compute_content_hash(canonical_bytes: Union[bytes, bytearray]) -> str:
    """
    Compute a deterministic, human-readable content hash.

    Args:
        canonical_bytes:
            Output of canonicalize_payload.

    Returns:
        A SHA-256 hash string with an explicit algorithm prefix.
        Example: ``SHA-256:3b7c0e4c...``
    """
    if not isinstance(canonical_bytes, (bytes, bytearray)):
        raise TypeError(
            "compute_content_hash expects canonical bytes, "
            f"got {type(canonical_bytes).__name__}"
        )

    digest = hashlib.sha256(canonical_bytes).hexdigest()
    return f"SHA-256:{digest}"
