from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

FINGERPRINT_LENGTH = 16


def canonical_json(value: Any) -> str:
    """Serialize `value` with recursively sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def fingerprint(project: str, chain: str, identity: Any) -> str:
    """Return the 16-hex-char namespace fingerprint for a project/chain/identity triple."""
    if not isinstance(project, str) or not isinstance(chain, str):
        raise TypeError("project and chain must be strings")
    try:
        payload = canonical_json({"project": project, "chain": chain, "identity": identity})
    except ValueError as exc:
        raise TypeError(f"identity is not JSON-serializable: {exc}") from exc
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def namespace_path(root: str | Path, project: str, chain: str, config_hash: str) -> Path:
    return Path(root) / project / chain / config_hash
