import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def hash_request_fingerprint(*, method: str, path: str, body: Any) -> str:
    digest = hashlib.sha256()
    digest.update(method.upper().encode("utf-8"))
    digest.update(path.encode("utf-8"))
    digest.update(canonical_json(body if body is not None else {}).encode("utf-8"))
    return f"sha256:{digest.hexdigest()}"
