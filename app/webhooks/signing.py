from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from typing import Any


SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
RETRY_HEADER = "X-Webhook-Retry"


def canonical_json(payload: Any) -> str:
    """Sorted keys, no whitespace, non-ASCII kept as UTF-8 so receivers can re-derive the signed bytes."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sign(secret: str, body: str | bytes) -> str:
    raw = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: str | bytes, signature: str) -> bool:
    return hmac.compare_digest(sign(secret, body), signature or "")


def generate_secret() -> str:
    return secrets.token_hex(32)
