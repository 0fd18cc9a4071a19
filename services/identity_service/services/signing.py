"""Verification of identity-provider webhook signatures (svix scheme).

Headers:
    svix-id         unique message id (also the idempotency key)
    svix-timestamp  unix seconds
    svix-signature  space separated list of "v1,<base64 hmac>"

The signed content is "{id}.{timestamp}.{body}" under HMAC-SHA256, keyed with
the base64 part of the "whsec_" secret.
"""

import base64
import binascii
import hashlib
import hmac
import time
from typing import Mapping, Optional

from libs.common.errors import InvalidSignatureError

SECRET_PREFIX = "whsec_"


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    try:
        return base64.b64decode(secret)
    except (binascii.Error, ValueError) as e:
        raise InvalidSignatureError("Webhook secret is not valid base64") from e


def sign(secret: str, message_id: str, timestamp: int, body: bytes) -> str:
    """Return the `v1,<sig>` entry for a payload."""
    content = f"{message_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), content, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def verify_identity_webhook(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    tolerance: int,
    now: Optional[int] = None,
) -> str:
    """Raise InvalidSignatureError unless the delivery is authentic and fresh.

    Returns the message id.
    """
    message_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signature_header = headers.get("svix-signature")
    if not message_id or not timestamp or not signature_header:
        raise InvalidSignatureError("Missing signature headers")

    try:
        ts = int(timestamp)
    except ValueError as e:
        raise InvalidSignatureError("Invalid signature timestamp") from e

    now = int(time.time()) if now is None else now
    if abs(now - ts) > tolerance:
        raise InvalidSignatureError("Signature timestamp outside tolerance")

    expected = sign(secret, message_id, ts, body)
    for candidate in signature_header.split():
        if candidate.startswith("v1,") and hmac.compare_digest(expected, candidate):
            return message_id
    raise InvalidSignatureError("Signature mismatch")
