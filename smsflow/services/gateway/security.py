"""Webhook signature verification."""

import base64
import hashlib
import hmac
from typing import Protocol


class SignatureVerifier(Protocol):
    def verify(self, body: bytes, signature: str | None) -> bool: ...


class HmacSignatureVerifier:
    """Base64 HMAC-SHA256 of the raw body, compared in constant time."""

    def __init__(self, secret: str) -> None:
        self.secret = secret.encode("utf-8")

    def sign(self, body: bytes) -> str:
        return base64.b64encode(hmac.new(self.secret, body, hashlib.sha256).digest()).decode("ascii")

    def verify(self, body: bytes, signature: str | None) -> bool:
        if not self.secret or not signature:
            return False
        return hmac.compare_digest(self.sign(body), signature.strip())
