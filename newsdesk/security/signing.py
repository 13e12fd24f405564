from __future__ import annotations

import hashlib
import hmac


def constant_time_equals(a: str | bytes, b: str | bytes) -> bool:
    """Compare two values without short-circuiting on the first difference."""
    if isinstance(a, str):
        a = a.encode("utf-8", "surrogatepass")
    if isinstance(b, str):
        b = b.encode("utf-8", "surrogatepass")
    return hmac.compare_digest(a, b)


class SignatureCodec:
    """
    HMAC-SHA256 signer used for CSRF tokens.

    Signatures are lowercase hex so they survive cookies and headers unchanged.
    """

    def __init__(self, secret: str | bytes) -> None:
        if not secret:
            raise ValueError("SignatureCodec requires a non-empty secret")
        self._secret = secret.encode() if isinstance(secret, str) else secret

    def sign(self, message: str) -> str:
        return hmac.new(self._secret, message.encode(), hashlib.sha256).hexdigest()

    def verify(self, message: str, signature: str) -> bool:
        return constant_time_equals(self.sign(message), signature)
