"""Identity check for incoming requests.

Credentials are verified upstream; the service only needs ``{user_id, role}``.
Two adapters exist: trusted gateway headers, and a gateway-signed assertion
verified with the gateway's Ed25519 public key.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..transport.canonical_json import canonical_dumps, canonical_loads
from ..transport.timestamps import TimestampError, assert_within_skew


class IdentityError(ValueError):
    """Raised when a request carries no usable identity."""


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class IdentityProvider(Protocol):
    def identify(self, headers: Mapping[str, str]) -> Identity: ...


class HeaderIdentityProvider:
    def __init__(self, *, user_header: str = "x-user-id", role_header: str = "x-user-role") -> None:
        self._user_header = user_header.lower()
        self._role_header = role_header.lower()

    def identify(self, headers: Mapping[str, str]) -> Identity:
        user_id = headers.get(self._user_header)
        if not user_id:
            raise IdentityError(f"{self._user_header} header is required")
        return Identity(user_id=user_id, role=headers.get(self._role_header) or "user")


class SignedIdentityProvider:
    """Accepts ``X-Identity`` (base64 JSON) signed in ``X-Identity-Signature``.

    The signature is Ed25519 over the canonical JSON of the decoded assertion,
    and the assertion's ``ts`` must be within ``max_clock_skew_ms``.
    """

    def __init__(self, *, public_key: str, max_clock_skew_ms: int = 30000) -> None:
        if not public_key:
            raise ValueError("signed identity requires the gateway public_key")
        key = serialization.load_pem_public_key(public_key.encode("utf-8"))
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError("gateway public_key must be an Ed25519 key")
        self._public_key = key
        self._max_skew_ms = max_clock_skew_ms

    def identify(self, headers: Mapping[str, str]) -> Identity:
        encoded = headers.get("x-identity")
        if not encoded:
            raise IdentityError("x-identity header is required")
        try:
            assertion: Any = canonical_loads(base64.b64decode(encoded, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise IdentityError("x-identity is not base64 JSON") from exc
        if not isinstance(assertion, dict) or not assertion.get("user_id"):
            raise IdentityError("identity assertion missing user_id")
        self._check_signature(assertion, headers.get("x-identity-signature", ""))
        try:
            assert_within_skew(str(assertion.get("ts", "")), max_skew_ms=self._max_skew_ms)
        except TimestampError as exc:
            raise IdentityError(str(exc)) from exc
        return Identity(user_id=str(assertion["user_id"]), role=str(assertion.get("role", "user")))

    def _check_signature(self, assertion: dict[str, Any], signature_b64: str) -> None:
        if not signature_b64:
            raise IdentityError("x-identity-signature header is required")
        try:
            signature = base64.b64decode(signature_b64, validate=True)
            self._public_key.verify(signature, canonical_dumps(assertion))
        except binascii.Error as exc:
            raise IdentityError("x-identity-signature is not base64") from exc
        except InvalidSignature as exc:
            raise IdentityError("identity signature does not verify") from exc


def build_identity_provider(backend: str, options: Mapping[str, Any]) -> IdentityProvider:
    if backend == "headers":
        return HeaderIdentityProvider(**options)
    if backend == "signed":
        return SignedIdentityProvider(**options)
    raise ValueError(f"unknown identity backend {backend}")
