"""
Connection authentication.

Session tokens are HS256 JWTs issued by the session service:

    header.payload.signature   (base64url, unpadded)

Claims used here: sub (participant id), exp, optional iss and address.
A raw wallet address is accepted as a fallback credential and
provisions an unregistered participant on first sight.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from relaymesh.core import constants as C
from relaymesh.core.config import RealtimeConfig
from relaymesh.core.errors import RealtimeError, RelayMeshError
from relaymesh.core.types import Result, Ok, Err, is_valid_address
from relaymesh.storage.models import Participant
from relaymesh.storage.repositories import QueryStore

logger = logging.getLogger(__name__)


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def encode_session_token(claims: dict[str, Any], secret: str) -> str:
    """Sign claims as an HS256 JWT."""
    header = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())
    payload = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode())
    signature = hmac.new(secret.encode(), f"{header}.{payload}".encode(), hashlib.sha256).digest()
    return f"{header}.{payload}.{_b64url_encode(signature)}"


def verify_session_token(
    token: str,
    secret: str,
    *,
    issuer: Optional[str] = None,
    leeway_s: int = C.SESSION_TOKEN_LEEWAY_S,
    now: Optional[float] = None,
) -> Result[dict[str, Any], RealtimeError]:
    """Check signature, algorithm, expiry and issuer. Returns the claims."""
    if not secret:
        return Err(RealtimeError.invalid_token("no session secret configured"))

    parts = token.split(".")
    if len(parts) != 3:
        return Err(RealtimeError.invalid_token("malformed token"))
    header_b64, payload_b64, signature_b64 = parts

    try:
        header = json.loads(_b64url_decode(header_b64))
        claims = json.loads(_b64url_decode(payload_b64))
        signature = _b64url_decode(signature_b64)
    except (ValueError, TypeError):
        return Err(RealtimeError.invalid_token("undecodable segment"))

    if not isinstance(header, dict) or header.get("alg") != "HS256":
        return Err(RealtimeError.invalid_token("unsupported algorithm"))
    if not isinstance(claims, dict):
        return Err(RealtimeError.invalid_token("claims must be an object"))

    expected = hmac.new(secret.encode(), f"{header_b64}.{payload_b64}".encode(), hashlib.sha256).digest()
    if not hmac.compare_digest(expected, signature):
        return Err(RealtimeError.invalid_token("bad signature"))

    current = time.time() if now is None else now
    exp = claims.get("exp")
    if exp is not None:
        if not isinstance(exp, (int, float)):
            return Err(RealtimeError.invalid_token("exp must be numeric"))
        if exp + leeway_s < current:
            return Err(RealtimeError.invalid_token("token expired"))
    if issuer and claims.get("iss") != issuer:
        return Err(RealtimeError.invalid_token("unexpected issuer"))
    if not claims.get("sub"):
        return Err(RealtimeError.invalid_token("missing subject"))
    return Ok(claims)


@dataclass(frozen=True, slots=True)
class Credentials:
    token: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        authorization: Optional[str],
        query: dict[str, str],
    ) -> Credentials:
        token = None
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip() or None
        return cls(token=token or query.get("token") or None, address=query.get("address") or None)


class Authenticator:
    """Resolves connection credentials to a participant."""

    __slots__ = ("_store", "_config")

    def __init__(self, store: QueryStore, config: RealtimeConfig) -> None:
        self._store = store
        self._config = config

    async def authenticate(self, credentials: Credentials) -> Result[Participant, RelayMeshError]:
        if credentials.token:
            resolved = await self._from_token(credentials.token)
        elif credentials.address and self._config.allow_address_auth:
            resolved = await self._from_address(credentials.address)
        else:
            return Err(RealtimeError.authentication_required())

        if resolved.is_err():
            return resolved
        participant = resolved.unwrap()
        touched = await self._store.participants.touch_last_seen(participant.id)
        if touched.is_err():
            logger.warning("Could not record last_seen", extra={"participant_id": participant.id})
        return Ok(participant)

    async def _from_token(self, token: str) -> Result[Participant, RelayMeshError]:
        verified = verify_session_token(token, self._config.session_secret, issuer=self._config.session_issuer)
        if verified.is_err():
            return verified
        claims = verified.unwrap()

        found = await self._store.participants.get(str(claims["sub"]))
        if found.is_err():
            return found
        if found.unwrap() is not None:
            return Ok(found.unwrap())

        address = claims.get("address")
        if isinstance(address, str) and is_valid_address(address):
            return await self._store.participants.ensure(address)
        return Err(RealtimeError.invalid_token("unknown subject"))

    async def _from_address(self, address: str) -> Result[Participant, RelayMeshError]:
        if not is_valid_address(address):
            return Err(RealtimeError.authentication_required("address is not a valid wallet address"))
        return await self._store.participants.ensure(address)
