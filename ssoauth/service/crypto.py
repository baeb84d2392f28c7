"""Credential hashing, access-token signing and refresh-token generation."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ssoauth.logging import get_logger
from ssoauth.storage.models import Account, App

logger = get_logger(__name__)

# argon2 accepts far longer inputs, but anything past this is not a password
MAX_PASSWORD_BYTES = 1024
REFRESH_TOKEN_BYTES = 32


class Argon2PasswordHasher:
    """argon2id hashing with a fixed, explicit work factor."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password exceeds {MAX_PASSWORD_BYTES} bytes")
        return self._hasher.hash(password)

    def verify(self, pass_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(pass_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False


class RandomTokenGenerator:
    """Opaque refresh tokens: CSPRNG bytes, URL-safe base64."""

    def __init__(self, nbytes: int = REFRESH_TOKEN_BYTES) -> None:
        self.nbytes = nbytes

    def generate(self) -> str:
        return base64.urlsafe_b64encode(secrets.token_bytes(self.nbytes)).decode("ascii")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HmacTokenSigner:
    """HS256 JWT access tokens keyed by the issuing app's secret.

    Claims: ``uid`` and ``email`` of the account, ``app_id``, ``role``,
    ``iat``/``exp`` and a random ``jti`` so two tokens minted in the same
    second for the same account never collide.
    """

    algorithm = "HS256"

    def __init__(self, issuer: str = "ssoauth") -> None:
        self.issuer = issuer

    def sign(
        self,
        account: Account,
        app: App,
        ttl: timedelta,
        issued_at: Optional[datetime] = None,
    ) -> str:
        if not app.secret:
            raise ValueError(f"app {app.id} has no signing secret")
        now = issued_at or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": str(account.id),
            "uid": account.id,
            "email": account.email,
            "app_id": app.id,
            "role": account.role.value,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return self._encode(payload, app.secret)

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def decode(
        self, token: str, app: App, *, now: Optional[datetime] = None
    ) -> Optional[dict[str, Any]]:
        """Return the claims of a token signed for ``app``, or None.

        The engine never decodes its own tokens; it validates by session
        lookup. This is for resource servers that hold the app secret and
        want to check an access token locally without calling the engine.
        Expiry is checked against ``now`` (defaults to the wall clock).
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
            if header.get("alg") != self.algorithm:
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(
                app.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.issuer or payload.get("app_id") != app.id:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        current = now or datetime.now(timezone.utc)
        if exp_ts <= current.timestamp():
            return None
        return payload
