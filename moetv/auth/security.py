from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext


# Fixed work factor so hashes stay comparable across deployments.
_pwd = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__default_rounds=29000,
)
_JWT_ALG = "HS256"

# Identity claims carried by a session. Role is deliberately absent: admin
# rights are re-read from the users table on every request.
SESSION_CLAIMS = ("userId", "email", "username")


def _debug(msg: str) -> None:
    print(f"[auth] {msg}")


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("password_blank")
    return _pwd.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return _pwd.verify(password, password_hash)
    except ValueError:
        # Unrecognized / corrupted hash format.
        return False


class SessionCodec:
    """Issue and verify signed, time-limited session tokens (HS256 JWT).

    The secret is passed in explicitly at startup (see `Config.AUTH_JWT_SECRET`);
    an empty secret is rejected.
    """

    def __init__(self, secret: str, *, ttl_seconds: int = 24 * 60 * 60):
        if not secret:
            raise ValueError("jwt_secret_blank")
        self._secret = secret
        self.ttl_seconds = max(1, int(ttl_seconds))

    def issue(self, claims: Dict[str, Any], *, now: Optional[datetime] = None) -> str:
        """Sign `claims` (userId, email, username) with iat=now and exp=now+ttl."""
        missing = [k for k in SESSION_CLAIMS if not claims.get(k)]
        if missing:
            raise ValueError(f"session_claim_missing:{missing[0]}")

        issued = now or datetime.now(timezone.utc)
        if issued.tzinfo is None:
            issued = issued.replace(tzinfo=timezone.utc)
        exp = issued + timedelta(seconds=self.ttl_seconds)

        payload: Dict[str, Any] = {k: str(claims[k]) for k in SESSION_CLAIMS}
        payload["iat"] = int(issued.timestamp())
        payload["exp"] = int(exp.timestamp())
        return jwt.encode(payload, self._secret, algorithm=_JWT_ALG)

    def verify(self, token: str | None) -> Optional[Dict[str, Any]]:
        """Return the claims of a valid, unexpired token; None otherwise.

        Never raises: bad signature, malformed structure, missing claims and
        expiry all collapse to None.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_JWT_ALG],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError as e:
            _debug(f"Rejected session token: {type(e).__name__}")
            return None

        if not all(isinstance(payload.get(k), str) and payload.get(k) for k in SESSION_CLAIMS):
            return None
        return payload

    def refresh(self, token: str | None, *, now: Optional[datetime] = None) -> Optional[str]:
        """Re-issue a valid token with the same identity and a fresh window."""
        claims = self.verify(token)
        if claims is None:
            return None
        return self.issue(claims, now=now)
