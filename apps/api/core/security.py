"""
Credentials this service checks.

- Bearer sessions: HS256 JWTs minted by the account service with the
  shared ``SECRET_KEY``. Only the ``sub`` claim (the stable user id) is
  used. ``create_access_token`` exists for internal tooling and tests.
- Webhook tokens and subscriber signing secrets: random hex strings. Inbound
  webhook tokens are stored only as their SHA-256 hash.
"""
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from core.config import settings

ALGORITHM = "HS256"
SESSION_TTL = timedelta(days=30)


def create_access_token(claims: Dict[str, Any], ttl: Optional[timedelta] = None) -> str:
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + (ttl or SESSION_TTL)
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims, or None for a bad signature, expiry or garbage."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def get_user_id_from_token(token: str) -> Optional[str]:
    claims = decode_access_token(token)
    sub = claims.get("sub") if claims else None
    return sub if isinstance(sub, str) and sub else None


def generate_secret(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
