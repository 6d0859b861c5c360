"""
Authentication dependencies.

Provides FastAPI dependencies for:
- Resolving the caller's stable user id from a bearer JWT
- Resolving the owning user of an inbound webhook token
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Header, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import UnauthorizedError
from core.security import decode_access_token, hash_token
from models import WebhookToken

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Get the authenticated user's id from the JWT ``sub`` claim.

    Raises UnauthorizedError if the token is missing or invalid.
    """
    if not credentials:
        raise UnauthorizedError("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")

    user_id = payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise UnauthorizedError("Invalid token payload")

    return user_id


def resolve_webhook_token(db: Session, token: Optional[str]) -> Optional[WebhookToken]:
    """Look up an active webhook token; returns None when unknown or revoked."""
    if not token:
        return None
    return (
        db.query(WebhookToken)
        .filter(WebhookToken.token_hash == hash_token(token), WebhookToken.is_active.is_(True))
        .first()
    )


def get_webhook_token(
    token: Optional[str] = Query(None, description="Webhook token"),
    x_webhook_token: Optional[str] = Header(None, alias="X-Webhook-Token"),
    db: Session = Depends(get_db),
) -> WebhookToken:
    """
    Authenticate an inbound webhook by ``?token=`` or ``X-Webhook-Token``.

    Health Auto Export cannot send bearer headers on every plan, so the
    query parameter form is accepted as well.
    """
    raw = token or x_webhook_token
    if not raw:
        raise UnauthorizedError("Missing webhook token")

    webhook_token = resolve_webhook_token(db, raw)
    if webhook_token is None:
        raise UnauthorizedError("Invalid or inactive webhook token")

    webhook_token.last_used_at = datetime.now(timezone.utc)
    return webhook_token
