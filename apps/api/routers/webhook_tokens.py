"""
Webhook Tokens API Router

Issue and revoke the tokens the Health Auto Export app uses to push
workouts. The raw token is returned once; only its hash is kept.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.database import get_db
from core.exceptions import NotFoundError
from core.security import generate_secret, hash_token
from models import WebhookToken
from schemas import WebhookTokenCreate, WebhookTokenCreated, WebhookTokenResponse

router = APIRouter(prefix="/v1/webhook-tokens", tags=["webhook-tokens"])


@router.post("", response_model=WebhookTokenCreated, status_code=status.HTTP_201_CREATED)
def create_token(
    body: WebhookTokenCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    raw = generate_secret()
    token = WebhookToken(user_id=user_id, name=body.name, token_hash=hash_token(raw), is_active=True)
    db.add(token)
    db.commit()
    db.refresh(token)
    return {**WebhookTokenResponse.model_validate(token).model_dump(), "token": raw}


@router.get("", response_model=List[WebhookTokenResponse])
def list_tokens(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return (
        db.query(WebhookToken)
        .filter(WebhookToken.user_id == user_id)
        .order_by(WebhookToken.created_at.desc())
        .all()
    )


@router.delete("/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_token(token_id: UUID, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    token = (
        db.query(WebhookToken)
        .filter(WebhookToken.id == token_id, WebhookToken.user_id == user_id)
        .first()
    )
    if not token:
        raise NotFoundError("Webhook token", str(token_id))
    token.is_active = False
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
