from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.errors import EngineValidationError, TemporarilyUnavailableError
from services.quota_service import consume_for_user, get_usage_stats

router = APIRouter(prefix="/usage", tags=["usage"])


class ConsumeRequest(BaseModel):
    resource_type: str  # meal_scans | ai_chat_tokens
    amount: int = 1


@router.get("")
def usage_stats(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return get_usage_stats(db, user)
    except TemporarilyUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.post("/consume")
def consume(
    payload: ConsumeRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    # A refused request is still a 200: callers read `allowed`.
    try:
        status = consume_for_user(db, user, payload.resource_type, payload.amount)
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TemporarilyUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return status.as_dict()
