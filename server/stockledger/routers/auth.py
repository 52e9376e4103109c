from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from stockledger.auth import get_current_user
from stockledger.models import User

router = APIRouter(prefix="/api/auth", tags=["auth"])


class CurrentUserResponse(BaseModel):
    id: int
    username: str
    full_name: str | None = None
    role: str

    model_config = ConfigDict(from_attributes=True)


@router.get("/me", response_model=CurrentUserResponse)
def me(current_user: User = Depends(get_current_user)):
    return current_user
