from fastapi import APIRouter, Depends
from pydantic import BaseModel

from aira_credits.core.config import get_settings
from aira_credits.core.security import create_access_token
from aira_credits.deps import get_current_user
from aira_credits.models.user import User
from aira_credits.services import users as user_service

router = APIRouter()


class GoogleAuthRequest(BaseModel):
    id_token: str


def _user_out(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "picture": user.picture,
    }


@router.post("/google")
async def auth_google(body: GoogleAuthRequest):
    """Exchange Google ID token for a bearer token. First sign-in provisions the credit account."""
    claims = user_service.verify_google_id_token(body.id_token)
    user = await user_service.upsert_user_from_google(claims)
    token = create_access_token(user_service.token_payload_for_user(user))
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_in": get_settings().access_token_max_age,
        "user": _user_out(user),
    }


@router.get("/me")
async def auth_me(user: User = Depends(get_current_user)):
    """Return current user. Requires bearer token."""
    return {**_user_out(user), "role": user.role}
