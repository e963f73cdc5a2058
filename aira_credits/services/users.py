from datetime import datetime

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from aira_credits.core.audit import log_event
from aira_credits.core.config import get_settings
from aira_credits.core.exceptions import BadRequestError, UnauthorizedError
from aira_credits.core.logging import get_logger
from aira_credits.models.user import User
from aira_credits.services import credits as credits_service

log = get_logger(__name__)


def verify_google_id_token(token: str) -> dict:
    """Verify Google ID token; return decoded claims (sub, email, name, picture, etc.)."""
    settings = get_settings()
    try:
        return id_token.verify_oauth2_token(
            token,
            google_requests.Request(),
            settings.google_client_id,
        )
    except ValueError as e:
        raise UnauthorizedError(f"Invalid Google token: {e}") from e


async def upsert_user_from_google(claims: dict) -> User:
    """Create or refresh the user; new users get a credit account with the starting balance."""
    google_sub = claims.get("sub")
    if not google_sub:
        raise BadRequestError("Missing sub in token")
    email = claims.get("email") or ""
    name = claims.get("name") or ""
    picture = claims.get("picture")

    user = await User.find_one(User.google_sub == google_sub)
    if user:
        user.email = email
        user.name = name
        user.picture = picture
        user.last_login_at = datetime.utcnow()
        user.updated_at = datetime.utcnow()
        await user.save()
        log.info("user_login", user_id=str(user.id))
    else:
        user = User(
            google_sub=google_sub,
            email=email,
            name=name,
            picture=picture,
            last_login_at=datetime.utcnow(),
        )
        await user.insert()
        log.info("user_created", user_id=str(user.id))
        await log_event(str(user.id), "user_created", "user", str(user.id), {"email": user.email})
    # Idempotent; also repairs users whose provisioning was interrupted.
    await credits_service.provision_account(str(user.id))
    return user


def token_payload_for_user(user: User) -> dict:
    return {"user_id": str(user.id), "session_version": user.session_version}
