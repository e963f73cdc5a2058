import os
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("MONGODB_DB_NAME", "aira_credits_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_test_webhook_secret")
os.environ.setdefault("STARTING_CREDITS", "5")


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test, with all document models registered."""
    from aira_credits.db.init import init_db
    mongo = AsyncMongoMockClient()
    await init_db(database=mongo["aira_credits_test"])
    yield mongo


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from aira_credits.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def make_user(google_sub: str, role: str = "user", provision: bool = True):
    from aira_credits.models.user import User
    from aira_credits.services import credits as credits_service
    user = User(google_sub=google_sub, email=f"{google_sub}@example.com", name=google_sub, role=role)
    await user.insert()
    if provision:
        await credits_service.provision_account(str(user.id))
    return user


def auth_headers(user) -> dict:
    from aira_credits.core.security import create_access_token
    token = create_access_token({"user_id": str(user.id), "session_version": user.session_version})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def user(db):
    return await make_user("user-sub-1")


@pytest_asyncio.fixture
async def admin_user(db):
    return await make_user("admin-sub-1", role="admin")
