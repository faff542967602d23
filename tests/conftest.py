# tests/conftest.py
import asyncio
import os
import uuid
from typing import Optional

import pytest
from httpx import AsyncClient, ASGITransport

# ---- 測試期環境變數（先於 app 載入）----
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")
os.environ.setdefault("SWEEP_ENABLED", "0")
os.environ.setdefault("ENV", "test")

from account_guard.main import app  # noqa: E402
from account_guard.core.security import hash_password, hash_token, new_totp_secret  # noqa: E402
from account_guard.db.session import AsyncSessionLocal, engine  # noqa: E402
from account_guard.models.all import Base  # noqa: E402
from account_guard.models.users import User  # noqa: E402

DEFAULT_PASSWORD = "MyStrongPass"


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    """測試前自動 create_all，測試後 drop_all（用 asyncio.run 避免事件圈衝突）。"""
    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    async def drop_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(init_models())
    yield
    asyncio.run(drop_models())


@pytest.fixture(scope="session")
def anyio_backend():
    """讓 pytest 使用 asyncio event loop。"""
    return "asyncio"


@pytest.fixture
async def client():
    """使用 ASGITransport 直接掛載 app，不需啟動伺服器。"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
async def db():
    """服務層測試直接拿 AsyncSession。"""
    async with AsyncSessionLocal() as session:
        yield session


async def create_user(
    role: str = "user",
    password: str = DEFAULT_PASSWORD,
    two_factor: bool = False,
    recovery_codes: Optional[list] = None,
    last_login_ip: Optional[str] = None,
) -> User:
    """每次建立新帳號（email 不重複），避免測試間互相影響。"""
    async with AsyncSessionLocal() as session:
        user = User(
            email=f"{role}-{uuid.uuid4().hex[:12]}@example.com",
            name=f"Test {role}",
            password_hash=hash_password(password),
            role=role,
            token_version=0,
            two_factor_secret=new_totp_secret() if two_factor else None,
            two_factor_recovery_codes=[hash_token(c) for c in (recovery_codes or [])] or None,
            last_login_ip=last_login_ip,
        )
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
def make_user():
    return create_user


@pytest.fixture
async def admin():
    return await create_user(role="admin", two_factor=True)


async def login(client: AsyncClient, email: str, password: str = DEFAULT_PASSWORD, headers=None):
    return await client.post(
        "/api/v1/auth/login",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded", **(headers or {})},
    )


@pytest.fixture
def do_login():
    return login


async def issue_headers(user: User, user_agent: str = "pytest-agent", ip: str = "127.0.0.1") -> dict:
    """不經過登入流程（略過 2FA），直接建立 session 並簽發 access token。"""
    from account_guard.core.security import create_access_token
    from account_guard.services.devices import record_login

    async with AsyncSessionLocal() as session:
        device = await record_login(session, user.id, user_agent=user_agent, ip=ip)
        token = create_access_token(
            {"sub": str(user.id), "ver": user.token_version, "sid": device.id, "sv": device.session_version}
        )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return issue_headers
