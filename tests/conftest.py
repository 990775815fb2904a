import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Optional

# Configure an in-memory database before any project module creates the engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_SECRET_KEY", "test-secret-key-for-testing-only")
os.environ.setdefault("ENFORCE_DOMAIN_RESTRICTIONS", "true")

import pytest  # noqa: E402
from jose import jwt  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database import engine  # noqa: E402
from models import Base  # noqa: E402


def make_token(user_id: str = "user_1", email: str = "user_1@example.com", name: str = "Test User") -> str:
    claims = {"sub": user_id, "email": email, "name": name}
    return jwt.encode(claims, os.environ["AUTH_SECRET_KEY"], algorithm="HS256")


def _auth_headers(user_id: str = "user_1", email: Optional[str] = None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, email=email or f'{user_id}@example.com')}"}


@pytest.fixture
def auth_headers():
    return _auth_headers


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
