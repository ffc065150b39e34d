import sys
import pathlib
import tempfile
import warnings
import os

import pytest
import pytest_asyncio

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    pass

# Configuration is read at import time, so the environment must be in place
# before anything under listit is imported.
_TMP = tempfile.mkdtemp(prefix='listit-tests-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{os.path.join(_TMP, 'listit.db')}")
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')
os.environ.setdefault('SERVICE_ROLE_KEY', 'test-service-role-key')
os.environ.setdefault('BACKEND_MODE', 'local')
os.environ.setdefault('SITE_URL', 'http://test')
warnings.filterwarnings('ignore', message='The garbage collector is trying to clean up non-checked-in connection')

import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel', 'aiosqlite'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

from httpx import AsyncClient, ASGITransport

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from listit.main import app
from listit.auth import CSRF_COOKIE, CSRF_HEADER
from listit.backend import LocalBackend
from listit.db import reset_db

PASSWORD = 'Secret123!'


async def create_user(email: str, password: str = PASSWORD, full_name: str = 'Test User', confirmed: bool = True):
    admin = LocalBackend(service_role=True)
    return await admin.auth.admin.create_user(
        email, password, email_confirm=confirmed, user_metadata={'full_name': full_name})


async def login(client: AsyncClient, email: str, password: str = PASSWORD):
    r = await client.post('/login', data={'email': email, 'password': password})
    assert r.status_code == 303, r.text
    assert client.cookies.get('sb-access-token') is not None
    return r


def json_headers():
    return {'Accept': 'application/json'}


def csrf_cookie(client: AsyncClient):
    for cookie in client.cookies.jar:
        if cookie.name == CSRF_COOKIE:
            return cookie.value
    return None


def make_client(send_csrf: bool = True) -> AsyncClient:
    """ASGI client for the app.

    With ``send_csrf`` it behaves like a script: writes echo the csrf cookie
    in the x-csrf-token header. Without it, forms must carry ``_csrf``.
    """
    client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    async def echo_csrf(request):
        if request.method != 'GET' and CSRF_HEADER not in request.headers:
            token = csrf_cookie(client)
            if token:
                request.headers[CSRF_HEADER] = token

    if send_csrf:
        client.event_hooks = {'request': [echo_csrf], 'response': []}
    return client


@pytest_asyncio.fixture
async def prepare_db():
    await reset_db()
    # fresh backend per test so the dev outbox starts empty
    app.state.backend = LocalBackend()
    yield app.state.backend


@pytest.fixture
def backend(prepare_db):
    return prepare_db


@pytest_asyncio.fixture
async def client(prepare_db):
    async with make_client() as ac:
        yield ac


@pytest_asyncio.fixture
async def user(prepare_db):
    return await create_user('alice@example.com', full_name='Alice Example')


@pytest_asyncio.fixture
async def auth_client(client, user):
    await login(client, user.email)
    yield client


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine so pooled connections are closed before exit."""
    try:
        import asyncio
        from listit import db as app_db

        asyncio.run(app_db.engine.dispose())
    except Exception:
        # best-effort: if disposal fails, don't crash pytest teardown
        pass
