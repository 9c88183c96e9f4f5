import json
import os
import pathlib
import re
import sys
import tempfile
import uuid
import warnings

import httpx
import pytest
import pytest_asyncio

# Point the app at a throwaway database and storage root before any
# calendarai module is imported; db.py reads DATABASE_URL at import time.
_TMP = pathlib.Path(tempfile.mkdtemp(prefix='calendarai-tests-'))
os.environ['DATABASE_URL'] = f"sqlite+aiosqlite:///{_TMP / 'test.db'}"
os.environ['STORAGE_DIR'] = str(_TMP / 'storage')
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')
os.environ.pop('OPENAI_API_KEY', None)

from sqlalchemy.exc import SAWarning
warnings.filterwarnings('ignore', category=SAWarning)

import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from httpx import AsyncClient, ASGITransport

from calendarai.auth import pwd_context
from calendarai.db import async_session, init_db
from calendarai.extraction import CompletionClient
from calendarai.main import app, get_completion_client
from calendarai.models import User
from calendarai.storage import LocalStorage, get_storage


def chat_response(content, status_code: int = 200) -> httpx.Response:
    """A chat-completions response whose message content is `content`.

    Dicts are JSON-encoded; strings are sent as-is (to simulate bad output).
    """
    if not isinstance(content, str):
        content = json.dumps(content)
    return httpx.Response(status_code, json={'choices': [{'message': {'role': 'assistant', 'content': content}}]})


def numbered_lines(payload: dict) -> list[tuple[int, str]]:
    """The (line_number, text) pairs an extraction request carried."""
    user_msg = payload['messages'][-1]['content']
    block = user_msg.split('Lines:\n', 1)[1]
    out = []
    for row in block.splitlines():
        n, _, text = row.partition(': ')
        out.append((int(n), text))
    return out


def iso_date_extractor(payload: dict) -> httpx.Response:
    """Answer an extraction request with one event per line holding an ISO date."""
    events = []
    for n, text in numbered_lines(payload):
        m = re.search(r"\d{4}-\d{2}-\d{2}", text)
        if m:
            title = text.replace(m.group(0), '').strip(' :-')
            events.append({'line_number': n, 'event': title, 'date_text': m.group(0), 'normalized_date': m.group(0)})
    return chat_response({'events': events})


class FakeCompletionService:
    """In-process stand-in for the completion endpoint.

    Queued replies are used first (httpx.Response, an exception to raise, or
    a callable taking the decoded payload); after that `default` answers.
    Sleeps requested by the client are recorded instead of awaited.
    """

    def __init__(self, default=iso_date_extractor):
        self.default = default
        self.queue: list = []
        self.requests: list[dict] = []
        self.delays: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        reply = self.queue.pop(0) if self.queue else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(payload)
        return reply

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)

    def client(self) -> CompletionClient:
        return CompletionClient(
            'test-key',
            api_url='https://completions.test/v1/chat/completions',
            transport=httpx.MockTransport(self.handler),
            sleep=self.sleep,
            max_attempts=3,
            retry_delays=(0.5, 1.0, 2.0),
        )


@pytest.fixture
def fake_service():
    return FakeCompletionService()


@pytest_asyncio.fixture
async def fake_completion(fake_service):
    client = fake_service.client()
    yield client
    await client.aclose()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / 'objects')


@pytest_asyncio.fixture
async def ensure_db():
    await init_db()


async def _make_user(password: str = 'testpass') -> User:
    async with async_session() as sess:
        u = User(username=f'user-{uuid.uuid4().hex[:10]}', password_hash=pwd_context.hash(password))
        sess.add(u)
        await sess.commit()
        await sess.refresh(u)
        return u


@pytest_asyncio.fixture
async def user(ensure_db):
    return await _make_user()


@pytest_asyncio.fixture
async def client(ensure_db, storage, fake_completion):
    """Authenticated API client for a fresh user.

    Storage and the completion client are swapped for the test doubles.
    """
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_completion_client] = lambda: fake_completion
    u = await _make_user('testpass')
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post('/auth/token', json={'username': u.username, 'password': 'testpass'})
        assert resp.status_code == 200
        ac.headers.update({'Authorization': f"Bearer {resp.json()['access_token']}"})
        ac.user = u
        yield ac
    app.dependency_overrides.clear()


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine so no connections outlive the session."""
    import asyncio
    from calendarai import db as app_db
    try:
        asyncio.run(app_db.engine.dispose())
    except RuntimeError:
        pass
