from __future__ import annotations

import itertools
from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

from vibephoto.config import get_settings
from vibephoto.db.base import Base
from vibephoto.db.models import Account, CreditPurchase, PurchaseStatus
from vibephoto.db.session import create_engine, create_sessionmaker
from vibephoto.services.dispatcher import JobDispatcher
from vibephoto.services.poller import PollManager
from vibephoto.services.providers.registry import ProviderRegistry
from vibephoto.services.realtime import Broadcaster
from vibephoto.services.reconciler import Reconciler
from vibephoto.services.storage import MediaStorage
from vibephoto.utils.time import utcnow


_emails = itertools.count(1)

TEST_ENV = {
    'DEFAULT_LANG': 'en',
    'PUBLIC_BASE_URL': 'https://app.test',
    'PUBLIC_MEDIA_BASE_URL': 'https://cdn.test/media',
    'REPLICATE_API_TOKEN': 'r8_test',
    'REPLICATE_GENERATION_VERSION': 'gen-version',
    'ASTRIA_API_KEY': 'astria-test',
    'CRON_SECRET': 'cron-token',
    'PROVIDER_MAX_RETRIES': '2',
    'PROVIDER_RETRY_BASE_DELAY_SECONDS': '0',
    'REPLICATE_POLL_INTERVAL_SECONDS': '0',
    'ASTRIA_POLL_INTERVAL_SECONDS': '0',
    'POLL_MAX_BACKOFF_SECONDS': '0',
    'POLL_START_DELAY_SECONDS': '0',
}


@pytest.fixture(autouse=True)
def settings_env(monkeypatch, tmp_path):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv('MEDIA_STORAGE_PATH', str(tmp_path / 'media'))
    monkeypatch.setenv('DATABASE_URL', f'sqlite+aiosqlite:///{tmp_path}/test.db')
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


class FakeUpstream:
    """Scripted HTTP peer for providers and media downloads, keyed by (method, path)."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, status: int = 200, json: Any = None, content: bytes | None = None,
            headers: Dict[str, str] | None = None) -> None:
        self.routes.setdefault((method, path), []).append(
            {'status': status, 'json': json, 'content': content, 'headers': headers or {}}
        )

    def add_handler(self, method: str, path: str, fn: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes.setdefault((method, path), []).append(fn)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={'detail': 'not found'})
        # The last scripted response repeats.
        spec = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(spec):
            return spec(request)
        if spec['content'] is not None:
            return httpx.Response(spec['status'], content=spec['content'], headers=spec['headers'])
        return httpx.Response(spec['status'], json=spec['json'], headers=spec['headers'])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
async def engine(settings_env):
    engine = create_engine(settings_env.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def make_account(sessionmaker):
    async def factory(**overrides: Any) -> Account:
        now = utcnow()
        values: Dict[str, Any] = {
            'email': f'user{next(_emails)}@example.com',
            'plan': 'STARTER',
            'billing_cycle': 'MONTHLY',
            'credits_limit': 500,
            'credits_used': 0,
            'credits_balance': 0,
            'credits_expires_at': now + timedelta(days=30),
            'created_at': now,
            'updated_at': now,
        }
        values.update(overrides)
        async with sessionmaker() as session:
            account = Account(**values)
            session.add(account)
            await session.commit()
            return account

    return factory


@pytest.fixture
def make_package(sessionmaker):
    async def factory(account_id: int, credit_amount: int = 100, used_credits: int = 0,
                      valid_until=None, **overrides: Any) -> CreditPurchase:
        now = utcnow()
        async with sessionmaker() as session:
            account = await session.get(Account, account_id)
            purchase = CreditPurchase(
                account_id=account_id,
                package_name=overrides.pop('package_name', 'Pack'),
                credit_amount=credit_amount,
                used_credits=used_credits,
                valid_until=valid_until or now + timedelta(days=90),
                is_expired=overrides.pop('is_expired', False),
                status=overrides.pop('status', PurchaseStatus.CONFIRMED.value),
                created_at=now,
                confirmed_at=now,
                **overrides,
            )
            session.add(purchase)
            # Mirror what grant_package does to the pooled balance.
            account.credits_balance = int(account.credits_balance or 0) + (credit_amount - used_credits)
            await session.commit()
            return purchase

    return factory


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def services(settings_env, sessionmaker, upstream):
    settings = settings_env
    broadcaster = Broadcaster(settings.realtime_queue_size)
    providers = ProviderRegistry.from_settings(settings, transport=upstream.transport)
    storage = MediaStorage(settings, transport=upstream.transport)
    reconciler = Reconciler(sessionmaker, providers, storage, broadcaster)
    poller = PollManager(sessionmaker, providers, reconciler, settings)
    dispatcher = JobDispatcher(sessionmaker, providers, reconciler, broadcaster, poller, settings)
    yield SimpleNamespace(
        settings=settings,
        sessionmaker=sessionmaker,
        broadcaster=broadcaster,
        providers=providers,
        storage=storage,
        reconciler=reconciler,
        poller=poller,
        dispatcher=dispatcher,
        upstream=upstream,
    )
    await poller.stop_all()
    await providers.close()
    await storage.close()

