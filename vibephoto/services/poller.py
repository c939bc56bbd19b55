from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vibephoto.config import Settings, get_settings
from vibephoto.db.models import JOB_MODELS, JobStatus, TERMINAL_STATUSES, job_model
from vibephoto.errors import ProviderError
from vibephoto.i18n import t, tf
from vibephoto.services.providers.registry import ProviderRegistry
from vibephoto.services.reconciler import Reconciler
from vibephoto.services.retry import RetryPolicy, poll_policy
from vibephoto.utils.logging import get_logger
from vibephoto.utils.time import utcnow


logger = get_logger('poller')

PollKey = Tuple[str, int]


@dataclass
class PollState:
    kind: str
    record_id: int
    provider: str = ''
    attempt: int = 0
    max_attempts: int = 0
    last_state: Optional[str] = None
    scheduled_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'record_id': self.record_id,
            'provider': self.provider,
            'attempt': self.attempt,
            'max_attempts': self.max_attempts,
            'last_state': self.last_state,
            'scheduled_at': self.scheduled_at.isoformat(),
        }


class PollManager:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        reconciler: Reconciler,
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.providers = providers
        self.reconciler = reconciler
        self.settings = settings or get_settings()
        self.global_sem = asyncio.Semaphore(self.settings.global_max_poll_concurrency)
        self._inflight: Dict[PollKey, PollState] = {}
        self._tasks: Dict[PollKey, asyncio.Task] = {}

    def _stale_cutoff(self) -> datetime:
        return utcnow() - timedelta(seconds=self.settings.poll_stale_processing_seconds)

    def policy_for(self, provider: str, kind: str) -> RetryPolicy:
        return poll_policy(
            provider,
            kind,
            self.settings.poll_interval_for(provider),
            self.settings.poll_max_backoff_seconds,
        )

    def schedule(self, kind: str, record_id: int, delay: float | None = None) -> bool:
        key = (kind, record_id)
        if key in self._inflight:
            return False
        if delay is None:
            delay = self.settings.poll_start_delay_seconds
        self._inflight[key] = PollState(kind=kind, record_id=record_id)
        self._tasks[key] = asyncio.create_task(self._poll(kind, record_id, delay))
        logger.info('poll_scheduled', kind=kind, record_id=record_id, delay=delay)
        return True

    def is_scheduled(self, kind: str, record_id: int) -> bool:
        return (kind, record_id) in self._inflight

    async def wait(self, kind: str, record_id: int) -> None:
        task = self._tasks.get((kind, record_id))
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def status(self) -> List[Dict[str, Any]]:
        return [state.as_dict() for state in self._inflight.values()]

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._inflight.clear()

    async def _poll(self, kind: str, record_id: int, delay: float) -> None:
        key = (kind, record_id)
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await self._run(kind, record_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception('poll_failed', kind=kind, record_id=record_id, error=str(exc))
        finally:
            self._inflight.pop(key, None)
            self._tasks.pop(key, None)

    async def _run(self, kind: str, record_id: int) -> None:
        model = job_model(kind)
        async with self.sessionmaker() as session:
            row = await session.get(model, record_id)
            if not row or row.is_terminal or not row.job_id:
                return
            provider_name = row.provider
            job_id = row.job_id
            meta = dict(row.provider_meta or {})

        client = self.providers.get(provider_name)
        policy = self.policy_for(provider_name, kind)
        state = self._inflight.get((kind, record_id)) or PollState(kind=kind, record_id=record_id)
        state.provider = provider_name
        state.max_attempts = policy.max_attempts

        consecutive_errors = 0
        for attempt in range(1, policy.max_attempts + 1):
            state.attempt = attempt
            if attempt > 1:
                await asyncio.sleep(policy.delay(consecutive_errors))
            current = await self.reconciler.current_status(kind, record_id)
            if current is None or current in TERMINAL_STATUSES:
                return
            try:
                # Held for the provider call only.
                async with self.global_sem:
                    record = await client.get_job(job_id, kind, meta)
            except ProviderError as exc:
                if exc.transient:
                    consecutive_errors += 1
                    logger.warning('poll_transient_error', kind=kind, record_id=record_id, attempt=attempt, error=str(exc))
                    continue
                await self.reconciler.fail(kind, record_id, str(exc), via='poll')
                return
            consecutive_errors = 0

            outcome = client.interpret(record, kind)
            state.last_state = outcome.state
            if outcome.is_terminal:
                await self.reconciler.apply(kind, record_id, outcome, via='poll')
                return
            if outcome.state == JobStatus.PROCESSING.value:
                if current == JobStatus.PENDING.value:
                    await self.reconciler.mark_processing(kind, record_id, via='poll')
                progress = max(int(outcome.extra.get('progress') or 0), min(attempt * 2, 95))
                await self.reconciler.report_progress(kind, record_id, progress, via='poll')

        minutes = max(1, math.ceil(policy.budget_seconds / 60))
        message = tf(self.settings.default_lang, f'timeout_{kind}', minutes=minutes)
        logger.warning('poll_budget_exhausted', kind=kind, record_id=record_id, attempts=policy.max_attempts)
        await self.reconciler.fail(kind, record_id, message, via='poll')

    async def _candidates(self) -> List[PollKey]:
        stale_cutoff = self._stale_cutoff()
        unreliable = [client.name for client in self.providers if not client.webhooks_reliable]
        keys: List[PollKey] = []
        async with self.sessionmaker() as session:
            for kind, model in JOB_MODELS.items():
                result = await session.execute(
                    select(model.id).where(
                        model.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
                        model.job_id.is_not(None),
                        or_(model.provider.in_(unreliable), model.updated_at <= stale_cutoff),
                    )
                )
                keys.extend((kind, record_id) for record_id in result.scalars().all())
        return keys

    async def restore_pending(self) -> int:
        scheduled = 0
        for kind, record_id in await self._candidates():
            if self.schedule(kind, record_id, delay=0):
                scheduled += 1
        if scheduled:
            logger.info('polls_restored', count=scheduled)
        return scheduled

    async def fail_stuck_pending(self) -> int:
        stale_cutoff = self._stale_cutoff()
        stuck: List[PollKey] = []
        async with self.sessionmaker() as session:
            for kind, model in JOB_MODELS.items():
                result = await session.execute(
                    select(model.id).where(
                        and_(
                            model.status == JobStatus.PENDING.value,
                            model.job_id.is_(None),
                            model.created_at <= stale_cutoff,
                        )
                    )
                )
                stuck.extend((kind, record_id) for record_id in result.scalars().all())
        failed = 0
        for kind, record_id in stuck:
            if await self.reconciler.fail(kind, record_id, t(self.settings.default_lang, 'stuck_pending'), via='sweep'):
                failed += 1
        return failed

    async def sweep(self) -> None:
        await self.restore_pending()
        await self.fail_stuck_pending()

    async def watch_pending(self, interval: int | None = None) -> None:
        interval = interval or self.settings.poll_watch_interval_seconds
        while True:
            try:
                await self.sweep()
            except Exception as exc:
                logger.warning('poll_watch_failed', error=str(exc))
            await asyncio.sleep(interval)
