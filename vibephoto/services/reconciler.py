from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vibephoto.config import get_settings
from vibephoto.db.models import AIModel, JOB_MODELS, JobKind, JobStatus, TERMINAL_STATUSES, job_model
from vibephoto.errors import NotFound, ReconciliationConflict, StorageError, ValidationError
from vibephoto.i18n import t, tf
from vibephoto.services.ledger import Balances, CreditLedger
from vibephoto.services.providers.base import ProviderOutcome
from vibephoto.services.providers.registry import ProviderRegistry
from vibephoto.services.realtime import Broadcaster
from vibephoto.services.storage import MediaStorage
from vibephoto.utils.logging import get_logger
from vibephoto.utils.time import as_utc, utcnow


logger = get_logger('reconciler')


def refund_key(kind: str, record_id: int) -> str:
    return f'refund:{kind}:{record_id}'


async def refund_job(
    session: AsyncSession,
    row: Any,
    kind: str,
    reason: str,
    broadcaster: Broadcaster | None = None,
) -> Optional[Balances]:
    """Return a failed job's cost inside the caller's transaction, at most once per job."""
    settings = get_settings()
    if not settings.refund_on_fail or not row.cost_credits:
        return None
    ledger = CreditLedger(session, broadcaster)
    return await ledger.refund(
        row.account_id,
        int(row.cost_credits),
        reference_id=f'{kind}:{row.id}',
        reason=(reason or '')[:160],
        idempotency_key=refund_key(kind, row.id),
        metadata={'kind': kind, 'record_id': row.id, 'job_id': row.job_id},
    )


class Reconciler:
    """Single write path from a provider outcome to a terminal job row.

    Webhooks and the poller both end up here. The terminal write is a
    compare-and-set on the status column, so whichever path commits first wins
    and the other observes a conflict and backs off without side effects.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        storage: MediaStorage,
        broadcaster: Broadcaster,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.providers = providers
        self.storage = storage
        self.broadcaster = broadcaster
        self.settings = get_settings()

    async def current_status(self, kind: str, record_id: int) -> Optional[str]:
        model = job_model(kind)
        async with self.sessionmaker() as session:
            result = await session.execute(select(model.status).where(model.id == record_id))
            return result.scalar_one_or_none()

    async def find_by_job_id(self, provider: str, job_id: str) -> Optional[Tuple[str, int]]:
        if not job_id:
            return None
        async with self.sessionmaker() as session:
            for kind, model in JOB_MODELS.items():
                result = await session.execute(
                    select(model.id).where(model.provider == provider, model.job_id == job_id)
                )
                record_id = result.scalar_one_or_none()
                if record_id is not None:
                    return kind, record_id
        return None

    async def _claim(self, model: Any, record_id: int, token: str, now: datetime) -> bool:
        stale_before = now - timedelta(seconds=self.settings.reconcile_claim_seconds)
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.id == record_id,
                    model.status.not_in(TERMINAL_STATUSES),
                    or_(model.claim_token.is_(None), model.claimed_at <= stale_before),
                )
                .values(claim_token=token, claimed_at=now)
                .returning(model.id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                return False
            await session.commit()
        return True

    async def _release(self, model: Any, record_id: int, token: str) -> None:
        async with self.sessionmaker() as session:
            await session.execute(
                update(model)
                .where(model.id == record_id, model.claim_token == token)
                .values(claim_token=None, claimed_at=None)
            )
            await session.commit()

    async def _conflict(self, kind: str, record_id: int, via: str) -> bool:
        status = await self.current_status(kind, record_id)
        conflict = ReconciliationConflict(kind, record_id, status or 'missing')
        logger.info('reconciliation_conflict', kind=kind, record_id=record_id, status=status, via=via, error=str(conflict))
        return False

    async def apply(self, kind: str, record_id: int, outcome: ProviderOutcome, via: str) -> bool:
        model = job_model(kind)
        lang = self.settings.default_lang
        async with self.sessionmaker() as session:
            row = await session.get(model, record_id)
            if not row:
                raise NotFound(f'{kind} {record_id} not found')
            if row.is_terminal:
                logger.info('reconcile_skipped_terminal', kind=kind, record_id=record_id, status=row.status, via=via)
                return False
            account_id = row.account_id
            created_at = as_utc(row.created_at)

        # Whoever holds the claim is the only one allowed to download results and finish the row.
        token = uuid.uuid4().hex
        if not await self._claim(model, record_id, token, utcnow()):
            return await self._conflict(kind, record_id, via)

        state = outcome.state
        error = outcome.error
        urls = list(outcome.urls)
        if state == JobStatus.COMPLETED.value and kind != JobKind.TRAINING.value:
            try:
                urls = await self.storage.persist(outcome.urls, kind, record_id, account_id)
            except StorageError as exc:
                logger.warning('storage_failed', kind=kind, record_id=record_id, error=str(exc))
                state = JobStatus.FAILED.value
                error = tf(lang, 'storage_failed', detail=str(exc))
                urls = []
            except Exception:
                await self._release(model, record_id, token)
                raise

        now = utcnow()
        values: Dict[str, Any] = {
            'status': state,
            'result_urls': urls,
            'error_message': None if state == JobStatus.COMPLETED.value else (error or tf(lang, 'job_failed')),
            'reconciled_via': via,
            'claim_token': None,
            'claimed_at': None,
            'updated_at': now,
            'completed_at': now,
        }
        if created_at is not None:
            values['processing_time_ms'] = int((now - created_at).total_seconds() * 1000)
        if model is AIModel and state == JobStatus.COMPLETED.value:
            values['model_version'] = outcome.extra.get('model_version')

        balances: Optional[Balances] = None
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.id == record_id,
                    model.status.not_in(TERMINAL_STATUSES),
                    model.claim_token == token,
                )
                .values(**values)
                .returning(model.id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                return await self._conflict(kind, record_id, via)
            if state != JobStatus.COMPLETED.value:
                row = await session.get(model, record_id)
                balances = await refund_job(session, row, kind, values['error_message'], self.broadcaster)
            await session.commit()

        logger.info('job_reconciled', kind=kind, record_id=record_id, status=state, via=via, refunded=balances is not None)
        extra: Dict[str, Any] = {'via': via}
        if state == JobStatus.COMPLETED.value:
            extra['result_urls'] = urls
        else:
            extra['error_message'] = values['error_message']
        await self.broadcaster.job_status_changed(kind, record_id, account_id, state, extra)
        if balances is not None:
            await self.broadcaster.credits_updated(account_id, balances.as_dict(), 'refund')
        return True

    async def fail(self, kind: str, record_id: int, error: str, via: str) -> bool:
        return await self.apply(kind, record_id, ProviderOutcome(JobStatus.FAILED.value, error=error), via)

    async def mark_processing(self, kind: str, record_id: int, via: str = '') -> bool:
        model = job_model(kind)
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(model)
                .where(model.id == record_id, model.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, updated_at=utcnow())
                .returning(model.account_id)
            )
            account_id = result.scalar_one_or_none()
            if account_id is None:
                await session.rollback()
                return False
            await session.commit()
        await self.broadcaster.job_status_changed(kind, record_id, account_id, JobStatus.PROCESSING.value, {'via': via})
        return True

    async def report_progress(self, kind: str, record_id: int, progress: int, via: str = '') -> None:
        model = job_model(kind)
        async with self.sessionmaker() as session:
            account_id = await session.scalar(select(model.account_id).where(model.id == record_id))
        if account_id is None:
            return
        message = t(self.settings.default_lang, f'progress_{kind}')
        await self.broadcaster.job_progress(kind, record_id, account_id, progress, message)
        logger.debug('job_progress', kind=kind, record_id=record_id, progress=progress, via=via)

    async def handle_webhook(
        self,
        provider_name: str,
        payload: Dict[str, Any],
        kind: str | None = None,
        record_id: int | None = None,
    ) -> str:
        provider = self.providers.get(provider_name)
        job_id = provider.extract_job_id(payload)
        if kind and record_id is not None:
            if kind not in JOB_MODELS:
                raise ValidationError(f'unknown job kind {kind}')
        else:
            found = await self.find_by_job_id(provider_name, job_id)
            if not found:
                raise NotFound(f'no job for {provider_name} id {job_id or "-"}')
            kind, record_id = found

        model = job_model(kind)
        async with self.sessionmaker() as session:
            row = await session.get(model, record_id)
            if not row:
                raise NotFound(f'{kind} {record_id} not found')
            # The callback can beat the dispatcher storing the job id; only a mismatch is suspicious.
            if row.job_id and job_id and row.job_id != job_id:
                logger.warning('webhook_job_mismatch', kind=kind, record_id=record_id, job_id=job_id, expected=row.job_id)
                raise NotFound(f'{kind} {record_id} does not belong to job {job_id}')
            if row.is_terminal:
                logger.info('webhook_duplicate', kind=kind, record_id=record_id, status=row.status)
                return row.status

        outcome = provider.interpret(payload, kind)
        if outcome.is_terminal:
            await self.apply(kind, record_id, outcome, via='webhook')
        elif outcome.state == JobStatus.PROCESSING.value:
            await self.mark_processing(kind, record_id, via='webhook')
            if 'progress' in outcome.extra:
                await self.report_progress(kind, record_id, int(outcome.extra['progress']), via='webhook')
        else:
            logger.info('webhook_status_ignored', kind=kind, record_id=record_id, payload_status=payload.get('status'))
        return await self.current_status(kind, record_id) or ''
