from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vibephoto.config import Settings, get_settings
from vibephoto.db.models import (
    AIModel,
    Generation,
    ImageEdit,
    JobMixin,
    JobStatus,
    Upscale,
    VideoGeneration,
    job_model,
)
from vibephoto.errors import InsufficientCredits, NotFound, ProviderError, ValidationError
from vibephoto.i18n import plural, t, tf
from vibephoto.services.jobspecs import (
    EditJobSpec,
    GenerationJobSpec,
    JobSpec,
    TrainingJobSpec,
    UpscaleJobSpec,
    VideoJobSpec,
    check_limits,
    parse_job_spec,
    spec_cost,
)
from vibephoto.services.ledger import CreditLedger
from vibephoto.services.pricing import KIND_SOURCES, training_cost
from vibephoto.services.providers.base import ProviderOutcome
from vibephoto.services.providers.registry import ProviderRegistry
from vibephoto.services.realtime import Broadcaster
from vibephoto.services.reconciler import Reconciler
from vibephoto.utils.logging import get_logger
from vibephoto.utils.time import as_utc, utcnow


if TYPE_CHECKING:
    from vibephoto.services.poller import PollManager


logger = get_logger('dispatcher')


@dataclass
class DispatchResult:
    kind: str
    record_id: int
    job_id: str
    estimated_time: int
    cost: int
    status: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'record_id': self.record_id,
            'job_id': self.job_id,
            'estimated_time': self.estimated_time,
            'cost': self.cost,
            'status': self.status,
        }


def describe(spec: JobSpec, lang: str) -> str:
    if isinstance(spec, GenerationJobSpec):
        return tf(lang, 'tx_generation', count=spec.variations, images_label=plural(lang, 'image', spec.variations))
    if isinstance(spec, TrainingJobSpec):
        return tf(lang, 'tx_training', name=spec.name)
    if isinstance(spec, EditJobSpec):
        return t(lang, 'tx_edit')
    if isinstance(spec, UpscaleJobSpec):
        return t(lang, 'tx_upscale')
    return tf(lang, 'tx_video', duration=spec.duration)


def build_row(spec: JobSpec, account_id: int, provider: str, cost: int) -> JobMixin:
    now = utcnow()
    common: Dict[str, Any] = {
        'account_id': account_id,
        'provider': provider,
        'status': JobStatus.PENDING.value,
        'cost_credits': cost,
        'provider_meta': {},
        'result_urls': [],
        'created_at': now,
        'updated_at': now,
    }
    if isinstance(spec, TrainingJobSpec):
        return AIModel(
            name=spec.name,
            class_word=spec.class_word,
            trigger_word=spec.trigger_word,
            photo_urls=list(spec.photo_urls),
            **common,
        )
    if isinstance(spec, GenerationJobSpec):
        return Generation(
            model_id=spec.model_id,
            prompt=spec.prompt,
            aspect_ratio=spec.aspect_ratio,
            variations=spec.variations,
            seed=spec.seed,
            **common,
        )
    if isinstance(spec, EditJobSpec):
        return ImageEdit(prompt=spec.prompt, source_urls=list(spec.image_urls), aspect_ratio=spec.aspect_ratio, **common)
    if isinstance(spec, UpscaleJobSpec):
        return Upscale(source_url=spec.image_url, scale_factor=spec.scale_factor, **common)
    if isinstance(spec, VideoJobSpec):
        return VideoGeneration(
            prompt=spec.prompt,
            duration=spec.duration,
            source_image_url=spec.source_image_url,
            **common,
        )
    raise ValidationError(f'unsupported job spec {type(spec).__name__}')


def serialize_job(kind: str, row: JobMixin) -> Dict[str, Any]:
    data = {
        'kind': kind,
        'record_id': row.id,
        'provider': row.provider,
        'job_id': row.job_id,
        'status': row.status,
        'result_urls': list(row.result_urls or []),
        'error_message': row.error_message,
        'cost': row.cost_credits,
        'processing_time_ms': row.processing_time_ms,
        'created_at': as_utc(row.created_at).isoformat() if row.created_at else None,
        'completed_at': as_utc(row.completed_at).isoformat() if row.completed_at else None,
    }
    if isinstance(row, AIModel):
        data['model_version'] = row.model_version
    return data


class JobDispatcher:
    """Charges for a job, hands it to its provider and records the provider's id.

    Credits are taken before the provider call so two concurrent dispatches can
    never both spend the same balance; a failed call returns them through the
    reconciler's failure path.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        reconciler: Reconciler,
        broadcaster: Broadcaster,
        poller: Optional['PollManager'] = None,
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.providers = providers
        self.reconciler = reconciler
        self.broadcaster = broadcaster
        self.poller = poller
        self.settings = settings or get_settings()

    async def _resolve_model(self, session: AsyncSession, account_id: int, model_id: int) -> AIModel:
        model = await session.get(AIModel, model_id)
        if not model or model.account_id != account_id:
            raise NotFound(f'model {model_id} not found')
        if model.status != JobStatus.COMPLETED.value or not model.model_version:
            raise ValidationError(f'model {model_id} is not ready')
        return model

    async def _training_cost(self, session: AsyncSession, account_id: int, plan: str) -> int:
        trained = await session.scalar(
            select(func.count(AIModel.id)).where(
                AIModel.account_id == account_id,
                AIModel.status.not_in([JobStatus.FAILED.value, JobStatus.ERROR.value]),
            )
        )
        return training_cost(plan, int(trained or 0))

    async def dispatch(self, account_id: int, spec: JobSpec | Dict[str, Any]) -> DispatchResult:
        if not isinstance(spec, BaseModel):
            spec = parse_job_spec(spec)
        else:
            check_limits(spec)
        kind = spec.kind
        lang = self.settings.default_lang
        provider_name = self.providers.name_for(kind)
        model_version: str | None = None

        async with self.sessionmaker() as session:
            ledger = CreditLedger(session, self.broadcaster)
            account = await ledger.get_account(account_id)
            if isinstance(spec, GenerationJobSpec) and spec.model_id is not None:
                trained = await self._resolve_model(session, account_id, spec.model_id)
                model_version = trained.model_version
                provider_name = trained.provider

            if isinstance(spec, TrainingJobSpec):
                cost = await self._training_cost(session, account_id, account.plan)
            else:
                cost = spec_cost(spec)
            if cost > 0 and not await ledger.can_afford(account_id, cost):
                balances = await ledger.get_balance(account_id)
                raise InsufficientCredits(cost, balances.total)

            client = self.providers.get(provider_name)
            row = build_row(spec, account_id, provider_name, cost)
            session.add(row)
            await session.flush()
            record_id = row.id

            balances = None
            if cost > 0:
                debit = await ledger.deduct(
                    account_id,
                    cost,
                    source=KIND_SOURCES[kind],
                    reference_id=f'{kind}:{record_id}',
                    description=describe(spec, lang)[:255],
                    metadata={'kind': kind, 'record_id': record_id, 'provider': provider_name},
                )
                balances = debit.balances
            await session.commit()

        if balances is not None:
            await ledger.announce(account_id, balances, 'debit')

        callback_url = self.settings.callback_url(provider_name, kind, record_id)
        try:
            submitted = await client.create_job(spec, callback_url, model_version=model_version)
        except (ProviderError, ValidationError) as exc:
            logger.warning('dispatch_failed', kind=kind, record_id=record_id, provider=provider_name, error=str(exc))
            await self.reconciler.fail(kind, record_id, tf(lang, 'dispatch_failed', detail=str(exc))[:500], via='dispatch')
            raise
        except Exception as exc:
            logger.exception('dispatch_error', kind=kind, record_id=record_id, provider=provider_name)
            outcome = ProviderOutcome(JobStatus.ERROR.value, error=tf(lang, 'dispatch_failed', detail=str(exc))[:500])
            await self.reconciler.apply(kind, record_id, outcome, via='dispatch')
            raise

        model = job_model(kind)
        now = utcnow()
        async with self.sessionmaker() as session:
            # A fast webhook may already have moved the row on; only fill what is still empty.
            await session.execute(
                update(model)
                .where(model.id == record_id, model.job_id.is_(None))
                .values(job_id=submitted.job_id, provider_meta=submitted.meta, updated_at=now)
            )
            await session.execute(
                update(model)
                .where(model.id == record_id, model.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, updated_at=now)
            )
            await session.commit()
            status = await session.scalar(select(model.status).where(model.id == record_id))

        await self.broadcaster.job_status_changed(kind, record_id, account_id, status, {'job_id': submitted.job_id})

        if self.poller is not None and self.settings.poll_enabled:
            if not client.webhooks_reliable or not callback_url:
                self.poller.schedule(kind, record_id)

        estimated = client.estimated_seconds(kind)
        logger.info(
            'job_dispatched',
            kind=kind,
            record_id=record_id,
            provider=provider_name,
            job_id=submitted.job_id,
            cost=cost,
        )
        return DispatchResult(
            kind=kind,
            record_id=record_id,
            job_id=submitted.job_id,
            estimated_time=estimated,
            cost=cost,
            status=status,
        )

    async def get_job(self, account_id: int, kind: str, record_id: int) -> Dict[str, Any]:
        try:
            model = job_model(kind)
        except ValueError as exc:
            raise NotFound(str(exc)) from None
        async with self.sessionmaker() as session:
            row = await session.get(model, record_id)
            if not row or row.account_id != account_id:
                raise NotFound(f'{kind} {record_id} not found')
            return serialize_job(kind, row)

