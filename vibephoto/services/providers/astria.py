from __future__ import annotations

import hmac
from typing import Any, Dict, Mapping

import httpx

from vibephoto.config import Settings
from vibephoto.db.models import JobKind, JobStatus
from vibephoto.errors import ProviderError, ValidationError
from vibephoto.i18n import t
from vibephoto.services.jobspecs import GenerationJobSpec, TrainingJobSpec
from vibephoto.services.providers.base import HttpProvider, ProviderOutcome, SubmittedJob, collect_urls
from vibephoto.utils.logging import get_logger


logger = get_logger('astria')

RUNNING_STATUSES = {'queued', 'training', 'generating', 'processing'}
SUCCESS_STATUSES = {'trained', 'generated', 'succeeded'}
FAIL_STATUSES = {'failed'}
CANCEL_STATUSES = {'cancelled', 'canceled'}

ESTIMATED_SECONDS = {
    JobKind.TRAINING.value: 20 * 60,
    JobKind.GENERATION.value: 60,
}


class AstriaClient(HttpProvider):
    """Astria tunes (training) and prompts (generation).

    Astria callbacks are known to go missing, so every job dispatched here is
    also polled. Prompt status is inferred from the presence of images rather
    than the status field, which Astria does not always fill in.
    """

    name = 'astria'
    webhooks_reliable = False

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(settings, 'https://api.astria.ai', settings.astria_api_key, transport=transport)

    async def create_job(
        self,
        spec: Any,
        callback_url: str = '',
        *,
        model_version: str | None = None,
    ) -> SubmittedJob:
        if isinstance(spec, TrainingJobSpec):
            tune: Dict[str, Any] = {
                'title': spec.name,
                'name': spec.class_word,
                'token': spec.trigger_word,
                'base_tune_id': self.settings.astria_base_tune_id,
                'model_type': 'lora',
                'image_urls': list(spec.photo_urls),
            }
            if callback_url:
                tune['callback'] = callback_url
            record = await self._request('POST', '/tunes', json={'tune': tune})
            job_id = self.extract_job_id(record)
            meta = {'tune_id': job_id}
        elif isinstance(spec, GenerationJobSpec):
            tune_id = model_version or self.settings.astria_base_tune_id
            prompt: Dict[str, Any] = {
                'text': spec.prompt,
                'num_images': spec.variations,
                'aspect_ratio': spec.aspect_ratio,
            }
            if spec.seed is not None:
                prompt['seed'] = spec.seed
            if callback_url:
                prompt['callback'] = callback_url
            record = await self._request('POST', f'/tunes/{tune_id}/prompts', json={'prompt': prompt})
            job_id = self.extract_job_id(record)
            meta = {'tune_id': str(tune_id)}
        else:
            raise ValidationError(f'astria does not support {getattr(spec, "kind", spec)!r}')

        if not job_id:
            raise ProviderError('astria response has no id', provider=self.name)
        logger.info('astria_job_created', kind=spec.kind, job_id=job_id, **meta)
        return SubmittedJob(job_id=job_id, meta=meta)

    async def get_job(self, job_id: str, kind: str, meta: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        if kind == JobKind.TRAINING.value:
            return await self._request('GET', f'/tunes/{job_id}')
        tune_id = (meta or {}).get('tune_id')
        if tune_id:
            return await self._request('GET', f'/tunes/{tune_id}/prompts/{job_id}')
        return await self._request('GET', f'/prompts/{job_id}')

    @staticmethod
    def _unwrap(payload: Dict[str, Any]) -> Dict[str, Any]:
        # Callbacks arrive either bare or wrapped as {"tune": {...}} / {"prompt": {...}}.
        for key in ('tune', 'prompt'):
            inner = payload.get(key)
            if isinstance(inner, dict) and inner.get('id') is not None:
                return inner
        return payload

    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        return str(self._unwrap(payload).get('id') or '').strip()

    def interpret(self, record: Dict[str, Any], kind: str = '') -> ProviderOutcome:
        lang = self.settings.default_lang
        record = self._unwrap(record)
        status = str(record.get('status') or '').strip().lower()
        error = record.get('error_message') or record.get('user_error')

        if status in FAIL_STATUSES or record.get('failed_at'):
            return ProviderOutcome(JobStatus.FAILED.value, error=str(error or t(lang, 'job_failed')))
        if status in CANCEL_STATUSES:
            return ProviderOutcome(JobStatus.FAILED.value, error=t(lang, 'job_cancelled'))

        if kind == JobKind.TRAINING.value:
            if status == 'trained' or record.get('trained_at'):
                return ProviderOutcome(JobStatus.COMPLETED.value, extra={'model_version': str(record.get('id'))})
            if status in RUNNING_STATUSES or not status:
                return ProviderOutcome(JobStatus.PROCESSING.value)
            return ProviderOutcome(None)

        urls = collect_urls(record.get('images'))
        finished = status in SUCCESS_STATUSES or bool(record.get('trained_at') or record.get('completed_at'))
        if urls and (finished or not status):
            return ProviderOutcome(JobStatus.COMPLETED.value, urls=urls)
        if finished:
            return ProviderOutcome(JobStatus.FAILED.value, error=t(lang, 'no_output'))
        if status in RUNNING_STATUSES or not status:
            return ProviderOutcome(JobStatus.PROCESSING.value)
        return ProviderOutcome(None)

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        secret = self.settings.astria_webhook_secret
        if not secret:
            return True
        received = headers.get('x-astria-secret') or headers.get('authorization') or ''
        if received.lower().startswith('bearer '):
            received = received[len('bearer '):]
        return hmac.compare_digest(secret.encode('utf-8'), received.strip().encode('utf-8'))

    def estimated_seconds(self, kind: str) -> int:
        return ESTIMATED_SECONDS.get(kind, 60)
