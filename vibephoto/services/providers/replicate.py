from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, List, Mapping

import httpx

from vibephoto.config import Settings
from vibephoto.db.models import JobKind, JobStatus
from vibephoto.errors import ProviderError, ValidationError
from vibephoto.i18n import t
from vibephoto.services.jobspecs import (
    EditJobSpec,
    GenerationJobSpec,
    TrainingJobSpec,
    UpscaleJobSpec,
    VideoJobSpec,
)
from vibephoto.services.providers.base import HttpProvider, ProviderOutcome, SubmittedJob, collect_urls
from vibephoto.utils.logging import get_logger


logger = get_logger('replicate')

SUCCESS_STATUSES = {'succeeded'}
FAIL_STATUSES = {'failed'}
CANCEL_STATUSES = {'canceled', 'cancelled'}
RUNNING_STATUSES = {'starting', 'processing', 'queued'}
REPORTED_PROGRESS = {'queued': 0, 'starting': 5, 'processing': 50}

ESTIMATED_SECONDS = {
    JobKind.TRAINING.value: 20 * 60,
    JobKind.GENERATION.value: 30,
    JobKind.EDIT.value: 30,
    JobKind.UPSCALE.value: 60,
    JobKind.VIDEO.value: 180,
}


class ReplicateClient(HttpProvider):
    name = 'replicate'
    webhooks_reliable = True

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(settings, 'https://api.replicate.com', settings.replicate_api_token, transport=transport)

    def _webhook_fields(self, callback_url: str) -> Dict[str, Any]:
        if not callback_url:
            return {}
        return {'webhook': callback_url, 'webhook_events_filter': ['completed']}

    async def _model_prediction(self, model: str, payload: Dict[str, Any], callback_url: str) -> Dict[str, Any]:
        body = {'input': payload, **self._webhook_fields(callback_url)}
        return await self._request('POST', f'/v1/models/{model}/predictions', json=body)

    async def create_job(
        self,
        spec: Any,
        callback_url: str = '',
        *,
        model_version: str | None = None,
    ) -> SubmittedJob:
        settings = self.settings
        if isinstance(spec, GenerationJobSpec):
            version = model_version or settings.replicate_generation_version
            if not version:
                raise ValidationError('no model version available for generation')
            payload: Dict[str, Any] = {
                'prompt': spec.prompt,
                'aspect_ratio': spec.aspect_ratio,
                'num_outputs': spec.variations,
            }
            if spec.seed is not None:
                payload['seed'] = spec.seed
            body = {'version': version, 'input': payload, **self._webhook_fields(callback_url)}
            record = await self._request('POST', '/v1/predictions', json=body)
        elif isinstance(spec, EditJobSpec):
            payload = {'prompt': spec.prompt, 'image_input': list(spec.image_urls)}
            if spec.aspect_ratio:
                payload['aspect_ratio'] = spec.aspect_ratio
            record = await self._model_prediction(settings.replicate_edit_model, payload, callback_url)
        elif isinstance(spec, UpscaleJobSpec):
            payload = {'image': spec.image_url, 'upscale_factor': f'{spec.scale_factor}x'}
            record = await self._model_prediction(settings.replicate_upscale_model, payload, callback_url)
        elif isinstance(spec, VideoJobSpec):
            payload = {'prompt': spec.prompt, 'duration': spec.duration, 'aspect_ratio': spec.aspect_ratio}
            if spec.source_image_url:
                payload['start_image'] = spec.source_image_url
            record = await self._model_prediction(settings.replicate_video_model, payload, callback_url)
        elif isinstance(spec, TrainingJobSpec):
            if not settings.replicate_training_version or not settings.replicate_training_destination:
                raise ValidationError('replicate training is not configured')
            body = {
                'destination': settings.replicate_training_destination,
                'input': {
                    'input_images': list(spec.photo_urls),
                    'trigger_word': spec.trigger_word,
                },
                **self._webhook_fields(callback_url),
            }
            path = (
                f'/v1/models/{settings.replicate_training_model}'
                f'/versions/{settings.replicate_training_version}/trainings'
            )
            record = await self._request('POST', path, json=body)
        else:
            raise ValidationError(f'replicate does not support {getattr(spec, "kind", spec)!r}')

        job_id = self.extract_job_id(record)
        if not job_id:
            raise ProviderError('replicate response has no id', provider=self.name)
        logger.info('replicate_job_created', kind=spec.kind, job_id=job_id, status=record.get('status'))
        return SubmittedJob(job_id=job_id, meta={'status': record.get('status')})

    async def get_job(self, job_id: str, kind: str, meta: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        if kind == JobKind.TRAINING.value:
            return await self._request('GET', f'/v1/trainings/{job_id}')
        return await self._request('GET', f'/v1/predictions/{job_id}')

    @staticmethod
    def extract_job_id(payload: Dict[str, Any]) -> str:
        return str(payload.get('id') or '').strip()

    def interpret(self, record: Dict[str, Any], kind: str = '') -> ProviderOutcome:
        status = str(record.get('status') or '').strip().lower()
        output = record.get('output')
        if status in SUCCESS_STATUSES:
            if kind == JobKind.TRAINING.value:
                version = output.get('version') if isinstance(output, dict) else None
                if not version:
                    return ProviderOutcome(JobStatus.FAILED.value, error=t(self.settings.default_lang, 'no_output'))
                return ProviderOutcome(
                    JobStatus.COMPLETED.value,
                    urls=collect_urls(output.get('weights')),
                    extra={'model_version': version},
                )
            urls = collect_urls(output)
            if not urls:
                return ProviderOutcome(JobStatus.FAILED.value, error=t(self.settings.default_lang, 'no_output'))
            return ProviderOutcome(JobStatus.COMPLETED.value, urls=urls)
        if status in FAIL_STATUSES:
            error = record.get('error') or t(self.settings.default_lang, 'job_failed')
            return ProviderOutcome(JobStatus.FAILED.value, error=str(error))
        if status in CANCEL_STATUSES:
            return ProviderOutcome(JobStatus.FAILED.value, error=t(self.settings.default_lang, 'job_cancelled'))
        if status in RUNNING_STATUSES:
            return ProviderOutcome(JobStatus.PROCESSING.value, extra={'progress': REPORTED_PROGRESS[status]})
        return ProviderOutcome(None)

    @staticmethod
    def compute_webhook_signature(webhook_id: str, timestamp: str, body: bytes, key: bytes) -> str:
        message = f'{webhook_id}.{timestamp}.'.encode('utf-8') + body
        digest = hmac.new(key, message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode('utf-8')

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self.settings.replicate_webhook_secret:
            return True
        webhook_id = headers.get('webhook-id') or ''
        timestamp = headers.get('webhook-timestamp') or ''
        received = headers.get('webhook-signature') or ''
        if not webhook_id or not timestamp or not received:
            return False
        try:
            skew = abs(time.time() - int(timestamp))
        except ValueError:
            return False
        if skew > self.settings.replicate_webhook_max_skew_seconds:
            logger.warning('replicate_webhook_stale', webhook_id=webhook_id, skew=skew)
            return False
        expected = self.compute_webhook_signature(webhook_id, timestamp, body, self.settings.replicate_webhook_key())
        # Header holds space separated `v1,<sig>` entries, one per active secret.
        candidates: List[str] = [part.split(',', 1)[1] for part in received.split() if ',' in part]
        return any(hmac.compare_digest(expected, candidate) for candidate in candidates)

    def estimated_seconds(self, kind: str) -> int:
        return ESTIMATED_SECONDS.get(kind, 60)
