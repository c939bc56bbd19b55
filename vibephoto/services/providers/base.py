from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from vibephoto.config import Settings
from vibephoto.db.models import JobStatus
from vibephoto.errors import ProviderError
from vibephoto.services.retry import call_with_retry


@dataclass
class ProviderOutcome:
    # None means the provider reported something we do not recognise; keep polling.
    state: Optional[str]
    urls: List[str] = field(default_factory=list)
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.ERROR.value)


@dataclass
class SubmittedJob:
    job_id: str
    meta: Dict[str, Any] = field(default_factory=dict)


class ProviderClient(Protocol):
    name: str
    webhooks_reliable: bool

    async def create_job(
        self,
        spec: Any,
        callback_url: str = '',
        *,
        model_version: str | None = None,
    ) -> SubmittedJob:
        ...

    async def get_job(self, job_id: str, kind: str, meta: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        ...

    def interpret(self, record: Dict[str, Any], kind: str = '') -> ProviderOutcome:
        ...

    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        ...

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        ...

    def estimated_seconds(self, kind: str) -> int:
        ...

    async def close(self) -> None:
        ...


def collect_urls(*values: Any) -> List[str]:
    urls: List[str] = []

    def extend_from(value: Any) -> None:
        if isinstance(value, str):
            cleaned = value.strip()
            if cleaned.startswith(('http://', 'https://')):
                urls.append(cleaned)
            return
        if isinstance(value, list):
            for item in value:
                extend_from(item)
            return
        if isinstance(value, dict):
            for key in ('url', 'image', 'video', 'output'):
                if key in value:
                    extend_from(value[key])

    for value in values:
        extend_from(value)
    # Preserve order while removing duplicates.
    return list(dict.fromkeys(urls))


class HttpProvider:
    """Shared request plumbing: bearer auth, bounded retries, error mapping."""

    name = ''
    webhooks_reliable = True

    def __init__(
        self,
        settings: Settings,
        base_url: str,
        token: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.token}',
            'Content-Type': 'application/json',
        }

    async def _request(self, method: str, path: str, *, json: Any = None) -> Dict[str, Any]:
        async def send() -> Dict[str, Any]:
            try:
                resp = await self._client.request(method, path, headers=self._headers(), json=json)
            except httpx.HTTPError as exc:
                raise ProviderError(
                    f'{self.name} request failed: {exc}',
                    provider=self.name,
                    transient=True,
                ) from exc
            if resp.status_code >= 400:
                raise ProviderError.from_status(self.name, resp.status_code, resp.text)
            try:
                return resp.json()
            except ValueError as exc:
                raise ProviderError(f'{self.name} returned invalid JSON', provider=self.name) from exc

        return await call_with_retry(
            send,
            retries=self.settings.provider_max_retries,
            base_delay=self.settings.provider_retry_base_delay_seconds,
            label=f'{self.name} {method} {path}',
        )
