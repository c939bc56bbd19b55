from __future__ import annotations

from typing import Dict, Iterator

import httpx

from vibephoto.config import Settings
from vibephoto.db.models import JobKind
from vibephoto.errors import ValidationError
from vibephoto.services.providers.astria import AstriaClient
from vibephoto.services.providers.base import ProviderClient
from vibephoto.services.providers.replicate import ReplicateClient


class ProviderRegistry:
    def __init__(self, settings: Settings, clients: Dict[str, ProviderClient]) -> None:
        self.settings = settings
        self._clients = dict(clients)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> 'ProviderRegistry':
        return cls(
            settings,
            {
                'replicate': ReplicateClient(settings, transport=transport),
                'astria': AstriaClient(settings, transport=transport),
            },
        )

    def get(self, name: str) -> ProviderClient:
        try:
            return self._clients[name]
        except KeyError:
            raise ValidationError(f'unknown provider {name}') from None

    def name_for(self, kind: str) -> str:
        if kind == JobKind.TRAINING.value:
            return self.settings.training_provider
        if kind == JobKind.GENERATION.value:
            return self.settings.generation_provider
        # Edit, upscale and video models are only hosted on Replicate.
        return 'replicate'

    def for_kind(self, kind: str) -> ProviderClient:
        return self.get(self.name_for(kind))

    def __iter__(self) -> Iterator[ProviderClient]:
        return iter(self._clients.values())

    def __contains__(self, name: object) -> bool:
        return name in self._clients

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
