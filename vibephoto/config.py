from __future__ import annotations

import base64
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8')

    # Database
    database_url: str = Field('sqlite+aiosqlite:///./vibephoto.db', alias='DATABASE_URL')

    # Web
    web_host: str = Field('127.0.0.1', alias='WEB_HOST')
    web_port: int = Field(9010, alias='WEB_PORT')
    web_secret: str = Field('change-me', alias='WEB_SECRET')
    public_base_url: str = Field('', alias='PUBLIC_BASE_URL')

    # Replicate
    replicate_api_token: str = Field('', alias='REPLICATE_API_TOKEN')
    replicate_webhook_secret: str = Field('', alias='REPLICATE_WEBHOOK_SECRET')
    replicate_webhook_max_skew_seconds: int = Field(300, alias='REPLICATE_WEBHOOK_MAX_SKEW_SECONDS')
    replicate_generation_version: str = Field('', alias='REPLICATE_GENERATION_VERSION')
    replicate_edit_model: str = Field('google/nano-banana', alias='REPLICATE_EDIT_MODEL')
    replicate_upscale_model: str = Field('topazlabs/image-upscale', alias='REPLICATE_UPSCALE_MODEL')
    replicate_video_model: str = Field('kwaivgi/kling-v2.1', alias='REPLICATE_VIDEO_MODEL')
    replicate_training_model: str = Field('ostris/flux-dev-lora-trainer', alias='REPLICATE_TRAINING_MODEL')
    replicate_training_version: str = Field('', alias='REPLICATE_TRAINING_VERSION')
    replicate_training_destination: str = Field('', alias='REPLICATE_TRAINING_DESTINATION')

    # Astria
    astria_api_key: str = Field('', alias='ASTRIA_API_KEY')
    astria_base_tune_id: str = Field('1504944', alias='ASTRIA_BASE_TUNE_ID')
    astria_webhook_secret: str = Field('', alias='ASTRIA_WEBHOOK_SECRET')

    # Providers
    generation_provider: str = Field('replicate', alias='GENERATION_PROVIDER')
    training_provider: str = Field('astria', alias='TRAINING_PROVIDER')
    provider_max_retries: int = Field(2, alias='PROVIDER_MAX_RETRIES')
    provider_retry_base_delay_seconds: float = Field(1.0, alias='PROVIDER_RETRY_BASE_DELAY_SECONDS')
    provider_timeout_seconds: int = Field(60, alias='PROVIDER_TIMEOUT_SECONDS')

    # Polling
    astria_poll_interval_seconds: float = Field(5, alias='ASTRIA_POLL_INTERVAL_SECONDS')
    replicate_poll_interval_seconds: float = Field(3, alias='REPLICATE_POLL_INTERVAL_SECONDS')
    poll_start_delay_seconds: float = Field(30, alias='POLL_START_DELAY_SECONDS')
    poll_stale_processing_seconds: int = Field(600, alias='POLL_STALE_PROCESSING_SECONDS')
    poll_max_backoff_seconds: float = Field(30, alias='POLL_MAX_BACKOFF_SECONDS')
    global_max_poll_concurrency: int = Field(10, alias='GLOBAL_MAX_POLL_CONCURRENCY')
    poll_watch_interval_seconds: int = Field(60, alias='POLL_WATCH_INTERVAL_SECONDS')
    poll_enabled: bool = Field(True, alias='POLL_ENABLED')
    reconcile_claim_seconds: int = Field(300, alias='RECONCILE_CLAIM_SECONDS')

    # Storage
    media_storage_path: str = Field('./media', alias='MEDIA_STORAGE_PATH')
    public_media_base_url: str = Field('http://127.0.0.1:9010/media', alias='PUBLIC_MEDIA_BASE_URL')
    max_download_bytes: int = Field(200 * 1024 * 1024, alias='MAX_DOWNLOAD_BYTES')

    # Credits
    refund_on_fail: bool = Field(True, alias='REFUND_ON_FAIL')
    max_edit_image_bytes: int = Field(10 * 1024 * 1024, alias='MAX_EDIT_IMAGE_BYTES')
    max_upscale_image_bytes: int = Field(20 * 1024 * 1024, alias='MAX_UPSCALE_IMAGE_BYTES')

    # Cron / admin
    cron_secret: str = Field('', alias='CRON_SECRET')

    # Realtime
    realtime_queue_size: int = Field(100, alias='REALTIME_QUEUE_SIZE')
    realtime_keepalive_seconds: int = Field(25, alias='REALTIME_KEEPALIVE_SECONDS')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')
    default_lang: str = Field('pt', alias='DEFAULT_LANG')

    def callback_url(self, provider: str, kind: str, record_id: int) -> str:
        base = self.public_base_url.strip().rstrip('/')
        if not base:
            return ''
        return f'{base}/webhooks/{provider}?type={kind}&id={record_id}'

    def poll_interval_for(self, provider: str) -> float:
        if provider == 'astria':
            return float(self.astria_poll_interval_seconds)
        return float(self.replicate_poll_interval_seconds)

    def replicate_webhook_key(self) -> bytes:
        # Svix-style secrets are `whsec_<base64>`; anything else is used raw.
        secret = self.replicate_webhook_secret.strip()
        if secret.startswith('whsec_'):
            return base64.b64decode(secret[len('whsec_'):])
        return secret.encode('utf-8')

    def media_base(self) -> str:
        return self.public_media_base_url.rstrip('/')

    def cron_tokens(self) -> List[str]:
        return [x.strip() for x in self.cron_secret.split(',') if x.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
