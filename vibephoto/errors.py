from __future__ import annotations


class VibePhotoError(Exception):
    code = 'error'
    status_code = 500

    def __init__(self, message: str = '', *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code


class ValidationError(VibePhotoError):
    code = 'validation_error'
    status_code = 400


class NotFound(VibePhotoError):
    code = 'not_found'
    status_code = 404


class Unauthorized(VibePhotoError):
    code = 'unauthorized'
    status_code = 401


class InsufficientCredits(VibePhotoError):
    code = 'insufficient_credits'
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f'Insufficient credits. Need {required}, have {available}')
        self.required = required
        self.available = available


class ProviderError(VibePhotoError):
    code = 'provider_error'
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider: str = '',
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.upstream_status = status_code
        self.transient = transient

    @classmethod
    def from_status(cls, provider: str, status_code: int, text: str) -> 'ProviderError':
        transient = status_code == 429 or status_code >= 500
        return cls(
            f'{provider} error {status_code}: {text[:300]}',
            provider=provider,
            status_code=status_code,
            transient=transient,
        )


class StorageError(VibePhotoError):
    code = 'storage_error'
    status_code = 502


class ReconciliationConflict(VibePhotoError):
    code = 'reconciliation_conflict'
    status_code = 409

    def __init__(self, kind: str, record_id: int, current_status: str) -> None:
        super().__init__(f'{kind} {record_id} already {current_status}')
        self.kind = kind
        self.record_id = record_id
        self.current_status = current_status
