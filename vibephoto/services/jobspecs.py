from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from vibephoto.config import get_settings
from vibephoto.errors import ValidationError
from vibephoto.services.pricing import (
    edit_cost,
    generation_cost,
    normalize_video_duration,
    upscale_cost,
    video_cost,
)


ASPECT_RATIOS = ('1:1', '4:3', '3:4', '9:16', '16:9')
UPSCALE_ASPECT_RATIOS = ASPECT_RATIOS + ('match_input_image',)
MIN_TRAINING_PHOTOS = 5
MAX_TRAINING_PHOTOS = 30
MAX_EDIT_IMAGES = 3


class _JobSpecBase(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)


class TrainingJobSpec(_JobSpecBase):
    kind: Literal['training'] = 'training'
    name: str = Field(min_length=1, max_length=128)
    class_word: str = Field('person', min_length=1, max_length=32)
    trigger_word: str = Field('ohwx', min_length=1, max_length=32)
    photo_urls: List[str] = Field(min_length=MIN_TRAINING_PHOTOS, max_length=MAX_TRAINING_PHOTOS)


class GenerationJobSpec(_JobSpecBase):
    kind: Literal['generation'] = 'generation'
    prompt: str = Field(min_length=1, max_length=2000)
    model_id: Optional[int] = None
    aspect_ratio: str = '1:1'
    variations: int = Field(1, ge=1, le=4)
    seed: Optional[int] = None

    @field_validator('aspect_ratio')
    @classmethod
    def _aspect_ratio(cls, value: str) -> str:
        if value not in ASPECT_RATIOS:
            raise ValueError(f'unsupported aspect ratio {value}')
        return value


class EditJobSpec(_JobSpecBase):
    kind: Literal['edit'] = 'edit'
    prompt: str = Field(min_length=1, max_length=2000)
    image_urls: List[str] = Field(min_length=1, max_length=MAX_EDIT_IMAGES)
    image_size_bytes: int = Field(0, ge=0)
    aspect_ratio: Optional[str] = None

    @field_validator('aspect_ratio')
    @classmethod
    def _aspect_ratio(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ASPECT_RATIOS:
            raise ValueError(f'unsupported aspect ratio {value}')
        return value


class UpscaleJobSpec(_JobSpecBase):
    kind: Literal['upscale'] = 'upscale'
    image_url: str = Field(min_length=1)
    image_size_bytes: int = Field(0, ge=0)
    scale_factor: Literal[2, 4] = 2
    aspect_ratio: Optional[str] = None

    @field_validator('aspect_ratio')
    @classmethod
    def _aspect_ratio(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in UPSCALE_ASPECT_RATIOS:
            raise ValueError(f'unsupported aspect ratio {value}')
        return value


class VideoJobSpec(_JobSpecBase):
    kind: Literal['video'] = 'video'
    prompt: str = Field(min_length=1, max_length=2000)
    duration: int = Field(4, ge=1, le=10)
    source_image_url: Optional[str] = None
    aspect_ratio: str = '16:9'

    @field_validator('duration')
    @classmethod
    def _duration(cls, value: int) -> int:
        return normalize_video_duration(value)

    @field_validator('aspect_ratio')
    @classmethod
    def _aspect_ratio(cls, value: str) -> str:
        if value not in ASPECT_RATIOS:
            raise ValueError(f'unsupported aspect ratio {value}')
        return value


JobSpec = Annotated[
    Union[TrainingJobSpec, GenerationJobSpec, EditJobSpec, UpscaleJobSpec, VideoJobSpec],
    Field(discriminator='kind'),
]

_adapter: TypeAdapter = TypeAdapter(JobSpec)


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = '.'.join(str(x) for x in err.get('loc', ()) if x not in ('training', 'generation', 'edit', 'upscale', 'video'))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get('msg')))
    return '; '.join(parts)


def parse_job_spec(data: dict) -> JobSpec:
    try:
        spec = _adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from None
    check_limits(spec)
    return spec


def check_limits(spec: JobSpec) -> None:
    """Size limits live in settings, so they are checked outside the model."""
    settings = get_settings()
    if isinstance(spec, EditJobSpec) and spec.image_size_bytes > settings.max_edit_image_bytes:
        raise ValidationError(f'image too large: {spec.image_size_bytes} bytes (max {settings.max_edit_image_bytes})')
    if isinstance(spec, UpscaleJobSpec) and spec.image_size_bytes > settings.max_upscale_image_bytes:
        raise ValidationError(
            f'image too large: {spec.image_size_bytes} bytes (max {settings.max_upscale_image_bytes})'
        )


def spec_cost(spec: JobSpec) -> int:
    # Training is priced by the dispatcher because it depends on the account's model count.
    if isinstance(spec, GenerationJobSpec):
        return generation_cost(spec.variations)
    if isinstance(spec, EditJobSpec):
        return edit_cost(1)
    if isinstance(spec, UpscaleJobSpec):
        return upscale_cost(1)
    if isinstance(spec, VideoJobSpec):
        return video_cost(spec.duration)
    return 0
