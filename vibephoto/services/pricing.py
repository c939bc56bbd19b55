from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from vibephoto.db.models import BillingCycle, JobKind, Plan, TransactionSource


IMAGE_GENERATION_PER_OUTPUT = 10
IMAGE_EDIT_PER_IMAGE = 15
UPSCALE_PER_IMAGE = 10
VIDEO_DURATION_COSTS: Dict[int, int] = {4: 80, 6: 120, 8: 160}
ADDITIONAL_MODEL_COST = 500


@dataclass(frozen=True)
class PlanConfig:
    credits: int
    models: int
    resolution: str


PLAN_CONFIGS: Dict[str, PlanConfig] = {
    Plan.STARTER.value: PlanConfig(credits=500, models=1, resolution='512x512'),
    Plan.PREMIUM.value: PlanConfig(credits=1200, models=1, resolution='1024x1024'),
    Plan.GOLD.value: PlanConfig(credits=2500, models=1, resolution='2048x2048'),
}

KIND_SOURCES: Dict[str, TransactionSource] = {
    JobKind.TRAINING.value: TransactionSource.TRAINING,
    JobKind.GENERATION.value: TransactionSource.GENERATION,
    JobKind.EDIT.value: TransactionSource.EDIT,
    JobKind.UPSCALE.value: TransactionSource.UPSCALE,
    JobKind.VIDEO.value: TransactionSource.VIDEO,
}


def plan_config(plan: str) -> PlanConfig:
    return PLAN_CONFIGS.get(plan, PLAN_CONFIGS[Plan.STARTER.value])


def plan_allowance(plan: str, billing_cycle: str) -> int:
    monthly = plan_config(plan).credits
    if billing_cycle == BillingCycle.YEARLY.value:
        return monthly * 12
    return monthly


def normalize_video_duration(duration: int) -> int:
    if duration <= 4:
        return 4
    if duration <= 6:
        return 6
    return 8


def generation_cost(variations: int = 1) -> int:
    return max(1, variations) * IMAGE_GENERATION_PER_OUTPUT


def edit_cost(image_count: int = 1) -> int:
    return max(1, image_count) * IMAGE_EDIT_PER_IMAGE


def upscale_cost(image_count: int = 1) -> int:
    return max(1, image_count) * UPSCALE_PER_IMAGE


def video_cost(duration: int) -> int:
    return VIDEO_DURATION_COSTS[normalize_video_duration(duration)]


def training_cost(plan: str, models_already_trained: int) -> int:
    if models_already_trained < plan_config(plan).models:
        return 0
    return ADDITIONAL_MODEL_COST
