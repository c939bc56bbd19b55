from __future__ import annotations

import enum
from datetime import datetime
from typing import Dict, Type

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from vibephoto.db.base import Base


JSONType = JSON().with_variant(JSONB(), 'postgresql')


class Plan(str, enum.Enum):
    STARTER = 'STARTER'
    PREMIUM = 'PREMIUM'
    GOLD = 'GOLD'


class BillingCycle(str, enum.Enum):
    MONTHLY = 'MONTHLY'
    YEARLY = 'YEARLY'


class PurchaseStatus(str, enum.Enum):
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    CANCELLED = 'CANCELLED'
    REFUNDED = 'REFUNDED'


class TransactionType(str, enum.Enum):
    EARNED = 'EARNED'
    SPENT = 'SPENT'
    EXPIRED = 'EXPIRED'
    REFUNDED = 'REFUNDED'


class TransactionSource(str, enum.Enum):
    SUBSCRIPTION = 'SUBSCRIPTION'
    PURCHASE = 'PURCHASE'
    BONUS = 'BONUS'
    ADJUSTMENT = 'ADJUSTMENT'
    GENERATION = 'GENERATION'
    TRAINING = 'TRAINING'
    EDIT = 'EDIT'
    UPSCALE = 'UPSCALE'
    VIDEO = 'VIDEO'
    REFUND = 'REFUND'
    EXPIRATION = 'EXPIRATION'


class JobStatus(str, enum.Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    ERROR = 'ERROR'


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.ERROR.value)


class JobKind(str, enum.Enum):
    TRAINING = 'training'
    GENERATION = 'generation'
    EDIT = 'edit'
    UPSCALE = 'upscale'
    VIDEO = 'video'


class Account(Base):
    __tablename__ = 'accounts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plan: Mapped[str] = mapped_column(String(16), default=Plan.STARTER.value)
    billing_cycle: Mapped[str] = mapped_column(String(16), default=BillingCycle.MONTHLY.value)
    credits_limit: Mapped[int] = mapped_column(Integer, default=0)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    credits_balance: Mapped[int] = mapped_column(Integer, default=0)
    credits_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class CreditPurchase(Base):
    __tablename__ = 'credit_purchases'
    __table_args__ = (CheckConstraint('used_credits <= credit_amount', name='ck_credit_purchases_used_le_amount'),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey('accounts.id'), index=True)
    package_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    package_name: Mapped[str] = mapped_column(String(128))
    credit_amount: Mapped[int] = mapped_column(Integer)
    used_credits: Mapped[int] = mapped_column(Integer, default=0)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    is_expired: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default=PurchaseStatus.PENDING.value)
    payment_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def remaining(self) -> int:
        return max(0, int(self.credit_amount or 0) - int(self.used_credits or 0))


class CreditTransaction(Base):
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey('accounts.id'), index=True)
    type: Mapped[str] = mapped_column(String(16))
    source: Mapped[str] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    credit_purchase_id: Mapped[int | None] = mapped_column(ForeignKey('credit_purchases.id'), nullable=True)
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    balance_after: Mapped[int] = mapped_column(Integer)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class JobMixin:
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey('accounts.id'), index=True)
    provider: Mapped[str] = mapped_column(String(32))
    job_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.PENDING.value, index=True)
    provider_meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    result_urls: Mapped[list] = mapped_column(JSONType, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost_credits: Mapped[int] = mapped_column(Integer, default=0)
    reconciled_via: Mapped[str | None] = mapped_column(String(16), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AIModel(JobMixin, Base):
    __tablename__ = 'ai_models'

    name: Mapped[str] = mapped_column(String(128))
    class_word: Mapped[str] = mapped_column(String(32))
    trigger_word: Mapped[str] = mapped_column(String(32), default='ohwx')
    photo_urls: Mapped[list] = mapped_column(JSONType, default=list)
    model_version: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Generation(JobMixin, Base):
    __tablename__ = 'generations'

    model_id: Mapped[int | None] = mapped_column(ForeignKey('ai_models.id'), nullable=True)
    prompt: Mapped[str] = mapped_column(Text)
    aspect_ratio: Mapped[str] = mapped_column(String(16), default='1:1')
    variations: Mapped[int] = mapped_column(Integer, default=1)
    seed: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ImageEdit(JobMixin, Base):
    __tablename__ = 'image_edits'

    prompt: Mapped[str] = mapped_column(Text)
    source_urls: Mapped[list] = mapped_column(JSONType, default=list)
    aspect_ratio: Mapped[str | None] = mapped_column(String(16), nullable=True)


class Upscale(JobMixin, Base):
    __tablename__ = 'upscales'

    source_url: Mapped[str] = mapped_column(Text)
    scale_factor: Mapped[int] = mapped_column(Integer, default=2)


class VideoGeneration(JobMixin, Base):
    __tablename__ = 'video_generations'

    prompt: Mapped[str] = mapped_column(Text)
    duration: Mapped[int] = mapped_column(Integer, default=4)
    source_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)


JOB_MODELS: Dict[str, Type[JobMixin]] = {
    JobKind.TRAINING.value: AIModel,
    JobKind.GENERATION.value: Generation,
    JobKind.EDIT.value: ImageEdit,
    JobKind.UPSCALE.value: Upscale,
    JobKind.VIDEO.value: VideoGeneration,
}


def job_model(kind: str) -> Type[JobMixin]:
    try:
        return JOB_MODELS[kind]
    except KeyError:
        raise ValueError(f'unknown job kind: {kind}') from None
