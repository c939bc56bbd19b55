from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vibephoto.config import get_settings
from vibephoto.db.models import (
    Account,
    BillingCycle,
    CreditPurchase,
    PurchaseStatus,
    TransactionSource,
    TransactionType,
)
from vibephoto.errors import InsufficientCredits, NotFound, ReconciliationConflict, ValidationError
from vibephoto.i18n import t, tf
from vibephoto.services.pricing import plan_allowance
from vibephoto.services.realtime import Broadcaster
from vibephoto.services.transactions import TransactionRecorder
from vibephoto.utils.logging import get_logger
from vibephoto.utils.time import add_months, as_utc, utcnow


logger = get_logger('ledger')

DEBIT_ATTEMPTS = 3
ADJUST_POOLS = ('PLAN', 'PURCHASED')
ADJUST_OPERATIONS = ('ADD', 'REMOVE')
MIN_ADJUST_REASON = 10


@dataclass
class Balances:
    plan_available: int
    package_available: int
    credits_used: int
    credits_limit: int
    credits_balance: int
    credits_expires_at: Optional[datetime]
    plan_expired: bool

    @property
    def total(self) -> int:
        return self.plan_available + self.package_available

    def as_dict(self) -> Dict[str, Any]:
        return {
            'plan_available': self.plan_available,
            'package_available': self.package_available,
            'total': self.total,
            'credits_used': self.credits_used,
            'credits_limit': self.credits_limit,
            'credits_balance': self.credits_balance,
            'credits_expires_at': self.credits_expires_at.isoformat() if self.credits_expires_at else None,
            'plan_expired': self.plan_expired,
        }


@dataclass
class DebitResult:
    success: bool
    balances: Balances
    plan_debited: int = 0
    package_debited: int = 0
    package_draws: List[tuple[int, int]] = field(default_factory=list)
    transaction_id: Optional[int] = None


@dataclass
class AdjustResult:
    pool: str
    operation: str
    amount: int
    before: Balances
    after: Balances


def plan_credits_available(account: Account, now: datetime) -> int:
    expires_at = as_utc(account.credits_expires_at)
    if expires_at is not None and expires_at <= now:
        return 0
    return max(0, int(account.credits_limit or 0) - int(account.credits_used or 0))


def compute_balances(account: Account, package_available: int, now: datetime | None = None) -> Balances:
    now = now or utcnow()
    expires_at = as_utc(account.credits_expires_at)
    return Balances(
        plan_available=plan_credits_available(account, now),
        package_available=max(0, package_available),
        credits_used=int(account.credits_used or 0),
        credits_limit=int(account.credits_limit or 0),
        credits_balance=int(account.credits_balance or 0),
        credits_expires_at=expires_at,
        plan_expired=expires_at is not None and expires_at <= now,
    )


def _eligible(account_id: int, now: datetime) -> tuple:
    return (
        CreditPurchase.account_id == account_id,
        CreditPurchase.status == PurchaseStatus.CONFIRMED.value,
        CreditPurchase.is_expired.is_(False),
        CreditPurchase.valid_until > now,
        CreditPurchase.used_credits < CreditPurchase.credit_amount,
    )


def _floor_at_zero(column, amount: int):
    return case((column > amount, column - amount), else_=0)


class CreditLedger:
    """Plan allowance and purchased packages for one account.

    Methods mutate rows inside the caller's session and never commit: the caller
    owns the unit of work, so a debit and the job row it pays for land together.
    Counters only move through relative UPDATEs guarded in their WHERE clause, so
    two sessions that read the same balance cannot both spend it, even on
    backends that ignore ``FOR UPDATE``.
    Call :meth:`announce` after the commit to push the new balances to clients.
    """

    def __init__(self, session: AsyncSession, broadcaster: Broadcaster | None = None) -> None:
        self.session = session
        self.broadcaster = broadcaster
        self.recorder = TransactionRecorder(session)
        self.settings = get_settings()

    async def get_account(self, account_id: int) -> Account:
        account = await self.session.get(Account, account_id)
        if not account:
            raise NotFound(f'account {account_id} not found')
        return account

    async def _lock_account(self, account_id: int) -> Account:
        result = await self.session.execute(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if not account:
            raise NotFound(f'account {account_id} not found')
        return account

    async def _eligible_packages(self, account_id: int, now: datetime) -> List[CreditPurchase]:
        result = await self.session.execute(
            select(CreditPurchase)
            .where(*_eligible(account_id, now))
            .order_by(CreditPurchase.valid_until.asc(), CreditPurchase.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _package_available(self, account_id: int, now: datetime) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditPurchase.credit_amount - CreditPurchase.used_credits), 0)).where(
                *_eligible(account_id, now)
            )
        )
        return int(result.scalar_one() or 0)

    async def _balances(self, account_id: int, now: datetime) -> Balances:
        account = await self._lock_account(account_id)
        return compute_balances(account, await self._package_available(account_id, now), now)

    async def _bump_account(self, account_id: int, now: datetime, **values: Any) -> None:
        await self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )

    async def _take_plan(self, account_id: int, amount: int, now: datetime) -> bool:
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.credits_used + amount <= Account.credits_limit)
            .values(credits_used=Account.credits_used + amount, updated_at=now)
            .returning(Account.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def _take_package(self, package_id: int, amount: int, now: datetime) -> bool:
        result = await self.session.execute(
            update(CreditPurchase)
            .where(
                CreditPurchase.id == package_id,
                CreditPurchase.status == PurchaseStatus.CONFIRMED.value,
                CreditPurchase.is_expired.is_(False),
                CreditPurchase.valid_until > now,
                CreditPurchase.used_credits + amount <= CreditPurchase.credit_amount,
            )
            .values(used_credits=CreditPurchase.used_credits + amount)
            .returning(CreditPurchase.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def _release(self, account_id: int, plan_amount: int, draws: List[tuple[int, int]], now: datetime) -> None:
        if plan_amount:
            await self._bump_account(account_id, now, credits_used=_floor_at_zero(Account.credits_used, plan_amount))
        for package_id, amount in draws:
            await self.session.execute(
                update(CreditPurchase)
                .where(CreditPurchase.id == package_id)
                .values(used_credits=_floor_at_zero(CreditPurchase.used_credits, amount))
                .execution_options(synchronize_session=False)
            )

    async def _draw_packages(
        self, account_id: int, packages: List[CreditPurchase], amount: int, now: datetime
    ) -> Optional[List[tuple[int, int]]]:
        """Consume ``amount`` from ``packages`` in order; None when a package moved under us."""
        draws: List[tuple[int, int]] = []
        remaining = amount
        for pkg in packages:
            if remaining <= 0:
                break
            take = min(pkg.remaining, remaining)
            if not await self._take_package(pkg.id, take, now):
                await self._release(account_id, 0, draws, now)
                return None
            draws.append((pkg.id, take))
            remaining -= take
        if amount:
            await self._bump_account(account_id, now, credits_balance=_floor_at_zero(Account.credits_balance, amount))
        return draws

    async def get_balance(self, account_id: int, now: datetime | None = None) -> Balances:
        now = now or utcnow()
        account = await self.get_account(account_id)
        return compute_balances(account, await self._package_available(account_id, now), now)

    async def can_afford(self, account_id: int, amount: int, now: datetime | None = None) -> bool:
        balances = await self.get_balance(account_id, now)
        return balances.total >= amount

    async def deduct(
        self,
        account_id: int,
        amount: int,
        *,
        source: TransactionSource,
        reference_id: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> DebitResult:
        if amount <= 0:
            raise ValidationError(f'debit amount must be positive, got {amount}')
        now = now or utcnow()

        for attempt in range(1, DEBIT_ATTEMPTS + 1):
            account = await self._lock_account(account_id)
            plan_available = plan_credits_available(account, now)
            plan_take = min(plan_available, amount)
            shortfall = amount - plan_take

            packages = await self._eligible_packages(account_id, now) if shortfall > 0 else []
            package_total = sum(pkg.remaining for pkg in packages)
            if package_total < shortfall:
                logger.info(
                    'debit_rejected',
                    account_id=account_id,
                    amount=amount,
                    plan_available=plan_available,
                    package_available=package_total,
                )
                raise InsufficientCredits(amount, plan_available + package_total)

            if plan_take and not await self._take_plan(account_id, plan_take, now):
                logger.info('debit_contended', account_id=account_id, amount=amount, attempt=attempt)
                continue
            draws = await self._draw_packages(account_id, packages, shortfall, now)
            if draws is None:
                await self._release(account_id, plan_take, [], now)
                logger.info('debit_contended', account_id=account_id, amount=amount, attempt=attempt)
                continue
            break
        else:
            raise ReconciliationConflict('account', account_id, 'contended')

        balances = await self._balances(account_id, now)
        entry = await self.recorder.record(
            account_id,
            TransactionType.SPENT,
            source,
            -amount,
            balance_after=balances.total,
            reference_id=reference_id,
            description=description,
            metadata={
                **(metadata or {}),
                'plan_debited': plan_take,
                'package_debited': shortfall,
                'packages': [{'id': package_id, 'credits': take} for package_id, take in draws],
            },
        )
        logger.info(
            'credits_debited',
            account_id=account_id,
            amount=amount,
            plan_debited=plan_take,
            package_debited=shortfall,
            reference_id=reference_id,
        )
        return DebitResult(
            success=True,
            balances=balances,
            plan_debited=plan_take,
            package_debited=shortfall,
            package_draws=draws,
            transaction_id=entry.id,
        )

    async def refund(
        self,
        account_id: int,
        amount: int,
        *,
        reference_id: str | None = None,
        reason: str = '',
        idempotency_key: str | None = None,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> Optional[Balances]:
        """Give credits back to the plan allowance.

        Package capacity consumed by the original debit is not restored; the
        amount always returns through ``credits_used``. Returns None when
        ``idempotency_key`` was already used.
        """
        if amount <= 0:
            return None
        if idempotency_key and await self.recorder.find_by_key(idempotency_key):
            logger.info('refund_duplicate_ignored', account_id=account_id, idempotency_key=idempotency_key)
            return None
        now = now or utcnow()
        account = await self._lock_account(account_id)
        used = int(account.credits_used or 0)
        if used < amount:
            logger.warning('refund_exceeds_plan_usage', account_id=account_id, amount=amount, credits_used=used)
        await self._bump_account(account_id, now, credits_used=_floor_at_zero(Account.credits_used, amount))

        balances = await self._balances(account_id, now)
        await self.recorder.record(
            account_id,
            TransactionType.REFUNDED,
            TransactionSource.REFUND,
            amount,
            balance_after=balances.total,
            reference_id=reference_id,
            description=tf(self.settings.default_lang, 'tx_refund', reason=reason or '-')[:255],
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info('credits_refunded', account_id=account_id, amount=amount, reference_id=reference_id)
        return balances

    async def grant_package(
        self,
        account_id: int,
        *,
        credit_amount: int,
        package_name: str,
        package_id: str | None = None,
        validity_months: int = 12,
        payment_id: str | None = None,
        source: TransactionSource = TransactionSource.PURCHASE,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> tuple[CreditPurchase, bool]:
        """Confirm a package and add it to the account's spendable pool.

        A PENDING purchase with the same ``payment_id`` is confirmed in place and
        its own ``credit_amount`` is what gets credited.
        """
        if credit_amount <= 0:
            raise ValidationError('credit_amount must be positive')
        now = now or utcnow()
        purchase: Optional[CreditPurchase] = None
        if payment_id:
            existing = await self.session.execute(
                select(CreditPurchase).where(CreditPurchase.payment_id == payment_id)
            )
            purchase = existing.scalar_one_or_none()
            if purchase and purchase.status == PurchaseStatus.CONFIRMED.value:
                return purchase, False
            if purchase and purchase.account_id != account_id:
                raise ValidationError(f'payment {payment_id} belongs to another account')
            if purchase and purchase.credit_amount != credit_amount:
                raise ValidationError(
                    f'payment {payment_id} is for {purchase.credit_amount} credits, not {credit_amount}'
                )

        await self._lock_account(account_id)
        valid_until = add_months(now, validity_months)
        if purchase is None:
            purchase = CreditPurchase(
                account_id=account_id,
                package_id=package_id,
                package_name=package_name,
                credit_amount=credit_amount,
                used_credits=0,
                is_expired=False,
                status=PurchaseStatus.CONFIRMED.value,
                payment_id=payment_id,
                valid_until=valid_until,
                created_at=now,
                confirmed_at=now,
            )
            self.session.add(purchase)
            await self.session.flush()
        else:
            confirmed = await self.session.execute(
                update(CreditPurchase)
                .where(CreditPurchase.id == purchase.id, CreditPurchase.status != PurchaseStatus.CONFIRMED.value)
                .values(status=PurchaseStatus.CONFIRMED.value, confirmed_at=now, valid_until=valid_until)
                .returning(CreditPurchase.id)
                .execution_options(synchronize_session=False)
            )
            was_pending = confirmed.scalar_one_or_none() is not None
            await self.session.refresh(purchase)
            if not was_pending:
                return purchase, False

        amount = int(purchase.credit_amount)
        await self._bump_account(account_id, now, credits_balance=Account.credits_balance + amount)
        balances = await self._balances(account_id, now)
        await self.recorder.record(
            account_id,
            TransactionType.EARNED,
            source,
            amount,
            balance_after=balances.total,
            description=tf(self.settings.default_lang, 'tx_purchase', name=purchase.package_name)[:255],
            credit_purchase_id=purchase.id,
            metadata={**(metadata or {}), 'package_id': purchase.package_id, 'payment_id': payment_id},
        )
        logger.info('package_granted', account_id=account_id, purchase_id=purchase.id, credits=amount)
        return purchase, True

    async def renew_plan(
        self,
        account_id: int,
        *,
        plan: str | None = None,
        billing_cycle: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> Optional[Balances]:
        if idempotency_key and await self.recorder.find_by_key(idempotency_key):
            return None
        now = now or utcnow()
        account = await self._lock_account(account_id)
        plan = plan or account.plan
        billing_cycle = billing_cycle or account.billing_cycle
        allowance = plan_allowance(plan, billing_cycle)
        months = 12 if billing_cycle == BillingCycle.YEARLY.value else 1

        # A renewal starts a new period, so usage is reset rather than adjusted.
        await self._bump_account(
            account_id,
            now,
            plan=plan,
            billing_cycle=billing_cycle,
            credits_limit=allowance,
            credits_used=0,
            credits_expires_at=add_months(now, months),
        )
        balances = await self._balances(account_id, now)
        await self.recorder.record(
            account_id,
            TransactionType.EARNED,
            TransactionSource.SUBSCRIPTION,
            allowance,
            balance_after=balances.total,
            description=tf(self.settings.default_lang, 'tx_subscription', plan=plan),
            metadata={'plan': plan, 'billing_cycle': billing_cycle},
            idempotency_key=idempotency_key,
        )
        logger.info('plan_renewed', account_id=account_id, plan=plan, allowance=allowance)
        return balances

    async def expire_packages(self, now: datetime | None = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        result = await self.session.execute(
            select(CreditPurchase.id, CreditPurchase.account_id, CreditPurchase.package_name)
            .where(
                CreditPurchase.status == PurchaseStatus.CONFIRMED.value,
                CreditPurchase.is_expired.is_(False),
                CreditPurchase.valid_until <= now,
            )
            .order_by(CreditPurchase.account_id.asc(), CreditPurchase.id.asc())
        )
        expired: List[Dict[str, Any]] = []
        for package_id, account_id, package_name in result.all():
            claimed = await self.session.execute(
                update(CreditPurchase)
                .where(CreditPurchase.id == package_id, CreditPurchase.is_expired.is_(False))
                .values(is_expired=True)
                .returning(CreditPurchase.credit_amount, CreditPurchase.used_credits, CreditPurchase.valid_until)
                .execution_options(synchronize_session=False)
            )
            row = claimed.first()
            if row is None:
                continue
            credit_amount, used_credits, valid_until = row
            remaining = max(0, int(credit_amount) - int(used_credits or 0))
            if remaining > 0:
                await self._bump_account(
                    account_id, now, credits_balance=_floor_at_zero(Account.credits_balance, remaining)
                )
                balances = await self._balances(account_id, now)
                await self.recorder.record(
                    account_id,
                    TransactionType.EXPIRED,
                    TransactionSource.EXPIRATION,
                    -remaining,
                    balance_after=balances.total,
                    description=tf(self.settings.default_lang, 'tx_expiration', name=package_name)[:255],
                    credit_purchase_id=package_id,
                    metadata={'valid_until': as_utc(valid_until).isoformat()},
                )
            expired.append(
                {
                    'package_id': package_id,
                    'account_id': account_id,
                    'package_name': package_name,
                    'credits_expired': remaining,
                }
            )
        if expired:
            logger.info('packages_expired', count=len(expired))
        return expired

    async def adjust(
        self,
        account_id: int,
        *,
        pool: str,
        operation: str,
        amount: int,
        reason: str,
        actor: str = 'admin',
        now: datetime | None = None,
    ) -> AdjustResult:
        """Manual correction by support staff.

        PLAN moves ``credits_used``. PURCHASED adds a dedicated package or
        consumes remaining package credits, soonest-expiring first. Removals
        never take more than is there.
        """
        pool = (pool or '').upper()
        operation = (operation or '').upper()
        reason = (reason or '').strip()
        if pool not in ADJUST_POOLS:
            raise ValidationError('type must be PLAN or PURCHASED')
        if operation not in ADJUST_OPERATIONS:
            raise ValidationError('operation must be ADD or REMOVE')
        if amount <= 0:
            raise ValidationError('amount must be greater than 0')
        if len(reason) < MIN_ADJUST_REASON:
            raise ValidationError(f'reason is required (minimum {MIN_ADJUST_REASON} characters)')
        now = now or utcnow()
        before = await self._balances(account_id, now)
        lang = self.settings.default_lang
        details = {'pool': pool, 'operation': operation, 'reason': reason, 'actor': actor}

        if pool == 'PURCHASED' and operation == 'ADD':
            await self.grant_package(
                account_id,
                credit_amount=amount,
                package_name=t(lang, 'admin_package'),
                package_id='admin-adjustment',
                source=TransactionSource.BONUS,
                metadata=details,
                now=now,
            )
            after = await self._balances(account_id, now)
            logger.info('credits_adjusted', account_id=account_id, amount=amount, **details)
            return AdjustResult(pool, operation, amount, before, after)

        applied = amount
        if pool == 'PLAN' and operation == 'ADD':
            applied = min(amount, before.credits_used)
            await self._bump_account(account_id, now, credits_used=_floor_at_zero(Account.credits_used, amount))
        elif pool == 'PLAN':
            await self._bump_account(account_id, now, credits_used=Account.credits_used + amount)
        else:
            for attempt in range(1, DEBIT_ATTEMPTS + 1):
                packages = await self._eligible_packages(account_id, now)
                applied = min(amount, sum(pkg.remaining for pkg in packages))
                if await self._draw_packages(account_id, packages, applied, now) is not None:
                    break
                logger.info('adjust_contended', account_id=account_id, attempt=attempt)
            else:
                raise ReconciliationConflict('account', account_id, 'contended')

        after = await self._balances(account_id, now)
        adding = operation == 'ADD'
        await self.recorder.record(
            account_id,
            TransactionType.EARNED if adding else TransactionType.SPENT,
            TransactionSource.BONUS if adding else TransactionSource.ADJUSTMENT,
            applied if adding else -applied,
            balance_after=after.total,
            description=tf(lang, 'tx_adjustment', operation=operation, reason=reason)[:255],
            metadata={**details, 'requested': amount, 'before': before.as_dict(), 'after': after.as_dict()},
        )
        logger.info('credits_adjusted', account_id=account_id, amount=applied, **details)
        return AdjustResult(pool, operation, applied, before, after)

    async def announce(self, account_id: int, balances: Balances | None = None, action: str = '') -> None:
        if not self.broadcaster:
            return
        if balances is None:
            balances = await self.get_balance(account_id)
        await self.broadcaster.credits_updated(account_id, balances.as_dict(), action)
