from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from vibephoto.db.models import Account, CreditPurchase, CreditTransaction, TransactionSource, TransactionType
from vibephoto.errors import InsufficientCredits, ValidationError
from vibephoto.services.ledger import CreditLedger
from vibephoto.utils.time import utcnow


async def _transactions(sessionmaker, account_id):
    async with sessionmaker() as session:
        result = await session.execute(
            select(CreditTransaction).where(CreditTransaction.account_id == account_id).order_by(CreditTransaction.id)
        )
        return list(result.scalars().all())


async def test_debit_spills_from_plan_into_package(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=500, credits_used=490)
    package = await make_package(account.id, credit_amount=100, used_credits=0)

    async with sessionmaker() as session:
        result = await CreditLedger(session).deduct(account.id, 15, source=TransactionSource.EDIT, reference_id='edit:1')
        await session.commit()

    assert result.success
    assert result.plan_debited == 10
    assert result.package_debited == 5
    async with sessionmaker() as session:
        refreshed = await session.get(Account, account.id)
        pkg = await session.get(CreditPurchase, package.id)
        assert refreshed.credits_used == 500
        assert refreshed.credits_balance == 95
        assert pkg.used_credits == 5

    entries = await _transactions(sessionmaker, account.id)
    assert len(entries) == 1
    assert entries[0].type == TransactionType.SPENT.value
    assert entries[0].amount == -15
    assert entries[0].reference_id == 'edit:1'
    assert entries[0].balance_after == 95


async def test_debit_within_plan_leaves_packages_alone(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=500, credits_used=100)
    package = await make_package(account.id, credit_amount=50)

    async with sessionmaker() as session:
        result = await CreditLedger(session).deduct(account.id, 40, source=TransactionSource.GENERATION)
        await session.commit()

    assert result.plan_debited == 40
    assert result.package_draws == []
    async with sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_used == 140
        assert (await session.get(CreditPurchase, package.id)).used_credits == 0


async def test_plan_expiring_exactly_now_is_unavailable(sessionmaker, make_account, make_package):
    now = utcnow()
    account = await make_account(credits_limit=500, credits_used=0, credits_expires_at=now)
    package = await make_package(account.id, credit_amount=100)

    async with sessionmaker() as session:
        result = await CreditLedger(session).deduct(account.id, 30, source=TransactionSource.GENERATION, now=now)
        await session.commit()

    assert result.plan_debited == 0
    assert result.package_debited == 30
    async with sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_used == 0
        assert (await session.get(CreditPurchase, package.id)).used_credits == 30


async def test_sooner_expiring_package_is_drawn_first(sessionmaker, make_account, make_package):
    now = utcnow()
    account = await make_account(credits_limit=0)
    later = await make_package(account.id, credit_amount=100, valid_until=now + timedelta(days=60))
    sooner = await make_package(account.id, credit_amount=20, valid_until=now + timedelta(days=5))

    async with sessionmaker() as session:
        result = await CreditLedger(session).deduct(account.id, 30, source=TransactionSource.UPSCALE)
        await session.commit()

    assert result.package_draws == [(sooner.id, 20), (later.id, 10)]
    async with sessionmaker() as session:
        assert (await session.get(CreditPurchase, sooner.id)).used_credits == 20
        assert (await session.get(CreditPurchase, later.id)).used_credits == 10


async def test_expired_and_unconfirmed_packages_are_not_eligible(sessionmaker, make_account, make_package):
    now = utcnow()
    account = await make_account(credits_limit=0)
    await make_package(account.id, credit_amount=100, valid_until=now - timedelta(seconds=1))
    await make_package(account.id, credit_amount=100, status='PENDING')

    async with sessionmaker() as session:
        ledger = CreditLedger(session)
        assert not await ledger.can_afford(account.id, 10)
        with pytest.raises(InsufficientCredits) as info:
            await ledger.deduct(account.id, 10, source=TransactionSource.GENERATION)
    assert info.value.required == 10
    assert info.value.available == 0


async def test_insufficient_debit_changes_nothing(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=500, credits_used=495)
    package = await make_package(account.id, credit_amount=10)

    async with sessionmaker() as session:
        with pytest.raises(InsufficientCredits):
            await CreditLedger(session).deduct(account.id, 20, source=TransactionSource.VIDEO)
        await session.rollback()

    async with sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_used == 495
        assert (await session.get(CreditPurchase, package.id)).used_credits == 0
    assert await _transactions(sessionmaker, account.id) == []


async def test_non_positive_debit_is_rejected(sessionmaker, make_account):
    account = await make_account()
    async with sessionmaker() as session:
        with pytest.raises(ValidationError):
            await CreditLedger(session).deduct(account.id, 0, source=TransactionSource.GENERATION)


async def test_repeated_debits_never_overdraw(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=100, credits_used=0)
    package = await make_package(account.id, credit_amount=45)

    spent = 0
    for _ in range(20):
        async with sessionmaker() as session:
            try:
                await CreditLedger(session).deduct(account.id, 15, source=TransactionSource.EDIT)
            except InsufficientCredits:
                break
            await session.commit()
            spent += 15

    assert spent == 135
    async with sessionmaker() as session:
        refreshed = await session.get(Account, account.id)
        pkg = await session.get(CreditPurchase, package.id)
        assert refreshed.credits_used <= refreshed.credits_limit
        assert pkg.used_credits <= pkg.credit_amount
    entries = await _transactions(sessionmaker, account.id)
    assert -sum(e.amount for e in entries) == spent


async def test_refund_is_idempotent_by_key(sessionmaker, make_account):
    account = await make_account(credits_limit=500, credits_used=100)

    for _ in range(2):
        async with sessionmaker() as session:
            await CreditLedger(session).refund(
                account.id, 30, reference_id='generation:7', reason='failed', idempotency_key='refund:generation:7'
            )
            await session.commit()

    async with sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_used == 70
    refunds = [e for e in await _transactions(sessionmaker, account.id) if e.type == TransactionType.REFUNDED.value]
    assert len(refunds) == 1
    assert refunds[0].amount == 30
    assert refunds[0].source == TransactionSource.REFUND.value


async def test_refund_goes_to_plan_usage_not_packages(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=500, credits_used=490)
    package = await make_package(account.id, credit_amount=100)

    async with sessionmaker() as session:
        ledger = CreditLedger(session)
        await ledger.deduct(account.id, 15, source=TransactionSource.EDIT)
        balances = await ledger.refund(account.id, 15, reason='failed')
        await session.commit()

    # The 5 credits drawn from the package come back as plan allowance.
    assert balances.credits_used == 485
    async with sessionmaker() as session:
        assert (await session.get(CreditPurchase, package.id)).used_credits == 5
        assert (await session.get(Account, account.id)).credits_balance == 95


async def test_refund_clamps_plan_usage_at_zero(sessionmaker, make_account):
    account = await make_account(credits_limit=500, credits_used=5)
    async with sessionmaker() as session:
        balances = await CreditLedger(session).refund(account.id, 20, reason='failed')
        await session.commit()
    assert balances.credits_used == 0


async def test_grant_package_is_idempotent_on_payment(sessionmaker, make_account):
    account = await make_account(credits_limit=0)

    async with sessionmaker() as session:
        ledger = CreditLedger(session)
        first, created = await ledger.grant_package(
            account.id, credit_amount=350, package_name='Essential', payment_id='pay_1'
        )
        await session.commit()
    assert created

    async with sessionmaker() as session:
        again, created_again = await CreditLedger(session).grant_package(
            account.id, credit_amount=350, package_name='Essential', payment_id='pay_1'
        )
        await session.commit()
    assert not created_again
    assert again.id == first.id

    async with sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_balance == 350
        balances = await CreditLedger(session).get_balance(account.id)
    assert balances.total == 350
    earned = [e for e in await _transactions(sessionmaker, account.id) if e.type == TransactionType.EARNED.value]
    assert len(earned) == 1
    assert earned[0].credit_purchase_id == first.id


async def test_renew_plan_resets_usage(sessionmaker, make_account):
    now = utcnow()
    account = await make_account(plan='PREMIUM', credits_limit=1200, credits_used=1100, credits_expires_at=now)

    async with sessionmaker() as session:
        balances = await CreditLedger(session).renew_plan(account.id, idempotency_key='renewal:1', now=now)
        await session.commit()
    async with sessionmaker() as session:
        duplicate = await CreditLedger(session).renew_plan(account.id, idempotency_key='renewal:1', now=now)

    assert duplicate is None
    assert balances.credits_limit == 1200
    assert balances.credits_used == 0
    assert balances.plan_available == 1200
    assert balances.credits_expires_at > now


async def test_yearly_plan_grants_twelve_months(sessionmaker, make_account):
    account = await make_account(plan='STARTER', billing_cycle='YEARLY')
    async with sessionmaker() as session:
        balances = await CreditLedger(session).renew_plan(account.id)
        await session.commit()
    assert balances.credits_limit == 6000


async def test_expiry_sweep_removes_remaining_credits(sessionmaker, make_account, make_package):
    now = utcnow()
    account = await make_account(credits_limit=0)
    stale = await make_package(account.id, credit_amount=100, used_credits=40, valid_until=now - timedelta(hours=1))
    fresh = await make_package(account.id, credit_amount=50, valid_until=now + timedelta(days=10))

    async with sessionmaker() as session:
        expired = await CreditLedger(session).expire_packages(now)
        await session.commit()

    assert expired == [
        {'package_id': stale.id, 'account_id': account.id, 'package_name': 'Pack', 'credits_expired': 60}
    ]
    async with sessionmaker() as session:
        assert (await session.get(CreditPurchase, stale.id)).is_expired
        assert not (await session.get(CreditPurchase, fresh.id)).is_expired
        assert (await session.get(Account, account.id)).credits_balance == 50
        again = await CreditLedger(session).expire_packages(now)
    assert again == []

    entries = await _transactions(sessionmaker, account.id)
    assert [(e.type, e.amount) for e in entries] == [(TransactionType.EXPIRED.value, -60)]


async def test_announce_pushes_balances(sessionmaker, make_account):
    from vibephoto.services.realtime import Broadcaster

    broadcaster = Broadcaster()
    account = await make_account(credits_limit=500, credits_used=100)
    sub = broadcaster.subscribe(account.id)

    async with sessionmaker() as session:
        ledger = CreditLedger(session, broadcaster)
        await ledger.announce(account.id, action='debit')

    event = await sub.get(timeout=1)
    assert event.type == 'credits_updated'
    assert event.data['total'] == 400
    assert event.data['action'] == 'debit'


async def test_concurrent_debits_never_overdraw(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=30, credits_used=0)
    package = await make_package(account.id, credit_amount=20)

    async def debit():
        async with sessionmaker() as session:
            try:
                await CreditLedger(session).deduct(account.id, 10, source=TransactionSource.GENERATION)
            except InsufficientCredits:
                return False
            await session.commit()
            return True

    results = await asyncio.gather(*(debit() for _ in range(8)))

    assert results.count(True) == 5
    async with sessionmaker() as session:
        refreshed = await session.get(Account, account.id)
        pkg = await session.get(CreditPurchase, package.id)
        assert refreshed.credits_used == refreshed.credits_limit == 30
        assert pkg.used_credits == pkg.credit_amount == 20
        assert refreshed.credits_balance == 0
    entries = await _transactions(sessionmaker, account.id)
    assert sum(e.amount for e in entries) == -50


async def test_confirming_pending_purchase_uses_its_own_amount(sessionmaker, make_account):
    account = await make_account(credits_limit=0)
    now = utcnow()
    async with sessionmaker() as session:
        pending = CreditPurchase(
            account_id=account.id, package_name='Starter Pack', credit_amount=100, used_credits=0,
            valid_until=now, is_expired=False, status='PENDING', payment_id='pay_9', created_at=now,
        )
        session.add(pending)
        await session.commit()

    async with sessionmaker() as session:
        with pytest.raises(ValidationError):
            await CreditLedger(session).grant_package(
                account.id, credit_amount=350, package_name='Starter Pack', payment_id='pay_9'
            )
        await session.rollback()

    async with sessionmaker() as session:
        purchase, created = await CreditLedger(session).grant_package(
            account.id, credit_amount=100, package_name='Starter Pack', payment_id='pay_9'
        )
        await session.commit()

    assert created
    assert purchase.id == pending.id
    async with sessionmaker() as session:
        assert (await session.get(CreditPurchase, pending.id)).status == 'CONFIRMED'
        assert (await session.get(Account, account.id)).credits_balance == 100
        balances = await CreditLedger(session).get_balance(account.id)
    assert balances.package_available == 100


async def test_balance_ignores_packages_past_validity(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=0)
    await make_package(account.id, credit_amount=100, valid_until=utcnow() - timedelta(minutes=5))

    async with sessionmaker() as session:
        balances = await CreditLedger(session).get_balance(account.id)

    # Not swept yet, so the pooled counter still holds the credits.
    assert balances.credits_balance == 100
    assert balances.package_available == 0
    assert balances.total == 0


async def test_package_usage_cannot_exceed_its_amount(sessionmaker, make_account):
    account = await make_account()
    now = utcnow()
    async with sessionmaker() as session:
        session.add(
            CreditPurchase(
                account_id=account.id, package_name='Broken', credit_amount=10, used_credits=11,
                valid_until=now + timedelta(days=1), is_expired=False, status='CONFIRMED', created_at=now,
            )
        )
        with pytest.raises(IntegrityError):
            await session.commit()


async def test_adjust_plan_credits(sessionmaker, make_account):
    account = await make_account(credits_limit=500, credits_used=200)

    async with sessionmaker() as session:
        ledger = CreditLedger(session)
        added = await ledger.adjust(account.id, pool='PLAN', operation='ADD', amount=50, reason='Compensation for outage')
        removed = await ledger.adjust(account.id, pool='plan', operation='remove', amount=30, reason='Duplicate compensation')
        await session.commit()

    assert (added.before.plan_available, added.after.plan_available) == (300, 350)
    assert removed.after.credits_used == 180
    entries = await _transactions(sessionmaker, account.id)
    assert [(e.type, e.source, e.amount) for e in entries] == [
        (TransactionType.EARNED.value, TransactionSource.BONUS.value, 50),
        (TransactionType.SPENT.value, TransactionSource.ADJUSTMENT.value, -30),
    ]
    assert entries[0].meta['reason'] == 'Compensation for outage'


async def test_adjust_purchased_credits(sessionmaker, make_account, make_package):
    account = await make_account(credits_limit=0)
    package = await make_package(account.id, credit_amount=40)

    async with sessionmaker() as session:
        added = await CreditLedger(session).adjust(
            account.id, pool='PURCHASED', operation='ADD', amount=100, reason='Goodwill credits for support ticket'
        )
        await session.commit()
    assert added.after.package_available == 140

    async with sessionmaker() as session:
        removed = await CreditLedger(session).adjust(
            account.id, pool='PURCHASED', operation='REMOVE', amount=500, reason='Chargeback on the original payment'
        )
        await session.commit()

    # Removal stops at what the packages still hold.
    assert removed.amount == 140
    assert removed.after.package_available == 0
    async with sessionmaker() as session:
        assert (await session.get(CreditPurchase, package.id)).used_credits == 40
        assert (await session.get(Account, account.id)).credits_balance == 0
    entries = await _transactions(sessionmaker, account.id)
    assert [(e.source, e.amount) for e in entries] == [
        (TransactionSource.BONUS.value, 100),
        (TransactionSource.ADJUSTMENT.value, -140),
    ]


@pytest.mark.parametrize(
    'values',
    [
        {'pool': 'GIFT', 'operation': 'ADD', 'amount': 10, 'reason': 'A long enough reason'},
        {'pool': 'PLAN', 'operation': 'SET', 'amount': 10, 'reason': 'A long enough reason'},
        {'pool': 'PLAN', 'operation': 'ADD', 'amount': 0, 'reason': 'A long enough reason'},
        {'pool': 'PLAN', 'operation': 'ADD', 'amount': 10, 'reason': 'too short'},
    ],
)
async def test_adjust_rejects_bad_requests(sessionmaker, make_account, values):
    account = await make_account()
    async with sessionmaker() as session:
        with pytest.raises(ValidationError):
            await CreditLedger(session).adjust(account.id, **values)
    assert await _transactions(sessionmaker, account.id) == []
