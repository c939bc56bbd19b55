from __future__ import annotations

import asyncio
from datetime import timedelta

from sqlalchemy import select

from vibephoto.db.models import AIModel, Account, CreditTransaction, Generation, TransactionType, Upscale
from vibephoto.services.poller import PollManager
from vibephoto.services.retry import RetryPolicy, poll_policy
from vibephoto.utils.time import utcnow


async def _add_job(sessionmaker, model, account_id, **values):
    now = utcnow()
    defaults = {
        'account_id': account_id,
        'provider': 'replicate',
        'status': 'PROCESSING',
        'cost_credits': 10,
        'provider_meta': {},
        'result_urls': [],
        'created_at': now,
        'updated_at': now,
    }
    if model is Generation:
        defaults['prompt'] = 'portrait'
    if model is Upscale:
        defaults['source_url'] = 'https://img.test/a.png'
    defaults.update(values)
    async with sessionmaker() as session:
        row = model(**defaults)
        session.add(row)
        await session.commit()
        return row.id


async def _get(sessionmaker, model, record_id):
    async with sessionmaker() as session:
        return await session.get(model, record_id)


def test_policy_budgets():
    assert poll_policy('astria', 'training', 5).max_attempts == 1080
    assert poll_policy('astria', 'generation', 5).max_attempts == 60
    assert poll_policy('replicate', 'training', 3).max_attempts == 1200
    assert poll_policy('replicate', 'upscale', 3).budget_seconds == 300

    policy = RetryPolicy(interval=3, max_attempts=10, max_backoff=20)
    assert policy.delay(0) == 3
    assert policy.delay(1) == 6
    assert policy.delay(3) == 20


async def test_poll_completes_job(services, make_account):
    account = await make_account()
    record_id = await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_1')
    services.upstream.add('GET', '/v1/predictions/pred_1', 200, {'id': 'pred_1', 'status': 'processing'})
    services.upstream.add('GET', '/v1/predictions/pred_1', 200, {'id': 'pred_1', 'status': 'succeeded', 'output': ['https://replicate.delivery/out/0.webp']})
    services.upstream.add('GET', '/out/0.webp', 200, content=b'webp', headers={'content-type': 'image/webp'})

    assert services.poller.schedule('generation', record_id)
    assert not services.poller.schedule('generation', record_id)
    await services.poller.wait('generation', record_id)

    row = await _get(services.sessionmaker, Generation, record_id)
    assert row.status == 'COMPLETED'
    assert row.reconciled_via == 'poll'
    assert row.result_urls == [f'https://cdn.test/media/generation/{account.id}/{record_id}/0.webp']
    assert not services.poller.is_scheduled('generation', record_id)


async def test_poll_stops_when_webhook_won(services, make_account):
    account = await make_account()
    record_id = await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_1', status='COMPLETED')

    services.poller.schedule('generation', record_id)
    await services.poller.wait('generation', record_id)

    assert services.upstream.calls('GET', '/v1/predictions/pred_1') == []


async def test_poll_budget_exhaustion_fails_and_refunds(services, make_account):
    account = await make_account(credits_used=10)
    record_id = await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_1')
    services.upstream.add('GET', '/v1/predictions/pred_1', 200, {'id': 'pred_1', 'status': 'processing'})

    services.poller.schedule('generation', record_id)
    await services.poller.wait('generation', record_id)

    row = await _get(services.sessionmaker, Generation, record_id)
    assert row.status == 'FAILED'
    assert row.error_message == 'Generation took longer than expected (1 min). Try again.'
    assert len(services.upstream.calls('GET', '/v1/predictions/pred_1')) == 100
    async with services.sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_used == 0
        refunds = await session.execute(
            select(CreditTransaction).where(CreditTransaction.type == TransactionType.REFUNDED.value)
        )
        assert len(refunds.scalars().all()) == 1


async def test_poll_transient_errors_keep_polling(services, make_account):
    account = await make_account()
    record_id = await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_1')
    # The first poll attempt exhausts the client's own retries before the poller sees the error.
    for _ in range(3):
        services.upstream.add('GET', '/v1/predictions/pred_1', 503, {'detail': 'down'})
    services.upstream.add('GET', '/v1/predictions/pred_1', 200, {'id': 'pred_1', 'status': 'failed', 'error': 'bad seed'})

    services.poller.schedule('generation', record_id)
    await services.poller.wait('generation', record_id)

    row = await _get(services.sessionmaker, Generation, record_id)
    assert (row.status, row.error_message) == ('FAILED', 'bad seed')


async def test_poll_permanent_error_fails_job(services, make_account):
    account = await make_account()
    record_id = await _add_job(services.sessionmaker, Upscale, account.id, job_id='pred_gone')
    services.upstream.add('GET', '/v1/predictions/pred_gone', 404, {'detail': 'not found'})

    services.poller.schedule('upscale', record_id)
    await services.poller.wait('upscale', record_id)

    row = await _get(services.sessionmaker, Upscale, record_id)
    assert row.status == 'FAILED'
    assert 'replicate error 404' in row.error_message


async def test_restore_pending_picks_up_unreliable_and_stale_jobs(services, make_account):
    account = await make_account()
    stale = utcnow() - timedelta(hours=1)
    astria_job = await _add_job(services.sessionmaker, Generation, account.id, provider='astria', job_id='77',
                                provider_meta={'tune_id': '1'})
    stale_job = await _add_job(services.sessionmaker, Upscale, account.id, job_id='pred_old', updated_at=stale)
    await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_fresh')
    await _add_job(services.sessionmaker, Generation, account.id, job_id=None, status='PENDING')
    await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_done', status='COMPLETED', updated_at=stale)
    services.poller.schedule = _recording_schedule(services.poller)

    count = await services.poller.restore_pending()

    assert count == 2
    assert sorted(services.poller.recorded) == sorted([('generation', astria_job), ('upscale', stale_job)])


def _recording_schedule(poller):
    poller.recorded = []

    def schedule(kind, record_id, delay=None):
        poller.recorded.append((kind, record_id))
        return True

    return schedule


async def test_stuck_pending_jobs_are_failed(services, make_account):
    account = await make_account(credits_used=10)
    old = utcnow() - timedelta(hours=2)
    stuck = await _add_job(services.sessionmaker, Generation, account.id, job_id=None, status='PENDING', created_at=old)
    fresh = await _add_job(services.sessionmaker, Generation, account.id, job_id=None, status='PENDING')

    assert await services.poller.fail_stuck_pending() == 1

    stuck_row = await _get(services.sessionmaker, Generation, stuck)
    assert stuck_row.status == 'FAILED'
    assert stuck_row.reconciled_via == 'sweep'
    assert stuck_row.error_message == 'Processing did not start in time.'
    assert (await _get(services.sessionmaker, Generation, fresh)).status == 'PENDING'
    async with services.sessionmaker() as session:
        assert (await session.get(Account, account.id)).credits_used == 0


async def test_status_lists_inflight_polls(services, make_account):
    account = await make_account()
    record_id = await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_1')
    services.upstream.add('GET', '/v1/predictions/pred_1', 200, {'id': 'pred_1', 'status': 'processing'})

    services.poller.schedule('generation', record_id, delay=60)

    [state] = services.poller.status()
    assert (state['kind'], state['record_id']) == ('generation', record_id)
    await services.poller.stop_all()
    assert services.poller.status() == []


async def test_long_poll_does_not_block_other_jobs(services, make_account):
    account = await make_account()
    settings = services.settings.model_copy(
        update={'global_max_poll_concurrency': 1, 'replicate_poll_interval_seconds': 0.05}
    )
    poller = PollManager(services.sessionmaker, services.providers, services.reconciler, settings)
    now = utcnow()
    async with services.sessionmaker() as session:
        training = AIModel(
            account_id=account.id, provider='replicate', job_id='trn_1', status='PROCESSING', name='me',
            class_word='person', photo_urls=[], provider_meta={}, result_urls=[], created_at=now, updated_at=now,
        )
        session.add(training)
        await session.commit()
        training_id = training.id
    generation_id = await _add_job(services.sessionmaker, Generation, account.id, job_id='pred_2')
    services.upstream.add('GET', '/v1/trainings/trn_1', 200, {'id': 'trn_1', 'status': 'processing'})
    services.upstream.add('GET', '/v1/predictions/pred_2', 200, {'id': 'pred_2', 'status': 'failed', 'error': 'bad seed'})

    poller.schedule('training', training_id, delay=0)
    poller.schedule('generation', generation_id, delay=0)
    await asyncio.wait_for(poller.wait('generation', generation_id), timeout=5)

    assert (await _get(services.sessionmaker, Generation, generation_id)).status == 'FAILED'
    assert poller.is_scheduled('training', training_id)
    await poller.stop_all()


async def test_processing_polls_report_training_progress(services, make_account):
    account = await make_account()
    now = utcnow()
    async with services.sessionmaker() as session:
        training = AIModel(
            account_id=account.id, provider='replicate', job_id='trn_2', status='PENDING', name='me',
            class_word='person', photo_urls=[], provider_meta={}, result_urls=[], created_at=now, updated_at=now,
        )
        session.add(training)
        await session.commit()
        training_id = training.id
    services.upstream.add('GET', '/v1/trainings/trn_2', 200, {'id': 'trn_2', 'status': 'starting'})
    services.upstream.add(
        'GET', '/v1/trainings/trn_2', 200, {'id': 'trn_2', 'status': 'succeeded', 'output': {'version': 'me/lora:abc'}}
    )
    sub = services.broadcaster.subscribe(account.id)

    services.poller.schedule('training', training_id)
    await services.poller.wait('training', training_id)

    events = []
    event = await sub.get(timeout=0.1)
    while event is not None:
        events.append(event)
        event = await sub.get(timeout=0.1)
    assert [e.type for e in events] == ['model_status_changed', 'training_progress', 'model_status_changed']
    assert events[1].data['progress'] == 5
    assert events[2].data['status'] == 'COMPLETED'
