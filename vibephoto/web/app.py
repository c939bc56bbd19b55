from __future__ import annotations

import asyncio
import hmac
import json
from typing import Any, Dict, List

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from vibephoto.config import Settings, get_settings
from vibephoto.db.session import create_sessionmaker
from vibephoto.errors import (
    InsufficientCredits,
    ProviderError,
    StorageError,
    Unauthorized,
    ValidationError,
    VibePhotoError,
)
from vibephoto.i18n import normalize_lang, plural, t, tf
from vibephoto.services.dispatcher import JobDispatcher
from vibephoto.services.ledger import CreditLedger
from vibephoto.services.poller import PollManager
from vibephoto.services.providers.registry import ProviderRegistry
from vibephoto.services.realtime import Broadcaster
from vibephoto.services.reconciler import Reconciler
from vibephoto.services.storage import MediaStorage
from vibephoto.services.transactions import TransactionRecorder, serialize_transaction
from vibephoto.utils.logging import get_logger
from vibephoto.utils.time import utcnow


logger = get_logger("web")


def _get_lang(request: Request) -> str:
    session_lang = request.session.get("lang") if "session" in request.scope else None
    if session_lang:
        return normalize_lang(session_lang)
    accept = request.headers.get("accept-language")
    if accept:
        return normalize_lang(accept.split(",", 1)[0])
    return normalize_lang(request.app.state.settings.default_lang)


def _error_message(exc: VibePhotoError, lang: str) -> str:
    if isinstance(exc, InsufficientCredits):
        return tf(
            lang,
            "insufficient_credits",
            required=exc.required,
            required_label=plural(lang, "credit", exc.required),
            available=exc.available,
        )
    if isinstance(exc, ValidationError):
        return tf(lang, "validation_error", detail=exc.message)
    if isinstance(exc, ProviderError):
        return t(lang, "provider_error")
    if isinstance(exc, StorageError):
        return t(lang, "storage_error")
    if exc.code in ("not_found", "unauthorized"):
        return t(lang, exc.code)
    return t(lang, "internal_error")


def current_account_id(request: Request) -> int:
    account_id = request.session.get("account_id")
    if not account_id:
        raise Unauthorized("not signed in")
    return int(account_id)


def require_cron(request: Request) -> None:
    tokens = request.app.state.settings.cron_tokens()
    header = request.headers.get("authorization") or ""
    received = header[len("Bearer "):].strip() if header.startswith("Bearer ") else ""
    if not tokens or not received or not any(hmac.compare_digest(received, token) for token in tokens):
        raise Unauthorized("invalid cron secret")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("invalid JSON body") from None
    if not isinstance(payload, dict):
        raise ValidationError("JSON body must be an object")
    return payload


def create_app(
    settings: Settings | None = None,
    *,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="VibePhoto Credits")
    app.add_middleware(SessionMiddleware, secret_key=settings.web_secret)
    app.mount("/media", StaticFiles(directory=settings.media_storage_path, check_dir=False), name="media")
    app.state.settings = settings
    app.state.sessionmaker = sessionmaker or create_sessionmaker()
    app.state.broadcaster = Broadcaster(settings.realtime_queue_size)
    app.state.providers = ProviderRegistry.from_settings(settings, transport=transport)
    app.state.storage = MediaStorage(settings, transport=transport)
    app.state.reconciler = Reconciler(
        app.state.sessionmaker,
        app.state.providers,
        app.state.storage,
        app.state.broadcaster,
    )
    app.state.poller = PollManager(app.state.sessionmaker, app.state.providers, app.state.reconciler, settings)
    app.state.dispatcher = JobDispatcher(
        app.state.sessionmaker,
        app.state.providers,
        app.state.reconciler,
        app.state.broadcaster,
        app.state.poller,
        settings,
    )
    app.state.poller_task = None

    @app.on_event("startup")
    async def startup() -> None:
        if settings.poll_enabled:
            await app.state.poller.restore_pending()
            app.state.poller_task = asyncio.create_task(app.state.poller.watch_pending())

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.poller_task
        if task:
            task.cancel()
        await app.state.poller.stop_all()
        await app.state.providers.close()
        await app.state.storage.close()

    @app.exception_handler(VibePhotoError)
    async def vibephoto_error(request: Request, exc: VibePhotoError):
        if exc.status_code >= 500:
            logger.warning("request_failed", path=request.url.path, error=exc.code, detail=exc.message)
        body: Dict[str, Any] = {"ok": False, "error": exc.code, "message": _error_message(exc, _get_lang(request))}
        if isinstance(exc, InsufficientCredits):
            body["required"] = exc.required
            body["available"] = exc.available
        return JSONResponse(body, status_code=exc.status_code)

    @app.get("/health")
    async def health():
        return {"ok": True, "time": utcnow().isoformat()}

    @app.get("/api/credits/balance")
    async def api_credits_balance(account_id: int = Depends(current_account_id)):
        async with app.state.sessionmaker() as session:
            balances = await CreditLedger(session).get_balance(account_id)
        return {"ok": True, **balances.as_dict()}

    @app.get("/api/account/credit-transactions")
    async def api_credit_transactions(
        limit: int = 50,
        offset: int = 0,
        type: str | None = None,
        account_id: int = Depends(current_account_id),
    ):
        limit = max(1, min(limit, 200))
        offset = max(0, offset)
        async with app.state.sessionmaker() as session:
            rows, total = await TransactionRecorder(session).list_for_account(
                account_id,
                limit=limit,
                offset=offset,
                type=type.upper() if type else None,
            )
        return {
            "ok": True,
            "transactions": [serialize_transaction(row) for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    @app.post("/api/jobs", status_code=201)
    async def api_create_job(request: Request, account_id: int = Depends(current_account_id)):
        payload = await _json_body(request)
        result = await app.state.dispatcher.dispatch(account_id, payload)
        return {"ok": True, **result.as_dict()}

    @app.get("/api/jobs/{kind}/{record_id}")
    async def api_job_status(kind: str, record_id: int, account_id: int = Depends(current_account_id)):
        job = await app.state.dispatcher.get_job(account_id, kind, record_id)
        return {"ok": True, **job}

    @app.post("/webhooks/{provider}")
    async def provider_webhook(provider: str, request: Request):
        providers: ProviderRegistry = app.state.providers
        if provider not in providers:
            return JSONResponse({"ok": False, "error": "unknown_provider"}, status_code=404)
        body = await request.body()
        if not providers.get(provider).verify_webhook(request.headers, body):
            logger.warning("webhook_signature_invalid", provider=provider)
            return JSONResponse({"ok": False, "error": "invalid_signature"}, status_code=401)
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)

        kind = request.query_params.get("type") or None
        raw_id = request.query_params.get("id")
        record_id = None
        if raw_id:
            try:
                record_id = int(raw_id)
            except ValueError:
                return JSONResponse({"ok": False, "error": "invalid_id"}, status_code=400)

        status = await app.state.reconciler.handle_webhook(provider, payload, kind, record_id)
        return {"ok": True, "status": status}

    @app.get("/api/events")
    async def api_events(request: Request, account_id: int = Depends(current_account_id)):
        broadcaster: Broadcaster = app.state.broadcaster
        subscription = broadcaster.subscribe(account_id)
        keepalive = settings.realtime_keepalive_seconds

        async def stream():
            try:
                yield "retry: 5000\n\n"
                while not await request.is_disconnected():
                    event = await subscription.get(timeout=keepalive)
                    if event is None:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: {event.type}\ndata: {json.dumps(event.as_dict())}\n\n"
            finally:
                subscription.close()

        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        return StreamingResponse(stream(), media_type="text/event-stream", headers=headers)

    @app.get("/api/cron/expire-credits", dependencies=[Depends(require_cron)])
    async def cron_expire_credits():
        async with app.state.sessionmaker() as session:
            ledger = CreditLedger(session, app.state.broadcaster)
            expired = await ledger.expire_packages()
            await session.commit()
            for account_id in sorted({item["account_id"] for item in expired}):
                await ledger.announce(account_id, action="expiration")
        logger.info("cron_expire_credits", expired=len(expired))
        return {"ok": True, "expired": expired, "count": len(expired)}

    @app.post("/api/cron/renew-credits", dependencies=[Depends(require_cron)])
    async def cron_renew_credits(request: Request):
        payload = await _json_body(request)
        account_ids: List[int] = [int(x) for x in payload.get("account_ids") or []]
        period = str(payload.get("period") or utcnow().strftime("%Y-%m"))
        renewed: List[int] = []
        for account_id in account_ids:
            async with app.state.sessionmaker() as session:
                ledger = CreditLedger(session, app.state.broadcaster)
                balances = await ledger.renew_plan(
                    account_id,
                    plan=payload.get("plan"),
                    billing_cycle=payload.get("billing_cycle"),
                    idempotency_key=f"renewal:{account_id}:{period}",
                )
                await session.commit()
            if balances is not None:
                renewed.append(account_id)
                await ledger.announce(account_id, balances, "renewal")
                if payload.get("plan") or payload.get("billing_cycle"):
                    await app.state.broadcaster.user_updated(
                        account_id,
                        {"plan": payload.get("plan"), "billing_cycle": payload.get("billing_cycle")},
                    )
        return {"ok": True, "renewed": renewed, "skipped": [x for x in account_ids if x not in renewed]}

    @app.post("/api/payments/credits/confirm", dependencies=[Depends(require_cron)])
    async def api_confirm_credit_purchase(request: Request):
        payload = await _json_body(request)
        try:
            account_id = int(payload["account_id"])
            credit_amount = int(payload["credit_amount"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("account_id and credit_amount are required") from None
        async with app.state.sessionmaker() as session:
            ledger = CreditLedger(session, app.state.broadcaster)
            purchase, created = await ledger.grant_package(
                account_id,
                credit_amount=credit_amount,
                package_name=str(payload.get("package_name") or "Credits"),
                package_id=payload.get("package_id"),
                validity_months=int(payload.get("validity_months") or 12),
                payment_id=payload.get("payment_id"),
            )
            await session.commit()
            if created:
                await ledger.announce(account_id, action="purchase")
        return {"ok": True, "purchase_id": purchase.id, "created": created}

    @app.post("/api/admin/credits/{account_id}/adjust", dependencies=[Depends(require_cron)])
    async def admin_adjust_credits(account_id: int, request: Request):
        payload = await _json_body(request)
        try:
            amount = int(payload.get("amount") or 0)
        except (TypeError, ValueError):
            raise ValidationError("amount must be a number") from None
        async with app.state.sessionmaker() as session:
            ledger = CreditLedger(session, app.state.broadcaster)
            result = await ledger.adjust(
                account_id,
                pool=str(payload.get("type") or ""),
                operation=str(payload.get("operation") or ""),
                amount=amount,
                reason=str(payload.get("reason") or ""),
                actor=str(payload.get("actor") or "admin"),
            )
            await session.commit()
            await ledger.announce(account_id, result.after, "admin_adjustment")
        logger.info("admin_credits_adjusted", account_id=account_id, type=result.pool, operation=result.operation, amount=result.amount)
        return {
            "ok": True,
            "type": result.pool,
            "operation": result.operation,
            "amount": result.amount,
            "before": result.before.as_dict(),
            "after": result.after.as_dict(),
        }

    @app.get("/api/admin/polling", dependencies=[Depends(require_cron)])
    async def admin_polling():
        return {
            "ok": True,
            "polls": app.state.poller.status(),
            "connections": app.state.broadcaster.connection_count(),
        }

    return app
