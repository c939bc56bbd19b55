from __future__ import annotations

from typing import Any, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from vibephoto.db.models import CreditTransaction, TransactionSource, TransactionType
from vibephoto.utils.time import as_utc, utcnow


class TransactionRecorder:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        account_id: int,
        type: TransactionType,
        source: TransactionSource,
        amount: int,
        *,
        balance_after: int,
        reference_id: str | None = None,
        description: str | None = None,
        credit_purchase_id: int | None = None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            account_id=account_id,
            type=type.value,
            source=source.value,
            amount=int(amount),
            description=description,
            reference_id=reference_id,
            credit_purchase_id=credit_purchase_id,
            meta=metadata or {},
            balance_after=int(balance_after),
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def find_by_key(self, idempotency_key: str) -> Optional[CreditTransaction]:
        result = await self.session.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def list_for_account(
        self,
        account_id: int,
        limit: int = 50,
        offset: int = 0,
        type: str | None = None,
    ) -> tuple[List[CreditTransaction], int]:
        stmt = select(CreditTransaction).where(CreditTransaction.account_id == account_id)
        count_stmt = select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == account_id)
        if type:
            stmt = stmt.where(CreditTransaction.type == type)
            count_stmt = count_stmt.where(CreditTransaction.type == type)
        result = await self.session.execute(
            stmt.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(limit).offset(offset)
        )
        total = await self.session.execute(count_stmt)
        return list(result.scalars().all()), int(total.scalar_one() or 0)


def serialize_transaction(entry: CreditTransaction) -> dict[str, Any]:
    return {
        'id': entry.id,
        'type': entry.type,
        'source': entry.source,
        'amount': entry.amount,
        'description': entry.description,
        'reference_id': entry.reference_id,
        'credit_purchase_id': entry.credit_purchase_id,
        'balance_after': entry.balance_after,
        'created_at': as_utc(entry.created_at).isoformat(),
    }
