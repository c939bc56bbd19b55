from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Set

from vibephoto.utils.logging import get_logger
from vibephoto.utils.time import utcnow


logger = get_logger('realtime')


class EventType:
    MODEL_STATUS_CHANGED = 'model_status_changed'
    GENERATION_STATUS_CHANGED = 'generation_status_changed'
    TRAINING_PROGRESS = 'training_progress'
    GENERATION_PROGRESS = 'generation_progress'
    CREDITS_UPDATED = 'credits_updated'
    USER_UPDATED = 'user_updated'
    NOTIFICATION = 'notification'


@dataclass
class RealtimeEvent:
    type: str
    account_id: Optional[int]
    data: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'account_id': self.account_id, 'data': self.data}


class Subscription:
    def __init__(self, broadcaster: 'Broadcaster', account_id: Optional[int], is_admin: bool, maxsize: int) -> None:
        self.broadcaster = broadcaster
        self.account_id = account_id
        self.is_admin = is_admin
        self.queue: asyncio.Queue[RealtimeEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: RealtimeEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def get(self, timeout: float | None = None) -> Optional[RealtimeEvent]:
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self.broadcaster.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[RealtimeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RealtimeEvent]:
        while True:
            yield await self.queue.get()


class Broadcaster:
    """Fan-out of state changes to open client connections.

    Delivery is best effort: a subscriber whose queue is full simply misses the
    event and picks up the authoritative state on its next fetch.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._by_account: Dict[int, Set[Subscription]] = {}
        self._admins: Set[Subscription] = set()
        self._anonymous: Set[Subscription] = set()

    def subscribe(self, account_id: Optional[int], is_admin: bool = False) -> Subscription:
        sub = Subscription(self, account_id, is_admin, self.queue_size)
        if is_admin:
            self._admins.add(sub)
        elif account_id is None:
            self._anonymous.add(sub)
        else:
            self._by_account.setdefault(account_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._admins.discard(sub)
        self._anonymous.discard(sub)
        if sub.account_id is not None:
            subs = self._by_account.get(sub.account_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    self._by_account.pop(sub.account_id, None)

    def connection_count(self) -> int:
        return len(self._admins) + len(self._anonymous) + sum(len(s) for s in self._by_account.values())

    async def broadcast(self, event_type: str, account_id: Optional[int], payload: Dict[str, Any]) -> int:
        event = RealtimeEvent(
            type=event_type,
            account_id=account_id,
            data={**payload, 'timestamp': utcnow().isoformat()},
        )
        if account_id is None:
            targets = set(self._admins) | set(self._anonymous)
            for subs in self._by_account.values():
                targets |= subs
        else:
            targets = set(self._by_account.get(account_id, ())) | set(self._admins)

        delivered = 0
        for sub in targets:
            if sub.offer(event):
                delivered += 1
        if delivered < len(targets):
            logger.warning('realtime_events_dropped', type=event_type, account_id=account_id, dropped=len(targets) - delivered)
        return delivered

    async def credits_updated(self, account_id: int, balances: Dict[str, Any], action: str = '') -> int:
        return await self.broadcast(EventType.CREDITS_UPDATED, account_id, {**balances, 'action': action})

    async def job_status_changed(
        self,
        kind: str,
        record_id: int,
        account_id: int,
        status: str,
        extra: Dict[str, Any] | None = None,
    ) -> int:
        event_type = EventType.MODEL_STATUS_CHANGED if kind == 'training' else EventType.GENERATION_STATUS_CHANGED
        payload = {'kind': kind, 'record_id': record_id, 'status': status}
        if extra:
            payload.update(extra)
        return await self.broadcast(event_type, account_id, payload)

    async def job_progress(self, kind: str, record_id: int, account_id: int, progress: int, message: str = '') -> int:
        event_type = EventType.TRAINING_PROGRESS if kind == 'training' else EventType.GENERATION_PROGRESS
        return await self.broadcast(
            event_type,
            account_id,
            {'kind': kind, 'record_id': record_id, 'progress': progress, 'message': message},
        )

    async def user_updated(self, account_id: int, changes: Dict[str, Any]) -> int:
        return await self.broadcast(EventType.USER_UPDATED, account_id, changes)

    async def notification(self, account_id: Optional[int], title: str, message: str, level: str = 'info') -> int:
        return await self.broadcast(
            EventType.NOTIFICATION,
            account_id,
            {'title': title, 'message': message, 'level': level},
        )
