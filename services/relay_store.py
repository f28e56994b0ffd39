"""
Relay store and realtime channel backed by Redis.

The relay is the network-reachable staging area between a remote respondent
and a clinic's local database. Layout under the configured prefix:

    {prefix}:record:{record_id}     JSON RelayRecord
    {prefix}:pending:{owner_id}     sorted set of unconsumed record ids, scored by created_at
    {prefix}:channel:{owner_id}     pub/sub channel announcing inserted records
    {prefix}:session:{token}        JSON SessionSnapshot, expires after the session
    {prefix}:template:{template_id} JSON TemplateSnapshot (advisory copy)
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from core.exceptions import MalformedRecord, RelayUnreachable
from core.logging import get_logger
from models.survey import SessionStatus
from schemas.survey import (
    RelayRecord,
    SessionSnapshot,
    TemplateSnapshot,
    decode_session_snapshot,
    decode_template_snapshot,
)

logger = get_logger(__name__)

InsertHandler = Callable[[RelayRecord], Awaitable[None]]
LostHandler = Callable[[], Awaitable[None]]


class RelaySubscription:
    """Owned handle on one owner's push channel.

    A reader task polls the pub/sub connection and awaits `on_insert` for
    every record. `close()` never cancels a running callback; it waits for
    the reader to notice and exit.
    """

    def __init__(
        self,
        pubsub,
        channel: str,
        on_insert: InsertHandler,
        on_lost: Optional[LostHandler] = None,
        poll_seconds: float = 1.0,
    ):
        self._pubsub = pubsub
        self._channel = channel
        self._on_insert = on_insert
        self._on_lost = on_lost
        self._poll_seconds = poll_seconds
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._closed = False
        self.lost = False

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._closing

    async def start(self) -> None:
        try:
            await self._pubsub.subscribe(self._channel)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise RelayUnreachable(f"Could not subscribe to {self._channel}: {e}") from e
        self._task = asyncio.create_task(self._read_loop(), name=f"relay-subscription:{self._channel}")
        logger.info("Relay subscription opened", channel=self._channel)

    async def _read_loop(self) -> None:
        try:
            await self._read_messages()
        except Exception:
            # No reader means no pushes; treat it like a dropped connection
            logger.exception("Relay subscription reader crashed", channel=self._channel)
            self.lost = True

        if self.lost and self._on_lost is not None:
            await self._on_lost()

    async def _read_messages(self) -> None:
        while not self._closing:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._poll_seconds,
                )
            except RedisError as e:
                if self._closing:
                    break
                logger.error("Relay subscription lost", channel=self._channel, error=str(e))
                self.lost = True
                break

            if message is None or message.get("type") != "message":
                continue

            try:
                record = RelayRecord.decode(message["data"])
            except MalformedRecord as e:
                # The drain picks the stored copy up again; nothing to do with a broken push.
                logger.error("Dropping malformed push", channel=self._channel, error=str(e))
                continue

            try:
                await self._on_insert(record)
            except Exception:
                logger.exception("Push handler failed", channel=self._channel, record_id=record.id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing = True

        if self._task is not None and self._task is not asyncio.current_task():
            await self._task

        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning("Relay unsubscribe failed", channel=self._channel, error=str(e))
        logger.info("Relay subscription closed", channel=self._channel)


class RelayStore(Protocol):
    """What the sync coordinator and the public endpoints need from a relay."""

    async def list_unconsumed(self, owner_id: str) -> List[RelayRecord]: ...

    async def subscribe(
        self,
        owner_id: str,
        on_insert: InsertHandler,
        on_lost: Optional[LostHandler] = None,
    ) -> RelaySubscription: ...

    async def delete(self, record_id: str) -> None: ...

    async def insert(self, record: RelayRecord) -> None: ...


class RedisRelayStore:
    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "survey_relay",
        snapshot_grace_hours: int = 24,
        poll_seconds: float = 1.0,
    ):
        self.client = client
        self.prefix = prefix
        self.snapshot_grace = timedelta(hours=snapshot_grace_hours)
        self.poll_seconds = poll_seconds

    # ---- keys ----

    def record_key(self, record_id: str) -> str:
        return f"{self.prefix}:record:{record_id}"

    def pending_key(self, owner_id: str) -> str:
        return f"{self.prefix}:pending:{owner_id}"

    def channel_name(self, owner_id: str) -> str:
        return f"{self.prefix}:channel:{owner_id}"

    def session_key(self, token: str) -> str:
        return f"{self.prefix}:session:{token}"

    def template_key(self, template_id: str) -> str:
        return f"{self.prefix}:template:{template_id}"

    @asynccontextmanager
    async def _relay_call(self, operation: str):
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning("Relay store unreachable", operation=operation, error=str(e))
            raise RelayUnreachable(f"Relay store unreachable during {operation}: {e}") from e

    # ---- relay records ----

    async def insert(self, record: RelayRecord) -> None:
        payload = record.encode()
        async with self._relay_call("insert"):
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self.record_key(record.id), payload)
            if not record.synced:
                pipe.zadd(self.pending_key(record.owner_id), {record.id: record.created_at.timestamp()})
            pipe.publish(self.channel_name(record.owner_id), payload)
            await pipe.execute()
        logger.info("Relay record inserted", record_id=record.id, owner_id=record.owner_id, session_id=record.session_id)

    async def list_unconsumed(self, owner_id: str) -> List[RelayRecord]:
        """Unsynced records for an owner, oldest first."""
        pending_key = self.pending_key(owner_id)
        async with self._relay_call("list_unconsumed"):
            record_ids = await self.client.zrange(pending_key, 0, -1)
            if not record_ids:
                return []
            raws = await self.client.mget([self.record_key(rid) for rid in record_ids])

        records: List[RelayRecord] = []
        dangling: List[str] = []
        for record_id, raw in zip(record_ids, raws):
            if raw is None:
                dangling.append(record_id)
                continue
            try:
                record = RelayRecord.decode(raw, record_id=record_id)
            except MalformedRecord as e:
                # Left in place for inspection; it must not block the rest of the backlog.
                logger.error("Skipping malformed relay record", record_id=record_id, error=str(e))
                continue
            if not record.synced:
                records.append(record)

        if dangling:
            async with self._relay_call("list_unconsumed"):
                await self.client.zrem(pending_key, *dangling)

        records.sort(key=lambda r: r.created_at)
        return records

    async def get(self, record_id: str) -> Optional[RelayRecord]:
        async with self._relay_call("get"):
            raw = await self.client.get(self.record_key(record_id))
        return RelayRecord.decode(raw, record_id=record_id) if raw is not None else None

    async def delete(self, record_id: str) -> None:
        async with self._relay_call("delete"):
            raw = await self.client.get(self.record_key(record_id))
            owner_id = None
            if raw is not None:
                try:
                    owner_id = RelayRecord.decode(raw, record_id=record_id).owner_id
                except MalformedRecord:
                    owner_id = None

            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self.record_key(record_id))
            if owner_id:
                pipe.zrem(self.pending_key(owner_id), record_id)
            await pipe.execute()

    async def subscribe(
        self,
        owner_id: str,
        on_insert: InsertHandler,
        on_lost: Optional[LostHandler] = None,
    ) -> RelaySubscription:
        subscription = RelaySubscription(
            self.client.pubsub(),
            self.channel_name(owner_id),
            on_insert,
            on_lost=on_lost,
            poll_seconds=self.poll_seconds,
        )
        await subscription.start()
        return subscription

    # ---- snapshots for remote resolution ----

    async def put_template_snapshot_if_absent(self, template: TemplateSnapshot) -> bool:
        """Upload the template unless the relay already has a copy."""
        async with self._relay_call("put_template_snapshot"):
            written = await self.client.set(self.template_key(template.id), template.model_dump_json(), nx=True)
        return bool(written)

    async def get_template_snapshot(self, template_id: str) -> Optional[TemplateSnapshot]:
        async with self._relay_call("get_template_snapshot"):
            raw = await self.client.get(self.template_key(template_id))
        return decode_template_snapshot(raw, template_id) if raw is not None else None

    def _snapshot_ttl_seconds(self, snapshot: SessionSnapshot) -> int:
        remaining = snapshot.expires_at + self.snapshot_grace - datetime.now(timezone.utc)
        return max(1, int(remaining.total_seconds()))

    async def put_session_snapshot(self, snapshot: SessionSnapshot) -> None:
        async with self._relay_call("put_session_snapshot"):
            await self.client.set(
                self.session_key(snapshot.token),
                snapshot.model_dump_json(),
                ex=self._snapshot_ttl_seconds(snapshot),
            )

    async def get_session_snapshot(self, token: str) -> Optional[SessionSnapshot]:
        async with self._relay_call("get_session_snapshot"):
            raw = await self.client.get(self.session_key(token))
        return decode_session_snapshot(raw, token) if raw is not None else None

    async def mark_snapshot_status(
        self,
        token: str,
        status: SessionStatus,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        snapshot = await self.get_session_snapshot(token)
        if snapshot is None:
            return False
        updated = snapshot.model_copy(update={"status": status, "completed_at": completed_at or snapshot.completed_at})
        async with self._relay_call("mark_snapshot_status"):
            written = await self.client.set(
                self.session_key(token),
                updated.model_dump_json(),
                xx=True,
                keepttl=True,
            )
        return bool(written)

    async def delete_session_snapshot(self, token: str) -> None:
        async with self._relay_call("delete_session_snapshot"):
            await self.client.delete(self.session_key(token))


def build_relay_store(client: Optional[redis.Redis] = None) -> RedisRelayStore:
    from core.config import settings
    from core.redis import get_redis

    return RedisRelayStore(
        client or get_redis(),
        prefix=settings.RELAY_KEY_PREFIX,
        snapshot_grace_hours=settings.RELAY_SNAPSHOT_GRACE_HOURS,
        poll_seconds=settings.SUBSCRIPTION_POLL_SECONDS,
    )
