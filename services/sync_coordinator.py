"""
Sync coordinator: moves relayed survey responses into the local database.

One instance per owner (clinic). Lifecycle:

    IDLE --start--> DRAINING --backlog done--> SUBSCRIBED --stop--> STOPPED

Drain and push share the same idempotent `ingest`, so a record that is
delivered twice, re-drained after a restart, or pushed while a resweep picks
it up lands in the local database once.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import AlreadyTerminal, RelayUnreachable, SessionNotFound, StorageWriteFailed
from core.logging import get_logger
from repositories.survey_response import SurveyResponseRepository
from schemas.survey import RelayRecord, ResponseRead, SyncChange
from services.change_notifier import ChangeNotifier
from services.relay_store import RelayStore, RelaySubscription
from services.session_lifecycle import SessionLifecycleManager

logger = get_logger(__name__)


class CoordinatorState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    SUBSCRIBED = "subscribed"
    STOPPED = "stopped"


class IngestOutcome(str, Enum):
    INGESTED = "ingested"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class SyncStats:
    ingested: int = 0
    duplicates: int = 0
    failed: int = 0
    sweeps: int = 0


class SyncCoordinator:
    def __init__(
        self,
        owner_id: str,
        session_factory: async_sessionmaker,
        relay: RelayStore,
        *,
        lifecycle: Optional[SessionLifecycleManager] = None,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self.owner_id = owner_id
        self.session_factory = session_factory
        self.relay = relay
        self.lifecycle = lifecycle or SessionLifecycleManager(session_factory, relay, owner_id=owner_id)
        self.notifier = notifier or ChangeNotifier()
        self.stats = SyncStats()
        self.relay_lost = False

        self._state = CoordinatorState.IDLE
        self._subscription: Optional[RelaySubscription] = None
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> CoordinatorState:
        return self._state

    def _transition(self, new_state: CoordinatorState) -> None:
        logger.info("Sync coordinator state change", owner_id=self.owner_id, old=self._state.value, new=new_state.value)
        self._state = new_state

    async def __aenter__(self) -> "SyncCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ---- lifecycle ----

    async def start(self) -> None:
        """Drain the backlog, then subscribe to pushes.

        Raises RelayUnreachable (after moving to STOPPED) if the relay can't
        be read or subscribed; a new instance has to be started later.
        """
        if self._state is not CoordinatorState.IDLE:
            raise RuntimeError(f"Sync coordinator can only start from idle, not {self._state.value}")

        self._transition(CoordinatorState.DRAINING)
        try:
            drained = await self._sweep("drain")
            if self._state is CoordinatorState.STOPPED:
                return
            self._subscription = await self.relay.subscribe(self.owner_id, self._on_push, on_lost=self._on_lost)
        except RelayUnreachable as e:
            logger.error("Sync coordinator could not reach the relay", owner_id=self.owner_id, error=str(e))
            self.relay_lost = True
            await self.stop()
            raise

        self._transition(CoordinatorState.SUBSCRIBED)
        logger.info("Sync coordinator subscribed", owner_id=self.owner_id, drained=drained)

        # Records inserted between the drain and the subscription were never pushed to us.
        try:
            await self._sweep("catch_up")
        except RelayUnreachable as e:
            logger.warning("Catch-up sweep skipped", owner_id=self.owner_id, error=str(e))

    async def stop(self) -> None:
        """Close the channel and let in-flight ingests finish. Terminal."""
        if self._state is CoordinatorState.STOPPED:
            return
        self._transition(CoordinatorState.STOPPED)

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        await self._idle.wait()
        logger.info(
            "Sync coordinator stopped",
            owner_id=self.owner_id,
            ingested=self.stats.ingested,
            duplicates=self.stats.duplicates,
            failed=self.stats.failed,
        )

    async def drain_once(self) -> int:
        """One drain pass without subscribing. Leaves the coordinator stopped."""
        if self._state is not CoordinatorState.IDLE:
            raise RuntimeError(f"Sync coordinator can only drain from idle, not {self._state.value}")
        self._transition(CoordinatorState.DRAINING)
        try:
            return await self._sweep("drain")
        finally:
            await self.stop()

    async def resweep(self) -> int:
        """Re-drain while subscribed; picks up missed pushes and failed ingests."""
        if self._state is not CoordinatorState.SUBSCRIBED:
            return 0
        return await self._sweep("resweep")

    async def _sweep(self, reason: str) -> int:
        records = await self.relay.list_unconsumed(self.owner_id)
        self.stats.sweeps += 1
        if records:
            logger.info("Relay backlog found", owner_id=self.owner_id, reason=reason, count=len(records))
        ingested = 0
        for record in records:
            if self._state is CoordinatorState.STOPPED:
                break
            if await self.ingest(record) is IngestOutcome.INGESTED:
                ingested += 1
        return ingested

    async def _on_push(self, record: RelayRecord) -> None:
        if record.owner_id != self.owner_id:
            logger.warning("Ignoring push for another owner", owner_id=self.owner_id, record_owner=record.owner_id)
            return
        logger.info("Relay push received", record_id=record.id, session_id=record.session_id)
        await self.ingest(record)

    async def _on_lost(self) -> None:
        self.relay_lost = True
        await self.stop()

    # ---- ingestion ----

    async def ingest(self, record: RelayRecord) -> IngestOutcome:
        """Move one relay record into the local database, at most once."""
        self._inflight += 1
        self._idle.clear()
        try:
            return await self._ingest(record)
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    async def _ingest(self, record: RelayRecord) -> IngestOutcome:
        try:
            if record.session_id and await self._already_ingested(record.session_id):
                return await self._discard_duplicate(record)
            response = await self._commit_locally(record)
        except StorageWriteFailed as e:
            # Relay copy stays put; the next drain, resweep or push retries it.
            self.stats.failed += 1
            logger.error("Ingest failed, relay record kept", record_id=record.id, session_id=record.session_id, error=str(e))
            return IngestOutcome.FAILED

        if response is None:
            return await self._discard_duplicate(record)

        await self._delete_relay_copy(record)
        self.stats.ingested += 1
        logger.info("Relay record ingested", record_id=record.id, response_id=response.id, session_id=record.session_id)
        await self.notifier.notify(
            SyncChange(response_id=response.id, session_id=record.session_id, template_id=record.template_id)
        )
        return IngestOutcome.INGESTED

    async def _already_ingested(self, session_id: str) -> bool:
        try:
            async with self.session_factory() as db:
                return await SurveyResponseRepository(db).get_by_session_id(session_id) is not None
        except SQLAlchemyError as e:
            raise StorageWriteFailed(f"Duplicate check failed: {e}") from e

    async def _commit_locally(self, record: RelayRecord) -> Optional[ResponseRead]:
        """Insert the response and complete its session in one transaction.

        Returns None when the unique session constraint shows another writer
        got there first.
        """
        async with self.session_factory() as db:
            try:
                response = await SurveyResponseRepository(db).create(
                    session_id=record.session_id,
                    patient_id=record.patient_id,
                    template_id=record.template_id,
                    respondent_name=record.respondent_name,
                    answers=record.answers,
                    submitted_at=record.created_at,
                    details=record,
                )
                if record.session_id:
                    try:
                        await self.lifecycle.mark_completed(record.session_id, record.created_at, db=db)
                    except AlreadyTerminal as e:
                        logger.warning(
                            "Relayed response for a session that is no longer pending",
                            session_id=record.session_id,
                            status=e.status,
                        )
                    except SessionNotFound:
                        logger.warning("Relayed response for an unknown session", session_id=record.session_id)
                await db.commit()
                return response
            except IntegrityError as e:
                await db.rollback()
                if record.session_id:
                    return None
                raise StorageWriteFailed(f"Local insert rejected: {e}") from e
            except SQLAlchemyError as e:
                await db.rollback()
                raise StorageWriteFailed(f"Local transaction failed: {e}") from e

    async def _discard_duplicate(self, record: RelayRecord) -> IngestOutcome:
        self.stats.duplicates += 1
        logger.info("Relay record already ingested, discarding", record_id=record.id, session_id=record.session_id)
        await self._delete_relay_copy(record)
        return IngestOutcome.DUPLICATE

    async def _delete_relay_copy(self, record: RelayRecord) -> None:
        try:
            await self.relay.delete(record.id)
        except RelayUnreachable as e:
            # Safe to leave: the next pass sees the local response and discards it.
            logger.warning("Relay delete failed after local commit", record_id=record.id, error=str(e))
