import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import RelayUnreachable
from core.logging import get_logger
from services.change_notifier import ChangeNotifier
from services.relay_store import RedisRelayStore
from services.session_lifecycle import SessionLifecycleManager
from services.sync_coordinator import CoordinatorState, SyncCoordinator

logger = get_logger(__name__)


class SyncRunner:
    """Keeps one live sync coordinator for the clinic.

    A stopped coordinator is never reused: if the relay drops, the next tick
    builds a fresh instance, which drains everything missed while it was away.
    """

    def __init__(
        self,
        owner_id: str,
        session_factory: async_sessionmaker,
        relay: RedisRelayStore,
        lifecycle: Optional[SessionLifecycleManager] = None,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self.owner_id = owner_id
        self.session_factory = session_factory
        self.relay = relay
        self.lifecycle = lifecycle
        self.notifier = notifier or ChangeNotifier()
        self.coordinator: Optional[SyncCoordinator] = None
        self.restarts = 0
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.coordinator is not None and self.coordinator.state is CoordinatorState.SUBSCRIBED

    async def ensure_running(self) -> bool:
        async with self._lock:
            if self.running:
                return True

            if self.coordinator is not None:
                self.restarts += 1
                logger.info("Restarting sync coordinator", owner_id=self.owner_id, restarts=self.restarts)

            self.coordinator = SyncCoordinator(
                self.owner_id,
                self.session_factory,
                self.relay,
                lifecycle=self.lifecycle,
                notifier=self.notifier,
            )
            try:
                await self.coordinator.start()
            except RelayUnreachable:
                logger.warning("Relay unreachable, sync will retry on the next tick", owner_id=self.owner_id)
                return False
            return True

    async def tick(self) -> int:
        """Periodic job: restart if needed, otherwise resweep."""
        was_running = self.running
        if not await self.ensure_running():
            return 0
        if not was_running:
            # A fresh start already drained.
            return 0
        try:
            return await self.coordinator.resweep()
        except RelayUnreachable as e:
            logger.warning("Resweep skipped", owner_id=self.owner_id, error=str(e))
            return 0

    async def shutdown(self) -> None:
        async with self._lock:
            if self.coordinator is not None:
                await self.coordinator.stop()
