import inspect
from typing import Awaitable, Callable, List, Union

from core.logging import get_logger
from schemas.survey import SyncChange

logger = get_logger(__name__)

Listener = Callable[[SyncChange], Union[None, Awaitable[None]]]


class ChangeNotifier:
    """Fan-out of "responses/sessions changed" to whoever renders them.

    Listener failures are logged and never reach the writer.
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def notify(self, change: SyncChange) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change listener failed", response_id=change.response_id)
