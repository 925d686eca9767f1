import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

# entity names sent with a change notice
UNITS = "units"
REQUESTS = "requests"
DONORS = "donors"


class Notifier:
    """
    "Data changed" fan-out. Listeners get the entity name; a listener that
    raises is logged and skipped so it cannot undo a committed change.
    """

    def __init__(self):
        self._listeners: List[Callable[[str], None]] = []

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def notify_changed(self, entity: str) -> None:
        logger.debug("Data changed: %s", entity)
        for listener in list(self._listeners):
            try:
                listener(entity)
            except Exception:
                logger.exception("Change listener failed for %s", entity)
