import logging
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Which users currently hold a live real-time connection.

    One instance per process, created at startup and handed to whatever needs it.
    Nothing is persisted: after a restart every user is offline until they reconnect.
    Presence only decides whether a message is marked DELIVERED at send time.
    """

    def __init__(self) -> None:
        self._connections: dict[int, set[str]] = defaultdict(set)
        # The delivery pipeline reads from worker threads.
        self._lock = threading.Lock()

    def mark_online(self, user_id: int, connection_id: str) -> None:
        with self._lock:
            self._connections[int(user_id)].add(connection_id)
        logger.debug("[presence] online user_id=%s connection_id=%s", user_id, connection_id)

    def mark_offline(self, user_id: int, connection_id: str | None = None) -> None:
        with self._lock:
            key = int(user_id)
            if connection_id is None:
                self._connections.pop(key, None)
            else:
                conns = self._connections.get(key)
                if conns is not None:
                    conns.discard(connection_id)
                    if not conns:
                        del self._connections[key]
        logger.debug("[presence] offline user_id=%s connection_id=%s", user_id, connection_id)

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._connections.get(int(user_id)))

    def list_online(self) -> set[int]:
        with self._lock:
            return {uid for uid, conns in self._connections.items() if conns}
