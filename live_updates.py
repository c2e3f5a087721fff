"""Push channel for timetable changes.

Clients re-fetch the timetable on reconnect, so events are neither stored
nor sequenced: a socket that misses an event simply never sees it.
"""

import logging
import time

from fastapi import WebSocket

logger = logging.getLogger(__name__)

BOOKING_UPDATE = "booking_update"
BOOKING_CANCEL = "booking_cancel"


class LiveUpdates:
    def __init__(self):
        self._sockets: set[WebSocket] = set()

    @property
    def connections(self) -> int:
        return len(self._sockets)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._sockets.add(websocket)
        logger.debug("Live update client connected (%d total)", len(self._sockets))

    def disconnect(self, websocket: WebSocket) -> None:
        self._sockets.discard(websocket)

    async def publish(self, event_type: str, date: str, hours: list[dict]) -> None:
        message = {
            "type": event_type,
            "data": {"date": date, "hours": hours},
            "timestamp": int(time.time() * 1000),
        }
        for websocket in list(self._sockets):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug("Dropping live update client (%s: %s)", type(e).__name__, e)
                self.disconnect(websocket)


live_updates = LiveUpdates()
