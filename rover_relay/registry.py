"""
Connection registry and shared camera URL.

Handles:
- Role assignment (one mobile configurator, many quest viewers)
- Newest-wins eviction of a superseded configurator
- The process-wide camera URL and its fan-out to viewers

All mutations run on the event loop between suspension points, so no lock
is taken. State is updated before any await so a concurrent handler never
sees a half-applied registration.
"""

import enum
import logging
import time
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from . import message
from .errors import AuthorizationError, ProtocolError

logger = logging.getLogger(__name__)

EVICTION_CLOSE_CODE = 1000
EVICTION_REASON = "New configurator connected, closing old session."


class Role(enum.Enum):
    """Role a connection registered for."""
    UNASSIGNED = "unassigned"
    MOBILE_CONFIGURATOR = "mobile_configurator"
    QUEST_VIEWER = "quest_viewer"


class Connection:
    """
    One client WebSocket and the role it registered for.

    Sending never raises: a failed send is logged and reported as False so
    a dead peer cannot break a broadcast or a handler.
    """

    def __init__(self, websocket: WebSocket, client_id: str):
        self.websocket = websocket
        self.client_id = client_id
        self.role = Role.UNASSIGNED
        self.connected_at = time.time()

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: Dict[str, Any]) -> bool:
        if not self.is_open:
            logger.debug(f"Skipping send to closed connection {self.client_id}")
            return False
        try:
            await self.websocket.send_json(data)
            return True
        except Exception as e:
            logger.warning(f"Error sending to {self.client_id}: {e}")
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.is_open:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.warning(f"Error closing {self.client_id}: {e}")

    def __repr__(self) -> str:
        return f"Connection({self.client_id}, {self.role.value})"


class ConnectionRegistry:
    """
    Owns every piece of process-wide relay state.

    Features:
    - At most one mobile configurator, newest wins
    - Idempotent viewer set
    - Shared camera URL, validated before it is stored
    """

    def __init__(self):
        self._configurator: Optional[Connection] = None
        self._viewers: Set[Connection] = set()
        self._camera_url: Optional[str] = None

        # Statistics
        self._evictions = 0
        self._url_updates = 0

    @property
    def camera_url(self) -> Optional[str]:
        return self._camera_url

    @property
    def configurator(self) -> Optional[Connection]:
        return self._configurator

    def viewers(self) -> List[Connection]:
        """Snapshot of the viewer set."""
        return list(self._viewers)

    def _assign_role(self, connection: Connection, role: Role) -> None:
        if connection.role not in (Role.UNASSIGNED, role):
            raise AuthorizationError(
                f"Connection already registered as {connection.role.value}"
            )
        connection.role = role

    async def register_configurator(self, connection: Connection) -> None:
        """
        Make this connection the sole mobile configurator.

        Any different previous holder is closed with a normal closure. The
        new holder is told the current camera URL.
        """
        self._assign_role(connection, Role.MOBILE_CONFIGURATOR)

        previous = self._configurator
        self._configurator = connection
        logger.info(f"Mobile configurator registered: {connection.client_id}")

        if previous is not None and previous is not connection:
            self._evictions += 1
            logger.info(f"Closing superseded configurator {previous.client_id}")
            await previous.close(code=EVICTION_CLOSE_CODE, reason=EVICTION_REASON)

        if self._camera_url:
            reply = message.url_ack(self._camera_url, "Retrieved current URL from server")
        else:
            reply = message.url_ack(None, "No URL set on server yet")
        await connection.send_json(reply)

    async def register_viewer(self, connection: Connection) -> None:
        """Add this connection to the viewer set and send it the current URL."""
        self._assign_role(connection, Role.QUEST_VIEWER)

        self._viewers.add(connection)
        logger.info(
            f"Quest viewer registered: {connection.client_id} "
            f"(viewers: {len(self._viewers)})"
        )

        if self._camera_url:
            await connection.send_json(message.camera_url_update(self._camera_url))
        else:
            await connection.send_json(message.no_stream_url_set())

    def unregister(self, connection: Connection) -> None:
        """Drop a closed connection from whatever it belonged to."""
        if self._configurator is connection:
            self._configurator = None
            logger.info(f"Mobile configurator disconnected: {connection.client_id}")
        if connection in self._viewers:
            self._viewers.discard(connection)
            logger.info(
                f"Quest viewer disconnected: {connection.client_id} "
                f"(viewers: {len(self._viewers)})"
            )

    async def set_camera_url(self, connection: Connection, url: Any) -> None:
        """
        Store a new camera URL and push it to every open viewer.

        Raises:
            AuthorizationError: If the connection is not the current configurator
            ProtocolError: If the URL has no http:// or https:// prefix
        """
        if connection.role != Role.MOBILE_CONFIGURATOR or self._configurator is not connection:
            raise AuthorizationError("Not authorized to set URL")
        if not message.is_valid_camera_url(url):
            logger.info(f"Invalid camera URL received: {url!r}")
            raise ProtocolError("Invalid URL format. Must start with http:// or https://")

        self._camera_url = url
        self._url_updates += 1
        logger.info(f"Camera URL set to: {url}")

        await connection.send_json(message.url_ack(url, "URL successfully updated on server"))
        await self.broadcast(message.camera_url_update(url))

    async def broadcast(self, data: Dict[str, Any]) -> int:
        """
        Send a message to every open viewer.

        Returns:
            Number of viewers the message was delivered to
        """
        delivered = 0
        for viewer in self.viewers():
            if not viewer.is_open:
                continue
            if await viewer.send_json(data):
                delivered += 1
        return delivered

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            "configurator": self._configurator.client_id if self._configurator else None,
            "viewers": len(self._viewers),
            "camera_url": self._camera_url,
            "evictions": self._evictions,
            "url_updates": self._url_updates,
        }
