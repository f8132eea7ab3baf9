"""
WebSocket Server for the relay channel.

Handles:
- FastAPI WebSocket endpoint at / (and /ws)
- Role registration through the connection registry
- Message dispatch by type with role checks
- Controller telemetry echo and forwarding to the rover bridge
- GET /proxied-stream and GET /health
"""

import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from . import message
from .errors import AuthorizationError, ProtocolError
from .mjpeg_proxy import MJPEGProxy
from .registry import Connection, ConnectionRegistry, Role
from .rover_command import RoverCommand, RoverCommandBridge

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class MessageRouter:
    """
    Dispatches parsed messages to their handlers.

    Errors are answered on the sending connection and never close it; a
    message that fails validation leaves all state untouched.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rover_bridge: Optional[RoverCommandBridge] = None,
    ):
        self.registry = registry
        self.rover_bridge = rover_bridge

        self._handlers: Dict[str, Handler] = {
            message.REGISTER_MOBILE_CONFIGURATOR: self._register_configurator,
            message.REGISTER_QUEST_VIEWER: self._register_viewer,
            message.SET_CAMERA_URL: self._set_camera_url,
            message.SET_IP_WEBCAM_URL: self._set_camera_url,
            message.CONTROLLER_INPUT: self._controller_input,
            message.ROVER_COMMAND: self._rover_command,
            message.ROVER_STICK_INPUT: self._rover_stick_input,
        }

        # Statistics
        self._total_messages = 0
        self._invalid_messages = 0
        self._unauthorized_messages = 0
        self._failed_messages = 0

    async def handle(self, connection: Connection, raw: str) -> None:
        """Process one inbound text frame from a connection."""
        self._total_messages += 1
        try:
            data = message.parse_message(raw)
            handler = self._handlers.get(data["type"])
            if handler is None:
                raise ProtocolError(f"Unknown command: {data['type']}")
            await handler(connection, data)
        except AuthorizationError as e:
            self._unauthorized_messages += 1
            logger.warning(f"Unauthorized message from {connection!r}: {e}")
            await connection.send_json(message.error(str(e)))
        except ProtocolError as e:
            self._invalid_messages += 1
            logger.warning(f"Invalid message from {connection!r}: {e}")
            await connection.send_json(message.error(str(e)))
        except Exception:
            self._failed_messages += 1
            logger.exception(f"Error handling message from {connection!r}")
            await connection.send_json(message.error("Internal error handling message"))

    def _require(self, connection: Connection, role: Role, action: str) -> None:
        if connection.role != role:
            raise AuthorizationError(f"Not authorized to send {action}")

    async def _register_configurator(self, connection: Connection, data: Dict[str, Any]) -> None:
        await self.registry.register_configurator(connection)

    async def _register_viewer(self, connection: Connection, data: Dict[str, Any]) -> None:
        await self.registry.register_viewer(connection)

    async def _set_camera_url(self, connection: Connection, data: Dict[str, Any]) -> None:
        await self.registry.set_camera_url(connection, data.get("url"))

    async def _controller_input(self, connection: Connection, data: Dict[str, Any]) -> None:
        self._require(connection, Role.QUEST_VIEWER, message.CONTROLLER_INPUT)

        # Echo to the sender only, for its own telemetry display
        await connection.send_json(data)

        if self.rover_bridge is None:
            return
        sample = message.StickSample.from_controller_input(data.get("input"))
        if sample is not None:
            await self.rover_bridge.forward_controller(sample)

    async def _rover_command(self, connection: Connection, data: Dict[str, Any]) -> None:
        self._require(connection, Role.QUEST_VIEWER, message.ROVER_COMMAND)
        command = RoverCommand.parse(data.get("command"))
        if self.rover_bridge is not None:
            await self.rover_bridge.forward_command(command)

    async def _rover_stick_input(self, connection: Connection, data: Dict[str, Any]) -> None:
        self._require(connection, Role.QUEST_VIEWER, message.ROVER_STICK_INPUT)
        sample = message.StickSample.from_dict(data.get("input"))
        logger.debug(f"Stick input from {connection.client_id}: {sample}")
        if self.rover_bridge is not None:
            await self.rover_bridge.forward_stick(sample)

    def get_stats(self) -> dict:
        """Get router statistics."""
        return {
            "total_messages": self._total_messages,
            "invalid_messages": self._invalid_messages,
            "unauthorized_messages": self._unauthorized_messages,
            "failed_messages": self._failed_messages,
        }


class WebSocketServer:
    """
    FastAPI application hosting the relay channel and the MJPEG proxy.

    Features:
    - One receive loop per WebSocket, messages handled in arrival order
    - Registry cleanup on every disconnect path
    - Rover STOP when the last viewer leaves
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        proxy: MJPEGProxy,
        rover_bridge: Optional[RoverCommandBridge] = None,
        static_dir: Optional[str] = None,
    ):
        """
        Initialize WebSocket server.

        Args:
            registry: Shared connection registry
            proxy: MJPEG proxy serving /proxied-stream
            rover_bridge: Forwarder for rover commands (optional)
            static_dir: Directory of front-end pages mounted at / if it exists
        """
        self.registry = registry
        self.proxy = proxy
        self.rover_bridge = rover_bridge
        self.router = MessageRouter(registry, rover_bridge)

        # Connected clients (for monitoring)
        self._connected_clients: Dict[str, Connection] = {}
        self._client_counter = 0

        # FastAPI app
        self.app = FastAPI(title="Quest Rover Relay")

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_routes()

        # Mounted last so it never shadows the routes above
        if static_dir and os.path.isdir(static_dir):
            self.app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
            logger.info(f"Serving static files from {static_dir}")

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", **self.get_stats()}

        self.app.add_api_route("/proxied-stream", self.proxy.handle, methods=["GET"])

        @self.app.websocket("/")
        async def websocket_root(websocket: WebSocket):
            await self._handle_websocket(websocket)

        @self.app.websocket("/ws")
        async def websocket_relay(websocket: WebSocket):
            await self._handle_websocket(websocket)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Handle incoming WebSocket connection."""
        await websocket.accept()

        self._client_counter += 1
        client_id = f"client_{self._client_counter}"
        connection = Connection(websocket, client_id)
        self._connected_clients[client_id] = connection

        logger.info(f"Client connected: {client_id} from {websocket.client}")

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000), frame.get("reason"))
                raw = frame.get("text")
                if raw is None:
                    raw = (frame.get("bytes") or b"").decode("utf-8", errors="replace")
                await self.router.handle(connection, raw)
        except WebSocketDisconnect as e:
            logger.info(
                f"Client disconnected: {client_id} (code: {e.code}, "
                f"reason: {e.reason or 'No reason given'}, role: {connection.role.value})"
            )
        except Exception:
            logger.exception(f"Error handling client {client_id} ({connection.role.value})")
        finally:
            self._connected_clients.pop(client_id, None)
            was_viewer = connection.role == Role.QUEST_VIEWER
            self.registry.unregister(connection)
            if was_viewer and not self.registry.viewers():
                await self._stop_rover(client_id)

    async def _stop_rover(self, client_id: str) -> None:
        """Force a rover STOP once nobody is left to drive it."""
        if self.rover_bridge is None:
            return
        logger.info(f"Last viewer {client_id} left, stopping rover")
        await self.rover_bridge.stop()

    def get_stats(self) -> dict:
        """Get server statistics."""
        stats = {
            "connected_clients": len(self._connected_clients),
            "registry": self.registry.get_stats(),
            "router": self.router.get_stats(),
            "proxy": self.proxy.get_stats(),
        }
        if self.rover_bridge is not None:
            stats["rover"] = self.rover_bridge.get_stats()
        return stats
