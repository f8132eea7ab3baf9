#!/usr/bin/env python3
"""
Quest Rover Relay - Main Entry Point

This server connects a mobile camera configurator, Quest VR viewers and a
rover:
- Relays the camera URL from the configurator to every viewer
- Re-streams the camera's MJPEG feed at /proxied-stream
- Forwards controller telemetry to the rover over MQTT

Environment Variables:
    HOST: Bind address (default: 0.0.0.0)
    PORT: Listen port (default: 3000)
    STATIC_DIR: Front-end directory served at / (default: public)
    ENABLE_MQTT: Set to false to run without a broker (default: true)
    MQTT_HOST: MQTT broker host (default: localhost)
    MQTT_PORT: MQTT broker port (default: 1883)
    MQTT_USERNAME: Broker username (optional)
    MQTT_PASSWORD: Broker password (optional)
    MQTT_TLS: Connect to the broker over TLS (default: false)
    MQTT_CONTROL_TOPIC: Topic for rover commands (default: quest/rover/control)
    MQTT_SEND_INTERVAL_MS: Minimum ms between raw stick publishes (default: 100)
    PROXY_CONNECT_TIMEOUT: Camera connect timeout in seconds (default: 10)
    LOG_LEVEL: Logging level (default: INFO)

Usage:
    export MQTT_HOST=broker.example.com MQTT_PORT=8883 MQTT_TLS=true
    python -m rover_relay.main
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import uvicorn

from .mjpeg_proxy import MJPEGProxy
from .mqtt_bridge import AsyncMQTTBridge
from .registry import ConnectionRegistry
from .rover_command import RoverCommandBridge
from .ws_server import WebSocketServer

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class RelayGateway:
    """
    Main relay gateway integrating WebSocket, MJPEG proxy and MQTT.

    Architecture:
        Mobile -> WebSocket -> RelayGateway -> WebSocket -> Quest viewers
        Quest -> WebSocket -> RelayGateway -> MQTT (quest/rover/control)
        Camera -> HTTP -> /proxied-stream -> Quest viewers
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 3000,
        static_dir: Optional[str] = "public",
        mqtt_host: str = "localhost",
        mqtt_port: int = 1883,
        mqtt_username: Optional[str] = None,
        mqtt_password: Optional[str] = None,
        mqtt_tls: bool = False,
        control_topic: str = "quest/rover/control",
        send_interval_ms: int = 100,
        proxy_connect_timeout: float = 10.0,
        enable_mqtt: bool = True,
    ):
        """
        Initialize relay gateway.

        Args:
            host: Server bind address
            port: Server port
            static_dir: Front-end directory served at /
            mqtt_host: MQTT broker host
            mqtt_port: MQTT broker port
            mqtt_username: MQTT username
            mqtt_password: MQTT password
            mqtt_tls: Whether to use TLS for MQTT
            control_topic: Topic for rover commands
            send_interval_ms: Raw stick publish interval in milliseconds
            proxy_connect_timeout: Camera connect timeout in seconds
            enable_mqtt: Whether to enable the MQTT bridge
        """
        self.host = host
        self.port = port
        self.static_dir = static_dir
        self.mqtt_host = mqtt_host
        self.mqtt_port = mqtt_port
        self.mqtt_username = mqtt_username
        self.mqtt_password = mqtt_password
        self.mqtt_tls = mqtt_tls
        self.control_topic = control_topic
        self.send_interval_ms = send_interval_ms
        self.proxy_connect_timeout = proxy_connect_timeout
        self.enable_mqtt = enable_mqtt

        # Components
        self.registry = ConnectionRegistry()
        self.proxy = MJPEGProxy(
            lambda: self.registry.camera_url,
            connect_timeout=self.proxy_connect_timeout,
        )
        self.mqtt_bridge: Optional[AsyncMQTTBridge] = None
        self.rover_bridge: Optional[RoverCommandBridge] = None
        self.ws_server: Optional[WebSocketServer] = None

    async def start(self) -> None:
        """Start all server components."""
        logger.info("Starting Quest Rover Relay...")

        if self.enable_mqtt:
            self.mqtt_bridge = AsyncMQTTBridge(
                host=self.mqtt_host,
                port=self.mqtt_port,
                username=self.mqtt_username,
                password=self.mqtt_password,
                use_tls=self.mqtt_tls,
            )
            if await self.mqtt_bridge.start():
                logger.info("MQTT bridge started")
            else:
                logger.warning("MQTT bridge not connected yet, rover commands are dropped until it is")
        else:
            logger.warning("MQTT disabled, rover commands will be dropped")

        self.rover_bridge = RoverCommandBridge(
            sink=self.mqtt_bridge,
            topic=self.control_topic,
            send_interval=self.send_interval_ms / 1000.0,
        )

        self.ws_server = WebSocketServer(
            registry=self.registry,
            proxy=self.proxy,
            rover_bridge=self.rover_bridge,
            static_dir=self.static_dir,
        )

        logger.info(f"Quest Rover Relay started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop all server components."""
        logger.info("Stopping Quest Rover Relay...")

        if self.rover_bridge and self.mqtt_bridge and self.mqtt_bridge.connected:
            await self.rover_bridge.stop()

        if self.mqtt_bridge:
            await self.mqtt_bridge.stop()
            logger.info("MQTT bridge stopped")

        logger.info("Quest Rover Relay stopped")

    def get_app(self):
        """Get the FastAPI application for uvicorn."""
        return self.ws_server.app

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "ws_server": self.ws_server.get_stats() if self.ws_server else {},
            "mqtt_bridge": self.mqtt_bridge.get_stats() if self.mqtt_bridge else {},
        }


async def run_server(gateway: RelayGateway) -> None:
    """Run the server with uvicorn."""
    config = uvicorn.Config(
        gateway.get_app(),
        host=gateway.host,
        port=gateway.port,
        log_level="info",
        access_log=True,
    )
    server = uvicorn.Server(config)
    await server.serve()


def gateway_from_env() -> RelayGateway:
    """Build a gateway from environment variables."""
    return RelayGateway(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "3000")),
        static_dir=os.environ.get("STATIC_DIR", "public"),
        mqtt_host=os.environ.get("MQTT_HOST", "localhost"),
        mqtt_port=int(os.environ.get("MQTT_PORT", "1883")),
        mqtt_username=os.environ.get("MQTT_USERNAME") or None,
        mqtt_password=os.environ.get("MQTT_PASSWORD") or None,
        mqtt_tls=_env_flag("MQTT_TLS", False),
        control_topic=os.environ.get("MQTT_CONTROL_TOPIC", "quest/rover/control"),
        send_interval_ms=int(os.environ.get("MQTT_SEND_INTERVAL_MS", "100")),
        proxy_connect_timeout=float(os.environ.get("PROXY_CONNECT_TIMEOUT", "10")),
        enable_mqtt=_env_flag("ENABLE_MQTT", True),
    )


async def main_async() -> None:
    """Async main entry point."""
    try:
        gateway = gateway_from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    # Setup signal handlers
    loop = asyncio.get_event_loop()

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await gateway.start()

        # Run server until shutdown
        server_task = asyncio.create_task(run_server(gateway))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # Cancel pending tasks
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except Exception as e:
        logger.error(f"Server error: {e}")
    finally:
        await gateway.stop()


def main() -> None:
    """Main entry point."""
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
