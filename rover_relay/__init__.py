"""
Quest Rover Relay - signaling and relay server for a Quest-driven rover.

This package runs on the relay host and:
- Accepts WebSocket connections from the mobile configurator and Quest viewers
- Shares the camera URL and re-streams the camera at /proxied-stream
- Bridges viewer telemetry to MQTT for the rover
"""

__version__ = "1.0.0"
