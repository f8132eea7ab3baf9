"""
Message schema for the relay WebSocket channel.

Every frame is a JSON object with a string ``type`` field plus a
type-specific payload. This module parses inbound frames and builds the
outbound replies so the wire format lives in one place.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ProtocolError

logger = logging.getLogger(__name__)

# Client -> server
REGISTER_MOBILE_CONFIGURATOR = "register_mobile_configurator"
REGISTER_QUEST_VIEWER = "register_quest_viewer"
SET_CAMERA_URL = "set_camera_url"
SET_IP_WEBCAM_URL = "set_ip_webcam_url"
CONTROLLER_INPUT = "controller_input"
ROVER_COMMAND = "rover_command"
ROVER_STICK_INPUT = "rover_stick_input"

# Server -> client
URL_ACK = "url_ack"
IP_WEBCAM_URL_UPDATE = "ip_webcam_url_update"
NO_STREAM_URL_SET = "no_stream_url_set"
ERROR = "error"

ACCEPTED_URL_SCHEMES = ("http://", "https://")


def parse_message(raw: str) -> Dict[str, Any]:
    """
    Parse an inbound text frame.

    Args:
        raw: Text frame as received

    Returns:
        The decoded JSON object

    Raises:
        ProtocolError: If the frame is not a JSON object with a string type
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        raise ProtocolError("Invalid JSON format")
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise ProtocolError("Message is missing a string 'type' field")
    return data


def is_valid_camera_url(url: Any) -> bool:
    """Check that the URL is a string with an http:// or https:// prefix."""
    return isinstance(url, str) and url.startswith(ACCEPTED_URL_SCHEMES)


def url_ack(url: Optional[str], message: str) -> Dict[str, Any]:
    return {"type": URL_ACK, "url": url, "message": message}


def camera_url_update(url: str) -> Dict[str, Any]:
    # Viewers always go through /proxied-stream, never the camera directly.
    return {"type": IP_WEBCAM_URL_UPDATE, "url": url, "useProxy": True}


def no_stream_url_set() -> Dict[str, Any]:
    return {"type": NO_STREAM_URL_SET}


def error(message: str) -> Dict[str, Any]:
    return {"type": ERROR, "message": message}


def _axis(value: Any) -> float:
    """Coerce one axis value to a finite float."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"Axis value must be a number, got {value!r}")
    try:
        value = float(value)
    except OverflowError:
        raise ProtocolError("Axis value out of range")
    if not math.isfinite(value):
        raise ProtocolError("Axis value must be finite")
    return value


@dataclass
class StickSample:
    """
    One thumbstick reading.

    Attributes:
        x: Horizontal axis, -1 (left) to 1 (right)
        y: Vertical axis, -1 (pushed forward) to 1 (pulled back)
        pressed: Whether the stick is held down
    """
    x: float
    y: float
    pressed: bool = False

    def to_json(self) -> str:
        """Serialize in the {pressed, x, y} shape the rover firmware reads."""
        return json.dumps({"pressed": self.pressed, "x": self.x, "y": self.y})

    @classmethod
    def from_dict(cls, d: Any) -> 'StickSample':
        """Build from a ``rover_stick_input`` payload."""
        if not isinstance(d, dict):
            raise ProtocolError("rover_stick_input requires an 'input' object")
        if "x" not in d or "y" not in d:
            raise ProtocolError("rover_stick_input requires 'x' and 'y'")
        return cls(
            x=_axis(d["x"]),
            y=_axis(d["y"]),
            pressed=bool(d.get("pressed", False)),
        )

    @classmethod
    def from_controller_input(cls, d: Any) -> Optional['StickSample']:
        """
        Pick the driving thumbstick out of a ``controller_input`` payload.

        Prefers the right-hand controller's axes 2/3. Falls back to the first
        controller: axes 2/3 when it has four axes, axes 0/1 when it has two.

        Returns:
            The sample, or None if no usable controller is present
        """
        if not isinstance(d, dict):
            return None
        inputs = d.get("inputs")
        if not isinstance(inputs, list) or not inputs:
            return None

        try:
            for controller in inputs:
                if not isinstance(controller, dict):
                    continue
                axes = controller.get("axes")
                if controller.get("handedness") == "right" and _has_axes(axes, 4):
                    return cls(x=_axis(axes[2]), y=_axis(axes[3]))

            first = inputs[0]
            if not isinstance(first, dict):
                return None
            axes = first.get("axes")
            if _has_axes(axes, 4):
                logger.debug(
                    f"Right controller not found, using axes 2/3 of "
                    f"{first.get('handedness')} controller"
                )
                return cls(x=_axis(axes[2]), y=_axis(axes[3]))
            if _has_axes(axes, 2):
                logger.debug(
                    f"Controller has only 2 axes, using axes 0/1 of "
                    f"{first.get('handedness')} controller"
                )
                return cls(x=_axis(axes[0]), y=_axis(axes[1]))
        except ProtocolError as e:
            logger.debug(f"Unusable controller axes: {e}")
        return None


def _has_axes(axes: Any, count: int) -> bool:
    return isinstance(axes, list) and len(axes) >= count
