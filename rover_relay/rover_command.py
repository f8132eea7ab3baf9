"""
Rover command bridge.

Turns viewer telemetry into rover control payloads and hands them to the
MQTT sink:
- Raw stick samples are forwarded as-is, at most once per interval
- Discrete commands are forwarded only when the command changes

Publishing is fire-and-forget. Failures are logged and dropped; the MQTT
client's own reconnect loop is the only retry.
"""

import enum
import logging
import time
from typing import Callable, Optional, Protocol

from .errors import ProtocolError, SinkUnavailable
from .message import StickSample

logger = logging.getLogger(__name__)

DEFAULT_DEADZONE = 0.25
DEFAULT_STRONG_PUSH = 0.7
DEFAULT_SEND_INTERVAL = 0.1  # seconds


class RoverCommand(str, enum.Enum):
    """Discrete drive commands understood by the rover firmware."""
    STOP = "STOP"
    MOVE_FORWARD = "MOVE_FORWARD"
    MOVE_BACKWARD = "MOVE_BACKWARD"
    PIVOT_LEFT_FORWARD = "PIVOT_LEFT_FORWARD"
    PIVOT_RIGHT_FORWARD = "PIVOT_RIGHT_FORWARD"
    TURN_LEFT_ON_SPOT = "TURN_LEFT_ON_SPOT"
    TURN_RIGHT_ON_SPOT = "TURN_RIGHT_ON_SPOT"

    @classmethod
    def parse(cls, value) -> 'RoverCommand':
        try:
            return cls(value)
        except ValueError:
            raise ProtocolError(f"Unknown rover command: {value}")


class Sink(Protocol):
    """Anything that can publish a payload to a topic (see AsyncMQTTBridge)."""

    async def publish(self, topic: str, payload: str) -> bool: ...


def classify(
    x: float,
    y: float,
    deadzone: float = DEFAULT_DEADZONE,
    strong_push: float = DEFAULT_STRONG_PUSH,
) -> RoverCommand:
    """
    Map a thumbstick position to a discrete drive command.

    Negative y is stick pushed forward. Positions between the deadzone and
    the strong-push threshold that match no rule fall back to STOP.

    Args:
        x: Horizontal axis in [-1, 1]
        y: Vertical axis in [-1, 1]
        deadzone: Axis magnitude below which the axis counts as centred
        strong_push: Horizontal magnitude required to turn on the spot

    Returns:
        The drive command
    """
    x_centred = abs(x) < deadzone
    y_centred = abs(y) < deadzone

    if x_centred and y_centred:
        return RoverCommand.STOP
    if y < -deadzone:
        if x_centred:
            return RoverCommand.MOVE_FORWARD
        if x > deadzone:
            return RoverCommand.PIVOT_LEFT_FORWARD
        return RoverCommand.PIVOT_RIGHT_FORWARD
    if y > deadzone and x_centred:
        return RoverCommand.MOVE_BACKWARD
    if y_centred:
        if x > strong_push:
            return RoverCommand.TURN_RIGHT_ON_SPOT
        if x < -strong_push:
            return RoverCommand.TURN_LEFT_ON_SPOT
    return RoverCommand.STOP


class RoverCommandBridge:
    """
    Rate-limited forwarder from telemetry to the rover control topic.

    Features:
    - Raw stick forwarding throttled to one publish per interval, except
      that a press or release always goes through
    - Edge-triggered discrete commands (state only advances once the sink
      accepts the publish, so a STOP after movement is never lost to a
      disconnected broker)
    """

    def __init__(
        self,
        sink: Optional[Sink],
        topic: str = "quest/rover/control",
        send_interval: float = DEFAULT_SEND_INTERVAL,
        deadzone: float = DEFAULT_DEADZONE,
        strong_push: float = DEFAULT_STRONG_PUSH,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the bridge.

        Args:
            sink: Publisher for control payloads, or None to drop everything
            topic: MQTT topic for control payloads
            send_interval: Minimum seconds between raw stick publishes
            deadzone: Classifier deadzone
            strong_push: Classifier turn-on-spot threshold
            clock: Monotonic time source
        """
        self.sink = sink
        self.topic = topic
        self.send_interval = send_interval
        self.deadzone = deadzone
        self.strong_push = strong_push
        self._clock = clock

        # Rover command state
        self._last_command: Optional[RoverCommand] = None
        self._last_raw_send: Optional[float] = None
        self._last_raw_pressed: Optional[bool] = None
        self._sink_available = True

        # Statistics
        self._forwarded = 0
        self._throttled = 0
        self._dropped = 0

    @property
    def last_command(self) -> Optional[RoverCommand]:
        return self._last_command

    def classify(self, x: float, y: float) -> RoverCommand:
        return classify(x, y, self.deadzone, self.strong_push)

    async def forward_stick(self, sample: StickSample) -> bool:
        """
        Forward a raw stick sample unless one was sent within the interval.

        A change of the pressed flag is always forwarded; the client sends a
        single release sample and the rover holds the last state it saw.
        """
        now = self._clock()
        pressed_changed = (
            self._last_raw_pressed is not None and sample.pressed != self._last_raw_pressed
        )
        if (
            not pressed_changed
            and self._last_raw_send is not None
            and now - self._last_raw_send < self.send_interval
        ):
            self._throttled += 1
            return False

        if not await self._publish(sample.to_json()):
            return False
        self._last_raw_send = now
        self._last_raw_pressed = sample.pressed
        return True

    async def forward_command(self, command: RoverCommand) -> bool:
        """Forward a discrete command if it differs from the last one sent."""
        if command == self._last_command:
            return False

        if not await self._publish(command.value):
            return False
        logger.info(f"Rover command: {command.value}")
        self._last_command = command
        return True

    async def forward_controller(self, sample: StickSample) -> bool:
        """Classify a controller stick sample and forward the resulting command."""
        return await self.forward_command(self.classify(sample.x, sample.y))

    async def stop(self) -> bool:
        """
        Force a STOP regardless of the last command, then clear the state.

        Used when the driving viewer disconnects and on shutdown.
        """
        sent = await self._publish(RoverCommand.STOP.value)
        self.reset()
        if sent:
            self._last_command = RoverCommand.STOP
        return sent

    def reset(self) -> None:
        self._last_command = None
        self._last_raw_send = None
        self._last_raw_pressed = None

    async def _publish(self, payload: str) -> bool:
        if self.sink is None:
            self._dropped += 1
            logger.debug(f"No MQTT sink configured, dropping: {payload}")
            return False
        try:
            ok = await self.sink.publish(self.topic, payload)
        except SinkUnavailable as e:
            self._dropped += 1
            if self._sink_available:
                logger.warning(f"Dropping rover payloads: {e}")
            self._sink_available = False
            return False
        self._sink_available = True
        if ok:
            self._forwarded += 1
        else:
            self._dropped += 1
        return ok

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "topic": self.topic,
            "last_command": self._last_command.value if self._last_command else None,
            "forwarded": self._forwarded,
            "throttled": self._throttled,
            "dropped": self._dropped,
        }
