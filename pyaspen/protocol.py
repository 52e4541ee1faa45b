import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Iterable, Optional, Union

from pyaspen.listener import RouterResponseListener

# Aspen routers accept plain ASCII commands wrapped as **<body>!!
# There is no checksum, length prefix or escaping.
COMMAND_PREFIX = "**"
COMMAND_TERMINATOR = "!!"

# U2 asks the router to push every change and answer our commands
UPDATE_MODE_AUTO_WITH_RESPONSE = 2

# Crosspoint notification: ** X5,12,2 !! means output 5 takes input 12 on level 2
CROSSPOINT_RESPONSE = re.compile(
    r"\*\*\s*X\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*!!"
)

# All levels notification: ** Y7,3 !! means output 7 takes input 3 on every level
ALL_LEVELS_RESPONSE = re.compile(r"\*\*\s*Y\s*(\d+)\s*,\s*(\d+)\s*!!")

# One framed message, starting at the last "**" before its "!!" so that a
# truncated frame does not swallow the next one
FRAMED_MESSAGE = re.compile(r"\*\*(?:(?!\*\*).)*?!!", re.DOTALL)

ERROR_MARKER = "ERROR"

# An unterminated frame longer than this is garbage, not a slow packet
MAX_BUFFERED_CHARS = 1024


class Level(IntEnum):
    """Independent signal paths that can be routed separately."""
    LEVEL1 = 1
    LEVEL2 = 2
    LEVEL3 = 3

    @property
    def key(self) -> str:
        return f"level{self.value}"

    @classmethod
    def parse(cls, value: Union["Level", int, str]) -> "Level":
        """Accept a Level, its number, or its key ("level2" or "2")."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text.startswith("level"):
                text = text[len("level"):]
            value = int(text)
        return cls(value)


class ConnectionStatus(Enum):
    CONNECTING = "connecting"
    OK = "ok"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class CrosspointChanged:
    output: int
    input: int
    level: Level


@dataclass(frozen=True)
class AllLevelsChanged:
    output: int
    input: int


@dataclass(frozen=True)
class DeviceError:
    raw_message: str


@dataclass(frozen=True)
class Unrecognized:
    raw_message: str


RoutingEvent = Union[CrosspointChanged, AllLevelsChanged, DeviceError, Unrecognized]


def _crosspoint_event(match: re.Match) -> Optional[RoutingEvent]:
    try:
        level = Level(int(match.group(3)))
    except ValueError:
        # Level 0 (AFV) is only meaningful when sending
        return None
    return CrosspointChanged(int(match.group(1)), int(match.group(2)), level)


def _all_levels_event(match: re.Match) -> Optional[RoutingEvent]:
    return AllLevelsChanged(int(match.group(1)), int(match.group(2)))


# Evaluated in order, first hit wins
RESPONSE_RULES = (
    (CROSSPOINT_RESPONSE, _crosspoint_event),
    (ALL_LEVELS_RESPONSE, _all_levels_event),
)


def parse_response(line: str) -> RoutingEvent:
    """Classify one message received from the router.

    Never raises: anything that is not a routing notification or an error
    report comes back as Unrecognized.
    """
    message = line.strip()
    for pattern, build_event in RESPONSE_RULES:
        match = pattern.fullmatch(message)
        if match:
            event = build_event(match)
            if event is not None:
                return event
    if ERROR_MARKER in message:
        return DeviceError(message)
    return Unrecognized(message)


def split_messages(text: str) -> tuple[list[str], str]:
    """Cut received text into framed messages.

    Returns the messages (framed ones plus any stray unframed text, so that a
    bare ERROR line is still seen) and the unterminated tail starting at the
    last "**" (or a lone trailing "*"), which should be prepended to the next
    chunk.
    """
    messages = []
    position = 0
    for match in FRAMED_MESSAGE.finditer(text):
        stray = text[position:match.start()].strip()
        if stray:
            messages.append(stray)
        messages.append(match.group(0))
        position = match.end()

    tail = text[position:]
    remainder = ""
    start = tail.rfind(COMMAND_PREFIX)
    if start == -1 and tail.endswith("*"):
        # Packet boundary fell between the two asterisks of a prefix
        start = len(tail) - 1
    if start != -1:
        remainder = tail[start:]
        tail = tail[:start]
    stray = tail.strip()
    if stray:
        messages.append(stray)
    return messages, remainder


class RouterProtocol(asyncio.Protocol):
    """Transport side of an Aspen router session.

    Frames and parses inbound bytes and forwards the results to a
    RouterResponseListener. One instance serves exactly one connection.
    """
    _received_message: str
    _closing: bool

    def __init__(self, callback: RouterResponseListener):
        self._logger = logging.getLogger(__name__)
        self._callback = callback
        self._transport: Optional[asyncio.Transport] = None
        self._received_message = ""
        self._closing = False
        self.peer_name = None

    @property
    def connected(self) -> bool:
        return (
            self._transport is not None
            and not self._closing
            and not self._transport.is_closing()
        )

    def connection_made(self, transport):
        """Method from asyncio.Protocol"""
        self._transport = transport
        if self._closing:
            # Closed while the connect was still in progress
            transport.close()
            return
        self.peer_name = transport.get_extra_info("peername")
        self._logger.info(f"Connection Made: {self.peer_name}")
        self._callback.connected()

    def connection_lost(self, exc):
        """Method from asyncio.Protocol"""
        self._transport = None
        self._received_message = ""
        if self._closing:
            self._logger.debug("Connection closed locally")
            return
        self._callback.disconnected(exc)

    def data_received(self, data):
        """Method from asyncio.Protocol"""
        self._logger.debug(f"data_received client: {data}")
        if self._closing:
            return

        decoded = self._received_message + data.decode("ascii", errors="ignore")
        messages, self._received_message = split_messages(decoded)
        if len(self._received_message) > MAX_BUFFERED_CHARS:
            self._logger.warning(
                f"Discarding {len(self._received_message)} buffered characters without a terminator"
            )
            self._received_message = ""

        for message in messages:
            self._logger.debug(f"Response: {message}")
            self._process_received_packet(message)

    def _process_received_packet(self, message: str):
        event = parse_response(message)
        if isinstance(event, Unrecognized):
            self._logger.debug(f"Unhandled message received: {message}")
        self._callback.event_received(event)

    def write(self, message: str) -> bool:
        """Write one command; returns False if the transport is gone."""
        if not self.connected:
            return False
        self._transport.write(message.encode("ascii"))
        return True

    def close(self):
        """Close the transport and stop forwarding its callbacks."""
        self._closing = True
        if self._transport is not None:
            self._transport.close()

    # ========== Command encoding ==========

    @staticmethod
    def _command(body: str) -> str:
        return f"{COMMAND_PREFIX}{body}{COMMAND_TERMINATOR}"

    @staticmethod
    def command_route_all_levels(output_id: int, input_id: int) -> str:
        """Route an input to an output on every level (audio follows video)."""
        return RouterProtocol._command(f"Y{output_id},{input_id}")

    @staticmethod
    def command_route_crosspoint(output_id: int, input_id: int, level: int) -> str:
        """Route an input to an output on one level; level 0 means all levels."""
        return RouterProtocol._command(f"X{output_id},{input_id},{int(level)}")

    @staticmethod
    def command_route_levels(output_id: int, inputs: Union[str, Iterable[int]]) -> str:
        """Route one input per level, in level order, in a single command."""
        if not isinstance(inputs, str):
            inputs = ",".join(str(input_id) for input_id in inputs)
        return RouterProtocol._command(f"V{output_id},{inputs}")

    @staticmethod
    def command_status_poll() -> str:
        return RouterProtocol._command("S")

    @staticmethod
    def command_update_mode(mode: int = UPDATE_MODE_AUTO_WITH_RESPONSE) -> str:
        return RouterProtocol._command(f"U{mode}")
