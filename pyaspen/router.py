"""Aspen router session - connection lifecycle, routing state and polling.

This module contains the high-level router abstraction with:
- The routing table (output -> level -> input) built from router notifications
- Connection lifecycle (connect, reconfigure, close) and status reporting
- Routing commands with argument validation
- Polling for a full status dump, since push updates can be missed

This class implements RouterResponseListener to receive callbacks from the transport."""

import asyncio
import logging
from asyncio import Task
from typing import Any, Iterable, Optional, Union

from pyaspen.listener import MultiplexingListener, RouterListener, RouterResponseListener
from pyaspen.protocol import (
    UPDATE_MODE_AUTO_WITH_RESPONSE,
    AllLevelsChanged,
    ConnectionStatus,
    CrosspointChanged,
    DeviceError,
    Level,
    RouterProtocol,
    RoutingEvent,
)

DEFAULT_PORT = 23
DEFAULT_POLL_TIME = 10

# Aspen frames have up to 72 inputs and outputs
MAX_ID = 72

ANY_LEVEL = "any"

# Tag passed to RouterListener.state_changed after every routing update
FEEDBACK_ROUTING_MATCH = "routing_match"


def _output_key(output_id) -> Optional[int]:
    try:
        return int(output_id)
    except (TypeError, ValueError):
        return None


def _level_key(level) -> Optional[Level]:
    try:
        return Level.parse(level)
    except (TypeError, ValueError):
        return None


class RoutingTable:
    """Routing as last reported by the router.

    Only ever updated from parsed notifications, never from commands we sent,
    so it lags behind a routing command until the router confirms it.
    """

    def __init__(self):
        self._routes: dict[int, dict[Level, int]] = {}

    def apply_crosspoint_changed(self, output_id: int, input_id: int, level):
        self._routes.setdefault(int(output_id), {})[Level.parse(level)] = int(input_id)

    def apply_all_levels_changed(self, output_id: int, input_id: int):
        # Replaces any split routing the output had before
        self._routes[int(output_id)] = {level: int(input_id) for level in Level}

    def apply(self, event: RoutingEvent) -> bool:
        """Apply a parsed event. Returns True if it was a routing update."""
        if isinstance(event, CrosspointChanged):
            self.apply_crosspoint_changed(event.output, event.input, event.level)
            return True
        if isinstance(event, AllLevelsChanged):
            self.apply_all_levels_changed(event.output, event.input)
            return True
        return False

    def get_input(self, output_id, level) -> Optional[int]:
        """Input routed to an output on one level, or None if never reported
        or the level is not one of level1..level3."""
        levels = self._routes.get(_output_key(output_id))
        if not levels:
            return None
        return levels.get(_level_key(level))

    def is_routed(self, output_id, input_id: int, level=ANY_LEVEL) -> bool:
        """Whether input_id is routed to output_id, on one level or on any level."""
        levels = self._routes.get(_output_key(output_id))
        if not levels:
            return False
        if level == ANY_LEVEL:
            return input_id in levels.values()
        return levels.get(_level_key(level)) == input_id

    def get_levels(self, output_id) -> dict[Level, int]:
        return dict(self._routes.get(_output_key(output_id), {}))

    @property
    def outputs(self) -> list[int]:
        return sorted(self._routes)

    def snapshot(self) -> dict[int, dict[Level, int]]:
        return {output_id: dict(levels) for output_id, levels in self._routes.items()}

    def reset(self):
        self._routes.clear()

    def __contains__(self, output_id) -> bool:
        return _output_key(output_id) in self._routes

    def __len__(self) -> int:
        return len(self._routes)


class RouterResponseHandler(RouterResponseListener):
    """Applies transport callbacks to the router's state."""

    def __init__(self, router: "AspenRouter"):
        self._router = router

    def connected(self):
        """Forward connection event to router."""
        self._router._on_connected()

    def disconnected(self, exc: Optional[Exception]):
        """Forward disconnection event to router."""
        self._router._on_disconnected(exc)

    def event_received(self, event):
        if self._router.routing.apply(event):
            self._router._on_routing_updated(event.output)
        elif isinstance(event, DeviceError):
            self._router._on_device_error(event.raw_message)


class AspenRouter:
    """Session with one Aspen matrix router.

    Connects, subscribes to push updates, polls for a full status dump every
    poll_time seconds and keeps the routing table current. Nothing here
    reconnects on its own: call async_connect or async_reconfigure again.
    """

    def __init__(self, hostname, port=DEFAULT_PORT, enable_polling=True,
                 poll_time=DEFAULT_POLL_TIME, update_mode=UPDATE_MODE_AUTO_WITH_RESPONSE,
                 poll_on_connect=True):
        """Initialize router session.

        Args:
            hostname: Router hostname or IP
            port: TCP port (usually 23)
            enable_polling: Whether to request a full status dump periodically
            poll_time: Seconds between status polls
            update_mode: Push update mode sent on every connect (2 = auto update with response)
            poll_on_connect: Whether to request a status dump as soon as the connection is up
        """
        self._hostname: str = hostname
        self._port: int = port
        self._enable_polling = enable_polling
        self._poll_time = poll_time
        self._update_mode = update_mode
        self._poll_on_connect = poll_on_connect

        self._logger = logging.getLogger(__name__)

        self._max_id: int = MAX_ID

        self.routing = RoutingTable()

        # Connection state
        self._status: ConnectionStatus = ConnectionStatus.DISCONNECTED
        self._status_detail: Optional[str] = None
        self._protocol: Optional[RouterProtocol] = None

        # Tasks
        self._poll_task: Optional[Task[Any]] = None

        self._multiplex_callback = MultiplexingListener()
        self._response_handler = RouterResponseHandler(self)

    # ========== Connection lifecycle handlers ==========

    def _on_connected(self):
        """Called by RouterResponseHandler when connection is established."""
        self._logger.info(f"Router connected: {self._hostname}:{self._port}")
        self._set_status(ConnectionStatus.OK)

        # A new connection starts with no knowledge of the routing
        self.routing.reset()
        self._multiplex_callback.state_changed(FEEDBACK_ROUTING_MATCH)

        self.send_command(RouterProtocol.command_update_mode(self._update_mode))
        if self._poll_on_connect:
            self.query_status()
        if self._enable_polling:
            self._start_polling()

    def _on_disconnected(self, exc: Optional[Exception]):
        """Called by RouterResponseHandler when the socket has gone away."""
        self._stop_polling()
        self._protocol = None
        if exc is None:
            self._logger.info(f"Disconnected from {self._hostname}")
            self._set_status(ConnectionStatus.DISCONNECTED)
        else:
            # Routing table is kept so the last known state can still be shown
            message = str(exc) or exc.__class__.__name__
            self._logger.error(f"Connection to {self._hostname} lost: {message}")
            self._set_status(ConnectionStatus.ERROR, message)

    def _on_routing_updated(self, output_id: int):
        levels = {int(level): input_id for level, input_id in self.routing.get_levels(output_id).items()}
        self._logger.debug(f"Output {output_id} routing now {levels}")
        self._multiplex_callback.routing_changed(output_id, levels)
        self._multiplex_callback.state_changed(FEEDBACK_ROUTING_MATCH)

    def _on_device_error(self, message: str):
        self._logger.warning(f"Router error: {message}")
        self._set_status(ConnectionStatus.ERROR, message)
        self._multiplex_callback.device_error(message)

    def _set_status(self, status: ConnectionStatus, detail: Optional[str] = None):
        self._status = status
        self._status_detail = detail
        self._multiplex_callback.status_changed(status, detail)

    # ========== Public API ==========

    @property
    def hostname(self) -> str:
        return self._hostname

    @property
    def port(self) -> int:
        return self._port

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def status_detail(self) -> Optional[str]:
        return self._status_detail

    @property
    def connected(self) -> bool:
        return self._protocol is not None and self._protocol.connected

    def register_listener(self, listener: RouterListener):
        """Register external listener for router events."""
        self._multiplex_callback.register_listener(listener)

    def unregister_listener(self, listener: RouterListener):
        """Unregister external listener."""
        self._multiplex_callback.unregister_listener(listener)

    async def async_connect(self):
        """Connect to the router, replacing any existing connection.

        A failed connect is reported as an ERROR status, not raised.
        """
        self._teardown()
        self._set_status(ConnectionStatus.CONNECTING)

        protocol = RouterProtocol(self._response_handler)
        self._protocol = protocol
        self._logger.info(f"Connecting to {self._hostname}:{self._port}")
        loop = asyncio.get_running_loop()
        try:
            await loop.create_connection(
                lambda: protocol, host=self._hostname, port=self._port
            )
        except OSError as e:
            if self._protocol is not protocol:
                # Closed or reconnected while this attempt was in flight
                return
            self._protocol = None
            message = str(e) or e.__class__.__name__
            self._logger.error(f"Connection to {self._hostname}:{self._port} failed: {message}")
            self._set_status(ConnectionStatus.ERROR, message)

    async def async_reconfigure(self, hostname, port=DEFAULT_PORT):
        """Point the session at a new router and reconnect."""
        self._logger.info(f"Reconfigured to {hostname}:{port}")
        self._hostname = hostname
        self._port = port
        await self.async_connect()

    def close(self):
        """Close the connection and stop polling. Safe to call in any state."""
        self._teardown()
        if self._status != ConnectionStatus.DISCONNECTED:
            self._logger.info(f"Disconnected from {self._hostname}, not reconnecting")
            self._set_status(ConnectionStatus.DISCONNECTED)

    def _teardown(self):
        self._stop_polling()
        if self._protocol is not None:
            self._protocol.close()
            self._protocol = None

    def send_command(self, command: str) -> bool:
        """Send a raw command. Dropped with a warning if not connected; never raises."""
        protocol = self._protocol
        if protocol is not None and protocol.connected:
            self._logger.debug(f"Sending: {command}")
            try:
                if protocol.write(command):
                    return True
            except UnicodeEncodeError:
                self._logger.error(f"Command is not ASCII, not sent: {command!r}")
                return False
        self._logger.warning(f"Socket not connected, dropping: {command}")
        self._multiplex_callback.command_dropped(command)
        return False

    def route_all_levels(self, output_id: int, input_id: int) -> bool:
        """Route an input to an output on all levels."""
        if not (self._valid_id("output_id", output_id) and self._valid_id("input_id", input_id)):
            return False
        self._logger.info(f"Route request - Output: {output_id} to input: {input_id} (all levels)")
        return self.send_command(RouterProtocol.command_route_all_levels(output_id, input_id))

    def route_crosspoint(self, output_id: int, input_id: int, level: int) -> bool:
        """Route an input to an output on one level (0 = all levels)."""
        if not (self._valid_id("output_id", output_id) and self._valid_id("input_id", input_id)):
            return False
        if not self._valid_id("level", level, minimum=0, maximum=len(Level)):
            return False
        self._logger.info(f"Route request - Output: {output_id} to input: {input_id} on level {level}")
        return self.send_command(RouterProtocol.command_route_crosspoint(output_id, input_id, level))

    def route_levels(self, output_id: int, inputs: Union[str, Iterable[int]]) -> bool:
        """Route one input per level in a single command, e.g. "3,4,0".

        Input 0 leaves that level unrouted.
        """
        if not self._valid_id("output_id", output_id):
            return False
        input_ids = self._parse_inputs(inputs)
        if input_ids is None:
            return False
        self._logger.info(f"Route request - Output: {output_id} to inputs: {input_ids} by level")
        return self.send_command(RouterProtocol.command_route_levels(output_id, input_ids))

    def query_status(self) -> bool:
        """Ask the router for a full status dump."""
        return self.send_command(RouterProtocol.command_status_poll())

    def get_input(self, output_id, level) -> Optional[int]:
        return self.routing.get_input(output_id, level)

    def get_levels(self, output_id) -> dict[Level, int]:
        return self.routing.get_levels(output_id)

    def is_routed(self, output_id, input_id: int, level=ANY_LEVEL) -> bool:
        return self.routing.is_routed(output_id, input_id, level)

    async def wait_for_routing(self, timeout: float = 5.0) -> bool:
        """Wait until the router has reported at least one output."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while loop.time() - start_time < timeout:
            if len(self.routing):
                return True
            await asyncio.sleep(0.1)
        self._logger.warning(f"Timeout waiting for routing status from {self._hostname}")
        return False

    # ========== Validation ==========

    def _valid_id(self, name: str, value, minimum: int = 1, maximum: Optional[int] = None) -> bool:
        if maximum is None:
            maximum = self._max_id
        if isinstance(value, bool) or not isinstance(value, int) or not (minimum <= value <= maximum):
            self._logger.error(f"Invalid {name} {value}, must be {minimum}-{maximum}")
            return False
        return True

    def _parse_inputs(self, inputs) -> Optional[list[int]]:
        if isinstance(inputs, str):
            try:
                input_ids = [int(token) for token in inputs.split(",")]
            except ValueError:
                self._logger.error(f"Invalid input list {inputs!r}, must be comma-separated numbers")
                return None
        else:
            input_ids = list(inputs)
        if not (1 <= len(input_ids) <= len(Level)):
            self._logger.error(f"Invalid input list {inputs!r}, must have 1-{len(Level)} entries")
            return None
        for input_id in input_ids:
            if not self._valid_id("input_id", input_id, minimum=0):
                return None
        return input_ids

    # ========== Polling ==========

    def _start_polling(self):
        self._stop_polling()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())
        self._logger.info("Poll task started (interval=%ss)", self._poll_time)

    def _stop_polling(self):
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    async def _poll(self):
        """Periodically request a full status dump to catch changes the push updates missed."""
        while True:
            try:
                await asyncio.sleep(self._poll_time)
                self._logger.debug("poll - requesting full status")
                self.query_status()
            except asyncio.CancelledError:
                self._logger.debug("Poll task cancelled")
                break
