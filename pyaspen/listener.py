from abc import ABC, abstractmethod
from typing import List, Optional
import logging


class RouterResponseListener(ABC):
    """Callbacks from RouterProtocol to the session that owns it."""

    @abstractmethod
    def connected(self):
        pass

    @abstractmethod
    def disconnected(self, exc: Optional[Exception]):
        """Called when the socket goes away. exc is None on a clean end of stream."""
        pass

    @abstractmethod
    def event_received(self, event):
        """Called with every parsed message: CrosspointChanged, AllLevelsChanged,
        DeviceError or Unrecognized."""
        pass


class RouterListener(ABC):
    """Observer of an AspenRouter session."""

    @abstractmethod
    def status_changed(self, status, detail: Optional[str] = None):
        """Called with a ConnectionStatus whenever the session changes state."""
        pass

    @abstractmethod
    def state_changed(self, tag: str):
        """Called after every applied routing update so feedbacks can be re-evaluated."""
        pass

    def routing_changed(self, output_id: int, levels: dict[int, int]):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass

    def device_error(self, message: str):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass

    def command_dropped(self, command: str):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass


class MultiplexingListener(RouterListener):

    _listeners: List[RouterListener]

    def __init__(self):
        self._listeners = []
        self._logger = logging.getLogger(__name__)

    def _each(self, method: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                # One broken observer must not break the session or the others
                self._logger.error(f"Exception in {method}() callback: {e}", exc_info=True)

    def status_changed(self, status, detail: Optional[str] = None):
        self._each("status_changed", status, detail)

    def state_changed(self, tag: str):
        self._each("state_changed", tag)

    def routing_changed(self, output_id: int, levels: dict[int, int]):
        self._each("routing_changed", output_id, levels)

    def device_error(self, message: str):
        self._each("device_error", message)

    def command_dropped(self, command: str):
        self._each("command_dropped", command)

    def register_listener(self, listener: RouterListener):
        self._listeners.append(listener)

    def unregister_listener(self, listener: RouterListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        else:
            self._logger.info("Listener isn't registered")


class LoggingListener(RouterListener):

    def __init__(self, logger=logging):
        self.logger = logger

    def status_changed(self, status, detail: Optional[str] = None):
        if detail:
            self.logger.info(f"Status: {status.value} ({detail})")
        else:
            self.logger.info(f"Status: {status.value}")

    def state_changed(self, tag: str):
        self.logger.debug(f"Feedback {tag} needs re-evaluation")

    def routing_changed(self, output_id: int, levels: dict[int, int]):
        routes = ", ".join(f"L{int(level)}={input_id}" for level, input_id in sorted(levels.items()))
        self.logger.info(f"Output {output_id} routing: {routes}")

    def device_error(self, message: str):
        self.logger.warning(f"Router reported: {message}")

    def command_dropped(self, command: str):
        self.logger.warning(f"Command dropped, not connected: {command}")
