"""pyaspen Python Package

Python library for controlling Sierra Aspen matrix routers.
"""

from pyaspen.protocol import ConnectionStatus, Level
from pyaspen.router import AspenRouter, RoutingTable

__all__ = ["AspenRouter", "ConnectionStatus", "Level", "RoutingTable"]
