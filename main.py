"""
Main command-line interface for pyaspen.

This script provides a CLI to interact with a Sierra Aspen matrix router.
"""

import argparse
import asyncio
import logging

from pyaspen.listener import LoggingListener
from pyaspen.protocol import ConnectionStatus, Level
from pyaspen.router import DEFAULT_POLL_TIME, DEFAULT_PORT, AspenRouter


async def _connect(hostname: str, port: int, poll_time: float) -> AspenRouter:
    print(f"Connecting to Aspen router at {hostname}:{port}...")
    router = AspenRouter(hostname, port, poll_time=poll_time)
    await router.async_connect()
    if router.status != ConnectionStatus.OK:
        print(f"Error: could not connect ({router.status_detail})")
    return router


async def show_status(hostname: str, port: int, poll_time: float):
    """Query and display the routing of every reported output."""
    router = await _connect(hostname, port, poll_time)
    if router.status != ConnectionStatus.OK:
        return

    print("Waiting for routing status...")
    await router.wait_for_routing()
    # The dump arrives as one notification per output, give it time to finish
    await asyncio.sleep(2)

    print("\nRouting Status:")
    print("-" * 60)
    for output_id in router.routing.outputs:
        levels = router.get_levels(output_id)
        columns = []
        for level in Level:
            input_id = levels.get(level)
            columns.append(f"{level.key}: {input_id if input_id is not None else '-':>3}")
        print(f"Output {output_id:2d}:  " + "  ".join(columns))
    if not len(router.routing):
        print("No routing reported")
    print("-" * 60)

    router.close()


async def send_route(hostname: str, port: int, poll_time: float, route):
    """Send one routing command and wait for it to go out."""
    router = await _connect(hostname, port, poll_time)
    if router.status != ConnectionStatus.OK:
        return

    if route(router):
        # Wait for the router to echo the new routing
        await asyncio.sleep(2)
        print("Done")
    else:
        print("Error: command not sent")

    router.close()


async def monitor(hostname: str, port: int, poll_time: float, seconds: float):
    """Stay connected and log every routing change."""
    router = AspenRouter(hostname, port, poll_time=poll_time)
    router.register_listener(LoggingListener(logging.getLogger("pyaspen.monitor")))
    await router.async_connect()
    try:
        await asyncio.sleep(seconds)
    finally:
        router.close()


def main():
    parser = argparse.ArgumentParser(description="Control Sierra Aspen matrix router")
    parser.add_argument("--host", default="192.168.0.100", help="Router hostname or IP (default: 192.168.0.100)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Router port (default: {DEFAULT_PORT})")
    parser.add_argument("--poll-time", type=float, default=DEFAULT_POLL_TIME,
                        help=f"Seconds between status polls (default: {DEFAULT_POLL_TIME})")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Status command
    subparsers.add_parser("status", help="Show routing of all outputs")

    # Route command
    route_parser = subparsers.add_parser("route", help="Route an input to an output on all levels")
    route_parser.add_argument("output", type=int, help="Output (1-72)")
    route_parser.add_argument("input", type=int, help="Input (1-72)")

    # Crosspoint command
    crosspoint_parser = subparsers.add_parser("crosspoint", help="Route an input to an output on one level")
    crosspoint_parser.add_argument("output", type=int, help="Output (1-72)")
    crosspoint_parser.add_argument("input", type=int, help="Input (1-72)")
    crosspoint_parser.add_argument("level", type=int, help="Level (1-3 or 0 for all levels)")

    # Levels command
    levels_parser = subparsers.add_parser("levels", help="Route inputs to an output by level")
    levels_parser.add_argument("output", type=int, help="Output (1-72)")
    levels_parser.add_argument("inputs", help="Comma-separated input per level, e.g. 3,4,0")

    # Monitor command
    monitor_parser = subparsers.add_parser("monitor", help="Log routing changes as they happen")
    monitor_parser.add_argument("--seconds", type=float, default=60.0, help="How long to monitor (default: 60)")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    if args.command == "status":
        asyncio.run(show_status(args.host, args.port, args.poll_time))
    elif args.command == "route":
        asyncio.run(send_route(args.host, args.port, args.poll_time,
                               lambda router: router.route_all_levels(args.output, args.input)))
    elif args.command == "crosspoint":
        asyncio.run(send_route(args.host, args.port, args.poll_time,
                               lambda router: router.route_crosspoint(args.output, args.input, args.level)))
    elif args.command == "levels":
        asyncio.run(send_route(args.host, args.port, args.poll_time,
                               lambda router: router.route_levels(args.output, args.inputs)))
    elif args.command == "monitor":
        try:
            asyncio.run(monitor(args.host, args.port, args.poll_time, args.seconds))
        except KeyboardInterrupt:
            pass
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
