import logging

import pytest

from pyaspen.protocol import (
    MAX_BUFFERED_CHARS,
    AllLevelsChanged,
    CrosspointChanged,
    DeviceError,
    Level,
    RouterProtocol,
    Unrecognized,
    parse_response,
    split_messages,
)


def test_encode_commands() -> None:
    assert RouterProtocol.command_route_all_levels(7, 3) == "**Y7,3!!"
    assert RouterProtocol.command_route_crosspoint(5, 12, 2) == "**X5,12,2!!"
    assert RouterProtocol.command_route_crosspoint(5, 12, 0) == "**X5,12,0!!"
    assert RouterProtocol.command_route_levels(4, "3,4,0") == "**V4,3,4,0!!"
    assert RouterProtocol.command_route_levels(4, [3, 4, 0]) == "**V4,3,4,0!!"
    assert RouterProtocol.command_status_poll() == "**S!!"
    assert RouterProtocol.command_update_mode() == "**U2!!"
    assert RouterProtocol.command_update_mode(1) == "**U1!!"


def test_crosspoint_level_enum_is_encoded_as_number() -> None:
    assert RouterProtocol.command_route_crosspoint(1, 2, Level.LEVEL3) == "**X1,2,3!!"


@pytest.mark.parametrize(
    "line, expected",
    [
        ("** X5,12,2 !!", CrosspointChanged(5, 12, Level.LEVEL2)),
        ("  **X5,12,2!!\r\n", CrosspointChanged(5, 12, Level.LEVEL2)),
        ("** X 72 , 1 , 3 !!", CrosspointChanged(72, 1, Level.LEVEL3)),
        ("** Y7,3 !!", AllLevelsChanged(7, 3)),
        ("**Y07,003!!", AllLevelsChanged(7, 3)),
    ],
)
def test_parse_routing_notifications(line, expected) -> None:
    assert parse_response(line) == expected


def test_parsed_crosspoint_level_is_a_level() -> None:
    event = parse_response("** X5,12,1 !!")
    assert event.level is Level.LEVEL1


@pytest.mark.parametrize(
    "line",
    [
        "** X abc !!",
        "** X5,12 !!",
        "** X5,12,0 !!",
        "** X5,12,4 !!",
        "** Y7 !!",
        "** S !!",
        "Aspen ready",
        "",
    ],
)
def test_parse_unrecognized(line) -> None:
    event = parse_response(line)
    assert isinstance(event, Unrecognized)
    assert event.raw_message == line.strip()


@pytest.mark.parametrize("line", ["ERROR: bad syntax", "** ERROR 3 !!", "** X5,ERROR !!"])
def test_parse_device_error(line) -> None:
    assert parse_response(line) == DeviceError(line)


def test_split_messages() -> None:
    assert split_messages("** X1,2,3 !!** Y4,5 !!") == (["** X1,2,3 !!", "** Y4,5 !!"], "")
    assert split_messages("** X1,2,3 !!\r\n** Y4") == (["** X1,2,3 !!"], "** Y4")
    assert split_messages("ERROR: bad syntax\r\n** Y4,5 !!") == (["ERROR: bad syntax", "** Y4,5 !!"], "")
    assert split_messages("** Y4,5 !! trailing") == (["** Y4,5 !!", "trailing"], "")
    assert split_messages("\r\n") == ([], "")


def test_split_messages_truncated_frame_does_not_swallow_next() -> None:
    assert split_messages("** X1,2\r\n** Y4,5 !!") == (["** X1,2", "** Y4,5 !!"], "")
    assert split_messages("** X1,2** Y4,5 !!") == (["** X1,2", "** Y4,5 !!"], "")


def test_split_messages_keeps_lone_trailing_asterisk() -> None:
    assert split_messages("** Y1,1 !!*") == (["** Y1,1 !!"], "*")
    assert split_messages("ready *") == (["ready"], "*")


def test_split_messages_prefix_inside_unframed_text() -> None:
    assert split_messages("note ** here\r\n** Y4,5 !!") == (["note ** here", "** Y4,5 !!"], "")


def test_protocol_dispatches_each_message(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.connection_made(transport)

    protocol.data_received(b"** X5,12,2 !!** Y7,3 !!\r\nERROR: bad syntax\r\n** X abc !!")

    assert response_recorder.events == [
        ("connected",),
        CrosspointChanged(5, 12, Level.LEVEL2),
        AllLevelsChanged(7, 3),
        DeviceError("ERROR: bad syntax"),
        Unrecognized("** X abc !!"),
    ]


def test_protocol_joins_message_split_across_packets(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.connection_made(transport)

    protocol.data_received(b"** X1,2")
    protocol.data_received(b",3 !")
    assert response_recorder.events == [("connected",)]

    protocol.data_received(b"!")
    assert response_recorder.events[-1] == CrosspointChanged(1, 2, Level.LEVEL3)


def test_protocol_truncated_frame_then_valid_frame_across_packets(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.connection_made(transport)

    protocol.data_received(b"** X1,2")
    protocol.data_received(b"** Y4,5 !!")

    assert response_recorder.events == [
        ("connected",),
        Unrecognized("** X1,2"),
        AllLevelsChanged(4, 5),
    ]
    assert protocol._received_message == ""


def test_protocol_packet_boundary_between_prefix_asterisks(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.connection_made(transport)

    protocol.data_received(b"** Y1,1 !!*")
    assert protocol._received_message == "*"

    protocol.data_received(b"* Y4,5 !!")

    assert response_recorder.events == [
        ("connected",),
        AllLevelsChanged(1, 1),
        AllLevelsChanged(4, 5),
    ]


def test_protocol_discards_oversized_partial_message(response_recorder, transport, caplog) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.connection_made(transport)

    with caplog.at_level(logging.WARNING, logger="pyaspen.protocol"):
        protocol.data_received(b"**" + b"A" * (MAX_BUFFERED_CHARS + 10))

    assert protocol._received_message == ""
    assert "without a terminator" in caplog.text

    protocol.data_received(b"** Y1,1 !!")
    assert response_recorder.events[-1] == AllLevelsChanged(1, 1)


def test_protocol_write_and_close(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    assert protocol.write("**S!!") is False

    protocol.connection_made(transport)
    assert protocol.connected
    assert protocol.write("**S!!") is True
    assert transport.written == [b"**S!!"]

    protocol.close()
    assert transport.closed
    assert not protocol.connected
    assert protocol.write("**S!!") is False

    # Callbacks after a local close are not forwarded
    protocol.data_received(b"** Y1,1 !!")
    protocol.connection_lost(None)
    assert response_recorder.events == [("connected",)]


def test_protocol_reports_connection_lost(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.connection_made(transport)
    error = ConnectionResetError("Connection reset by peer")

    protocol.connection_lost(error)

    assert response_recorder.events[-1] == ("disconnected", error)
    assert not protocol.connected


def test_protocol_closed_before_connection_made(response_recorder, transport) -> None:
    protocol = RouterProtocol(response_recorder)
    protocol.close()

    protocol.connection_made(transport)

    assert transport.closed
    assert response_recorder.events == []


def test_level_parse() -> None:
    assert Level.parse("level2") is Level.LEVEL2
    assert Level.parse("3") is Level.LEVEL3
    assert Level.parse(1) is Level.LEVEL1
    assert Level.LEVEL1.key == "level1"
    with pytest.raises(ValueError):
        Level.parse("level9")
