from __future__ import annotations

import logging

import pytest
from websocket import ABNF, WebSocketBadStatusException

from conftest import DeadlineStop, FakeConnector, FakeTransport
from phxload.config import ConnectionConfig
from phxload.metrics import DIAL_TIME, MESSAGES_RECEIVED, SESSION_DURATION, MetricSink
from phxload.protocol import JOIN_EVENT, PhoenixMessage
from phxload.session import CloseReason, ConnectionSession, SessionState

URL = "ws://localhost:4000/socket/websocket?user_id=1&vsn=2.0.0"


def make_session(clock, sink, config, transport=None, connector=None) -> ConnectionSession:
    if connector is None:
        connector = FakeConnector(lambda url: transport, clock=clock)
    return ConnectionSession(
        vu_id=1,
        url=URL,
        config=config,
        sink=sink,
        connector=connector,
        clock=clock,
        wall_clock=clock.wall,
    )


def decoded(transport: FakeTransport) -> list[PhoenixMessage]:
    return [PhoenixMessage.decode(raw) for raw in transport.sent]


def pings(transport: FakeTransport) -> list[PhoenixMessage]:
    return [message for message in decoded(transport) if message.event == "ping"]


def test_open_records_dial_time_and_joins_topic(clock, sink, config):
    transport = FakeTransport(clock, events=[(0.1625, (ABNF.OPCODE_CLOSE, b""))])
    session = make_session(clock, sink, config, transport)

    result = session.run()

    assert result.status == 101
    assert result.upgraded
    assert result.dial_time_ms == pytest.approx(62.5)
    assert sink.trend(DIAL_TIME) == [pytest.approx(62.5)]

    join = decoded(transport)[0]
    assert join.event == JOIN_EVENT
    assert join.topic == "order:123"
    assert join.payload == {}
    assert join.join_ref is None and join.ref is None
    assert transport.sent[0] == '[null,null,"order:123","phx_join",{}]'


def test_dial_sample_is_recorded_before_any_send(clock, sink, config):
    seen: list[int] = []
    transport = FakeTransport(
        clock,
        events=[(1.2, (ABNF.OPCODE_CLOSE, b""))],
        on_send=lambda payload: seen.append(len(sink.trend(DIAL_TIME))),
    )

    make_session(clock, sink, config, transport).run()

    assert len(seen) == 3
    assert set(seen) == {1}


def test_ping_count_matches_lifetime_over_interval(clock, sink):
    config = ConnectionConfig(message_interval_ms=500, lifetime_ms=2_000)
    transport = FakeTransport(clock)
    session = make_session(clock, sink, config, transport)

    result = session.run()

    expected = config.lifetime_ms // config.message_interval_ms
    assert abs(len(pings(transport)) - expected) <= 1
    assert result.reason is CloseReason.LIFETIME
    assert transport.close_calls == 1
    assert session.state is SessionState.CLOSED
    assert session.timers.active == []


def test_ping_payload_carries_identity_and_timestamp(clock, sink, config):
    transport = FakeTransport(clock, events=[(0.7, (ABNF.OPCODE_CLOSE, b""))])

    make_session(clock, sink, config, transport).run()

    (ping,) = pings(transport)
    assert ping.topic == "order:123"
    assert ping.payload["user"] == 1
    assert ping.payload["ts"] == int((1_700_000_000.0 + 0.5625) * 1000)


def test_shutdown_stops_open_session(clock, sink, config):
    transport = FakeTransport(clock)
    session = make_session(clock, sink, config, transport)

    result = session.run(DeadlineStop(clock, 2.0))

    assert 3 <= len(pings(transport)) <= 4
    assert result.reason is CloseReason.SHUTDOWN
    assert transport.close_calls == 1
    assert not transport.connected
    assert session.timers.active == []
    assert len(sink.trend(DIAL_TIME)) == 1


def test_remote_close_cancels_ping_timer(clock, sink):
    config = ConnectionConfig(message_interval_ms=2_000)
    transport = FakeTransport(clock, events=[(3.0625, (ABNF.OPCODE_CLOSE, b"\x03\xe8"))])
    session = make_session(clock, sink, config, transport)

    result = session.run()

    assert result.reason is CloseReason.REMOTE
    assert session.state is SessionState.CLOSED
    assert len(pings(transport)) == 1
    assert session.ping_timer.cancelled
    assert session.lifetime_timer.cancelled
    assert session.timers.active == []
    assert transport.shutdown_calls >= 1
    assert transport.close_calls == 0
    assert sink.trend(SESSION_DURATION) == [pytest.approx(3000.0)]


def test_connection_closed_exception_counts_as_remote_close(clock, sink, config):
    from websocket import WebSocketConnectionClosedException

    transport = FakeTransport(
        clock, events=[(0.3, WebSocketConnectionClosedException("Connection to remote host was lost."))]
    )

    result = make_session(clock, sink, config, transport).run()

    assert result.reason is CloseReason.REMOTE
    assert result.error is None


def test_transport_error_closes_session(clock, sink, config, caplog):
    transport = FakeTransport(clock, events=[(1.0, ConnectionResetError("connection reset by peer"))])
    session = make_session(clock, sink, config, transport)

    with caplog.at_level(logging.INFO, logger="phxload.session"):
        result = session.run()

    assert result.reason is CloseReason.ERROR
    assert "connection reset by peer" in result.error
    assert "VU 1 error: connection reset by peer" in caplog.text
    assert session.timers.active == []
    assert transport.shutdown_calls >= 1


def test_failed_send_closes_session(clock, sink, config):
    transport = FakeTransport(clock, fail_sends_after=1)
    session = make_session(clock, sink, config, transport)

    result = session.run()

    assert result.reason is CloseReason.ERROR
    assert result.messages_sent == 1
    assert session.timers.active == []


def test_inbound_frames_are_logged_and_counted(clock, sink, config, caplog):
    reply = b'[null,null,"order:123","phx_reply",{"status":"ok","response":{}}]'
    transport = FakeTransport(
        clock,
        events=[
            (0.1, (ABNF.OPCODE_TEXT, reply)),
            (0.15, (ABNF.OPCODE_PING, b"")),
            (0.2, (ABNF.OPCODE_CLOSE, b"")),
        ],
    )

    with caplog.at_level(logging.INFO, logger="phxload.session"):
        result = make_session(clock, sink, config, transport).run()

    assert result.messages_received == 1
    assert sink.counters()[MESSAGES_RECEIVED] == 1
    assert f"VU 1 got message: {reply.decode()}" in caplog.text


def test_close_is_idempotent(clock, sink, config, caplog):
    transport = FakeTransport(clock, events=[(0.2, (ABNF.OPCODE_CLOSE, b""))])
    session = make_session(clock, sink, config, transport)

    with caplog.at_level(logging.INFO, logger="phxload.session"):
        session.run()
        shutdowns = transport.shutdown_calls
        assert session.close() is False
        assert session.close(CloseReason.SHUTDOWN) is False

    assert session.reason is CloseReason.REMOTE
    assert transport.close_calls == 0
    assert transport.shutdown_calls == shutdowns
    assert caplog.text.count("VU 1 closed") == 1
    assert session.timers.active == []
    assert len(sink.trend(SESSION_DURATION)) == 1


def test_unreachable_endpoint_is_a_connect_failure(clock, sink, config, caplog):
    def refuse(url, timeout=None):
        raise ConnectionRefusedError(111, "Connection refused")

    session = make_session(clock, sink, config, connector=refuse)
    with caplog.at_level(logging.INFO, logger="phxload.session"):
        result = session.run()

    assert result.reason is CloseReason.CONNECT_FAILED
    assert result.status is None
    assert not result.upgraded
    assert result.dial_time_ms is None
    assert sink.trend(DIAL_TIME) == []
    assert session.wait_closed(0)
    assert "connect failed" in caplog.text
    assert "VU 1 closed" not in caplog.text


def test_rejected_handshake_keeps_http_status(clock, sink, config):
    def reject(url, timeout=None):
        raise WebSocketBadStatusException("Handshake status 403 Forbidden", 403)

    result = make_session(clock, sink, config, connector=reject).run()

    assert result.reason is CloseReason.CONNECT_FAILED
    assert result.status == 403
    assert sink.trend(DIAL_TIME) == []


def test_non_upgrade_status_is_not_opened(clock, sink, config):
    transport = FakeTransport(clock, status=200)

    result = make_session(clock, sink, config, transport).run()

    assert result.reason is CloseReason.BAD_STATUS
    assert result.status == 200
    assert transport.sent == []
    assert transport.shutdown_calls == 1
    assert sink.trend(DIAL_TIME) == []


def test_session_cannot_be_run_twice(clock, sink, config):
    transport = FakeTransport(clock, events=[(0.2, (ABNF.OPCODE_CLOSE, b""))])
    session = make_session(clock, sink, config, transport)
    session.run()

    with pytest.raises(RuntimeError):
        session.run()


def test_receive_never_blocks_past_next_timer(clock, sink):
    config = ConnectionConfig(message_interval_ms=100, poll_interval_s=0.25)
    transport = FakeTransport(clock, events=[(0.5, (ABNF.OPCODE_CLOSE, b""))])

    make_session(clock, sink, config, transport).run()

    assert max(transport.timeouts) <= 0.1 + 1e-9


def test_wait_closed_reports_open_session(clock, config):
    session = ConnectionSession(1, URL, config, MetricSink(), connector=lambda url, timeout=None: None)
    assert session.state is SessionState.CONNECTING
    assert not session.wait_closed(0)


def test_handshake_finishing_after_shutdown_does_not_open(clock, sink, config, caplog):
    transport = FakeTransport(clock)
    session = make_session(clock, sink, config, transport)

    with caplog.at_level(logging.INFO, logger="phxload.session"):
        result = session.run(DeadlineStop(clock, 0.0))

    assert result.reason is CloseReason.SHUTDOWN
    assert result.status == 101
    assert result.dial_time_ms is None
    assert sink.trend(DIAL_TIME) == []
    assert "ws_sessions" not in sink.counters()
    assert transport.sent == []
    assert transport.shutdown_calls == 1
    assert session.timers.active == []
    assert session.wait_closed(0)
    assert "VU 1 connected" not in caplog.text
