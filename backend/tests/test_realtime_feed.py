import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import json

import pytest

from conftest import FakeWebSocket, RejectedHandshake, wait_for
from models.broker_events import (
    AccountUpdateEvent,
    BrokerEventKind,
    FillEvent,
    PositionUpdateEvent,
    parse_broker_event,
)
from services.broker.realtime import (
    BrokerRealtimeFeed,
    ConnectionState,
    build_hub_url,
    decode_records,
    encode_record,
)

HANDSHAKE_OK = encode_record({})


class _Connector:
    def __init__(self, *sockets, error=None):
        self.sockets = list(sockets)
        self.urls: list[str] = []
        self.error = error

    async def __call__(self, url: str):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.sockets.pop(0)


def _feed(connector, **kwargs):
    return BrokerRealtimeFeed(
        "https://rtc.test/hubs/user",
        reconnect_delay=kwargs.pop("reconnect_delay", 0.01),
        keep_alive_interval=kwargs.pop("keep_alive_interval", 60),
        handshake_timeout=1,
        connector=connector,
    )


def _invocation(target, *arguments):
    return encode_record({"type": 1, "target": target, "arguments": list(arguments)})


def test_build_hub_url_uses_wss_and_token():
    assert (
        build_hub_url("https://rtc.topstepx.com/hubs/user", "a b")
        == "wss://rtc.topstepx.com/hubs/user?access_token=a%20b"
    )


def test_decode_records_splits_on_separator():
    raw = encode_record({"type": 6}) + encode_record({"type": 1, "target": "Fill"})
    assert decode_records(raw) == [{"type": 6}, {"type": 1, "target": "Fill"}]


class TestConnect:
    @pytest.mark.asyncio
    async def test_handshake_then_subscriptions(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        connector = _Connector(ws)
        feed = _feed(connector)
        states = []
        feed.on_state_change(states.append)

        assert await feed.connect("tok", [234567]) is True

        assert connector.urls == ["wss://rtc.test/hubs/user?access_token=tok"]
        records = [decode_records(m)[0] for m in ws.sent]
        assert records[0] == {"protocol": "json", "version": 1}
        targets = [(r["target"], r["arguments"]) for r in records[1:]]
        assert targets == [
            ("SubscribeAccounts", []),
            ("SubscribeOrders", [234567]),
            ("SubscribePositions", [234567]),
            ("SubscribeTrades", [234567]),
        ]
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

        await feed.stop()
        assert feed.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_connect_requires_token(self):
        feed = _feed(_Connector())
        with pytest.raises(ValueError):
            await feed.connect("")

    @pytest.mark.asyncio
    async def test_failed_first_attempt_returns_false_and_keeps_retrying(self):
        connector = _Connector(error=OSError("unreachable"))
        feed = _feed(connector)

        assert await feed.connect("tok") is False
        await wait_for(lambda: len(connector.urls) >= 3)

        await feed.stop()

    @pytest.mark.asyncio
    async def test_token_rejection_reported(self):
        connector = _Connector(error=RejectedHandshake(401))
        feed = _feed(connector)
        rejected = []
        feed.on_auth_rejected(lambda: rejected.append(True))

        assert await feed.connect("expired") is False

        assert rejected
        await feed.stop()


class TestEvents:
    @pytest.mark.asyncio
    async def test_fill_dispatched_to_handler(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        feed = _feed(_Connector(ws))
        fills = []
        feed.on(BrokerEventKind.FILL, fills.append)
        await feed.connect("tok", [234567])

        ws.push(
            _invocation(
                "GatewayUserTrade",
                {"action": 0, "data": {"accountId": 234567, "id": 9, "price": 5800.25, "size": 2}},
            )
        )
        await wait_for(lambda: fills)

        event = fills[0]
        assert isinstance(event, FillEvent)
        assert event.account_id == 234567
        assert event.fill.price == 5800.25
        await feed.stop()

    @pytest.mark.asyncio
    async def test_event_without_handler_is_dropped(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        feed = _feed(_Connector(ws))
        fills = []
        feed.on(BrokerEventKind.FILL, fills.append)
        await feed.connect("tok", [1])

        ws.push(_invocation("AccountUpdate", {"accountId": 1, "balance": 10}))
        ws.push(_invocation("Fill", {"accountId": 1, "id": 1}))
        await wait_for(lambda: fills)

        assert len(fills) == 1
        assert feed.is_connected
        await feed.stop()

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_break_feed(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        feed = _feed(_Connector(ws))
        seen = []

        def handler(event):
            seen.append(event)
            raise RuntimeError("boom")

        feed.on(BrokerEventKind.FILL, handler)
        await feed.connect("tok")

        ws.push(_invocation("Fill", {"accountId": 1, "id": 1}))
        ws.push(_invocation("Fill", {"accountId": 1, "id": 2}))
        await wait_for(lambda: len(seen) == 2)

        assert feed.is_connected
        await feed.stop()

    @pytest.mark.asyncio
    async def test_malformed_event_is_skipped_without_reconnect(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        connector = _Connector(ws)
        feed = _feed(connector)
        fills = []
        feed.on(BrokerEventKind.FILL, fills.append)
        await feed.connect("tok", [1])

        ws.push(_invocation("GatewayUserTrade", {"accountId": 1, "price": "not-a-number"}))
        ws.push(_invocation("GatewayUserTrade", {"accountId": 1, "id": 2, "price": 10.5}))
        ws.push(_invocation("PositionUpdate", {"accountId": 1, "positions": [{"size": "many"}]}))
        ws.push(_invocation("Fill", {"accountId": 1, "id": 3}))
        await wait_for(lambda: len(fills) == 2)

        assert [f.fill.id for f in fills] == [2, 3]
        assert len(connector.urls) == 1
        assert ws.closed is False
        assert feed.reconnections == 0
        await feed.stop()

    @pytest.mark.asyncio
    async def test_ping_records_ignored(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        feed = _feed(_Connector(ws))
        fills = []
        feed.on(BrokerEventKind.FILL, fills.append)
        await feed.connect("tok")

        ws.push(encode_record({"type": 6}) + _invocation("Fill", {"accountId": 3, "id": 1}))
        await wait_for(lambda: fills)

        assert fills[0].account_id == 3
        await feed.stop()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self):
        first = FakeWebSocket([HANDSHAKE_OK])
        second = FakeWebSocket([HANDSHAKE_OK])
        connector = _Connector(first, second)
        feed = _feed(connector)
        states = []
        feed.on_state_change(states.append)
        await feed.connect("tok")

        first.drop()
        await wait_for(lambda: len(connector.urls) == 2 and feed.is_connected)

        assert feed.reconnections == 1
        assert ConnectionState.DISCONNECTED in states
        assert ConnectionState.RECONNECTING in states
        await feed.stop()

    @pytest.mark.asyncio
    async def test_close_without_reconnect_reports_auth_rejected(self):
        ws = FakeWebSocket([HANDSHAKE_OK])
        connector = _Connector(ws, error=None)
        feed = _feed(connector, reconnect_delay=5)
        rejected = []
        feed.on_auth_rejected(lambda: rejected.append(True))
        await feed.connect("tok")

        ws.push(encode_record({"type": 7, "error": "Unauthorized", "allowReconnect": False}))
        await wait_for(lambda: rejected)

        await feed.stop()


class TestParseBrokerEvent:
    def test_account_update_takes_id_field(self):
        event = parse_broker_event("GatewayUserAccount", {"data": {"id": 55, "balance": 1.5}})
        assert isinstance(event, AccountUpdateEvent)
        assert event.account_id == 55

    def test_realized_pnl_property(self):
        event = parse_broker_event("AccountUpdate", {"accountId": 1, "realizedPnl": "12.5"})
        assert event.realized_pnl == 12.5

    def test_position_update_without_list_keeps_none(self):
        event = parse_broker_event("PositionUpdate", {"accountId": 1, "contractId": "X"})
        assert isinstance(event, PositionUpdateEvent)
        assert event.positions is None

    def test_unknown_method_is_none(self):
        assert parse_broker_event("SomethingElse", {"accountId": 1}) is None
        assert parse_broker_event("Fill", "not-a-dict") is None


def test_encode_record_is_compact_json():
    assert encode_record({"type": 6}) == json.dumps({"type": 6}, separators=(",", ":")) + "\x1e"
