"""Tests for rxjunglebus.subscription - stream wiring, cursor repair, flow control."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import control_payload, tx_payload
from rxjunglebus.backpressure import PAUSE_COMMAND, START_COMMAND
from rxjunglebus.channels import StreamKind
from rxjunglebus.codec import ControlStatusCode, Transaction
from rxjunglebus.mechanism import FetchError
from rxjunglebus.transport import ChannelState

CONTROL = "query:abc:control"
MEMPOOL = "query:abc:mempool"


def noop(*args):
    return None


# =============================================================================
# Attaching streams
# =============================================================================


@pytest.mark.asyncio
async def test_publish_callback_attaches_control_and_data(transport, make_subscription):
    sub = make_subscription("abc", 100, on_publish=noop).subscribe()

    assert transport.created_channels == [CONTROL, "query:abc:100"]
    assert sub.control_subscribed and sub.data_subscribed
    assert not sub.mempool_subscribed
    await sub.close()


@pytest.mark.asyncio
async def test_mempool_only_attaches_mempool(transport, make_subscription):
    sub = make_subscription("abc", 100, on_mempool=noop).subscribe()

    assert transport.created_channels == [MEMPOOL]
    assert sub.mempool_subscribed
    assert sub.handle(StreamKind.DATA) is None
    await sub.close()


@pytest.mark.asyncio
async def test_all_streams_attach_mempool_first(transport, make_subscription):
    sub = make_subscription("abc", 7, on_publish=noop, on_mempool=noop).subscribe()
    assert transport.created_channels == [MEMPOOL, CONTROL, "query:abc:7"]
    await sub.close()


@pytest.mark.asyncio
async def test_subscribe_while_disconnected_waits_for_connection(
    logger_provider, scheduler
):
    from rxjunglebus import JungleBusSubscription, LocalTransport

    transport = LocalTransport(logger_provider=logger_provider)
    sub = JungleBusSubscription(
        transport,
        "abc",
        100,
        on_publish=noop,
        scheduler=scheduler,
        logger_provider=logger_provider,
    ).subscribe()

    assert sub.handle(StreamKind.DATA).state == ChannelState.SUBSCRIBING
    assert not sub.data_subscribed

    transport.connect()
    assert sub.data_subscribed and sub.control_subscribed
    await sub.close()


@pytest.mark.asyncio
async def test_resubscribe_tears_down_previous_handles(transport, make_subscription):
    sub = make_subscription("abc", 100, on_publish=noop).subscribe()
    old_data = sub.handle(StreamKind.DATA)

    sub.subscribe()

    assert old_data.state == ChannelState.UNSUBSCRIBED
    assert sub.handle(StreamKind.DATA) is not old_data
    assert transport.get_subscription("query:abc:100") is sub.handle(StreamKind.DATA)
    await sub.close()


# =============================================================================
# Control stream
# =============================================================================


@pytest.mark.asyncio
async def test_server_error_goes_to_on_error_only(transport, make_subscription):
    statuses, errors = [], []
    sub = make_subscription(
        "abc", 100, on_publish=noop, on_status=statuses.append, on_error=errors.append
    ).subscribe()

    transport.publish(CONTROL, control_payload(101, "bad request"))
    await sub.queue(StreamKind.CONTROL).join()

    assert len(errors) == 1
    assert errors[0].type == "bad request"
    assert errors[0].code == 101
    assert errors[0].channel == CONTROL
    assert statuses == []
    assert sub.queue(StreamKind.CONTROL).delivered == 0
    assert sub.last_error is errors[0]
    await sub.close()


@pytest.mark.asyncio
async def test_block_done_advances_cursor_before_delivery(transport, make_subscription):
    gate = asyncio.Event()
    statuses = []

    async def on_status(message):
        await gate.wait()
        statuses.append(message)

    sub = make_subscription("abc", 100, on_publish=noop, on_status=on_status).subscribe()

    transport.publish(CONTROL, control_payload(200, "block done", block=1000))
    assert sub.get_current_block() == 1000
    await asyncio.sleep(0)
    assert statuses == []

    gate.set()
    await sub.queue(StreamKind.CONTROL).join()
    assert [m.block for m in statuses] == [1000]
    assert statuses[0].code is ControlStatusCode.BLOCK_DONE
    await sub.close()


@pytest.mark.asyncio
async def test_status_without_callback_is_dropped(transport, make_subscription):
    sub = make_subscription("abc", 100, on_publish=noop).subscribe()

    transport.publish(CONTROL, control_payload(100, "waiting"))
    transport.publish(CONTROL, control_payload(200, "block done", block=101))

    assert sub.queue(StreamKind.CONTROL).size() == 0
    assert sub.get_current_block() == 101
    await sub.close()


@pytest.mark.asyncio
async def test_reorg_keeps_cursor(transport, make_subscription):
    statuses = []
    sub = make_subscription(
        "abc", 500, on_publish=noop, on_status=statuses.append
    ).subscribe()

    transport.publish(CONTROL, control_payload(300, "reorg", block=480))
    await sub.queue(StreamKind.CONTROL).join()

    assert sub.get_current_block() == 500
    assert statuses[0].code is ControlStatusCode.REORG
    await sub.close()


# =============================================================================
# Reconnect with a stale cursor
# =============================================================================


@pytest.mark.asyncio
async def test_reconnect_rederives_data_channel_from_live_cursor(
    transport, make_subscription
):
    sub = make_subscription("abc", 500, on_publish=noop).subscribe()
    transport.publish(CONTROL, control_payload(200, "block done", block=600))
    old_data = sub.handle(StreamKind.DATA)

    transport.drop_connection()

    assert transport.created_channels.count("query:abc:600") == 1
    assert transport.created_channels == [CONTROL, "query:abc:500", "query:abc:600"]
    assert sub.handle(StreamKind.DATA).channel == "query:abc:600"
    assert transport.get_subscription("query:abc:500") is None
    assert old_data.state == ChannelState.UNSUBSCRIBED
    assert not sub.data_subscribed

    transport.connect()
    assert sub.data_subscribed
    assert sub.handle(StreamKind.DATA).state == ChannelState.SUBSCRIBED
    assert transport.created_channels.count("query:abc:600") == 1
    await sub.close()


@pytest.mark.asyncio
async def test_reconnect_with_current_cursor_keeps_handle(transport, make_subscription):
    sub = make_subscription("abc", 500, on_publish=noop).subscribe()
    data = sub.handle(StreamKind.DATA)

    transport.drop_connection()
    transport.connect()

    assert sub.handle(StreamKind.DATA) is data
    assert transport.created_channels == [CONTROL, "query:abc:500"]
    assert sub.data_subscribed
    await sub.close()


@pytest.mark.asyncio
async def test_stale_handle_publications_are_not_delivered(transport, make_subscription):
    received = []
    sub = make_subscription("abc", 500, on_publish=received.append).subscribe()
    old_data = sub.handle(StreamKind.DATA)
    transport.publish(CONTROL, control_payload(200, "block done", block=600))
    transport.drop_connection()
    transport.connect()

    old_data._emit_publication(tx_payload("stale"))
    transport.publish("query:abc:600", tx_payload("fresh", body=b"\x01"))
    await sub.queue(StreamKind.DATA).join()

    assert [tx.id for tx in received] == ["fresh"]
    await sub.close()


# =============================================================================
# Data and mempool streams
# =============================================================================


@pytest.mark.asyncio
async def test_data_and_mempool_delivery(transport, make_subscription):
    blocks, mempool = [], []
    sub = make_subscription(
        "abc", 100, on_publish=blocks.append, on_mempool=mempool.append
    ).subscribe()

    transport.publish("query:abc:100", tx_payload("b1", body=b"\xaa", proof=b"\x01", block=100))
    transport.publish(MEMPOOL, tx_payload("m1", body=b"\xbb"))
    await sub.queue(StreamKind.DATA).join()
    await sub.queue(StreamKind.MEMPOOL).join()

    assert blocks == [
        Transaction(
            id="b1",
            block_hash="00" * 32,
            block_height=100,
            block_time=1700000000,
            transaction="aa",
            merkle_proof="01",
        )
    ]
    assert mempool[0].id == "m1"
    assert mempool[0].merkle_proof == ""
    await sub.close()


@pytest.mark.asyncio
async def test_slow_data_consumer_does_not_block_control(transport, make_subscription):
    gate = asyncio.Event()
    statuses = []

    async def on_publish(tx):
        await gate.wait()

    sub = make_subscription(
        "abc", 100, on_publish=on_publish, on_status=statuses.append
    ).subscribe()
    transport.publish("query:abc:100", tx_payload("b1", body=b"\x01"))
    transport.publish(CONTROL, control_payload(100, "waiting"))
    await sub.queue(StreamKind.CONTROL).join()

    assert [s.status for s in statuses] == ["waiting"]
    gate.set()
    await sub.close()


@pytest.mark.asyncio
async def test_missing_body_is_fetched_before_delivery(transport, make_subscription):
    received = []
    fetch = AsyncMock(return_value=b"\x01\x02\x03")
    sub = make_subscription(
        "abc", 100, on_publish=received.append, fetch_transaction=fetch
    ).subscribe()

    transport.publish("query:abc:100", tx_payload("b1"))
    transport.publish("query:abc:100", tx_payload("b2", body=b"\xff"))
    await sub.queue(StreamKind.DATA).join()

    fetch.assert_awaited_once_with("b1")
    assert [tx.transaction for tx in received] == ["010203", "ff"]
    await sub.close()


@pytest.mark.asyncio
async def test_lite_mode_skips_fetch(transport, make_subscription):
    received = []
    fetch = AsyncMock(return_value=b"\x01")
    sub = make_subscription(
        "abc", 100, on_publish=received.append, fetch_transaction=fetch, lite_mode=True
    ).subscribe()

    transport.publish("query:abc:100", tx_payload("b1"))
    await sub.queue(StreamKind.DATA).join()

    fetch.assert_not_awaited()
    assert received[0].transaction == ""
    await sub.close()


@pytest.mark.asyncio
async def test_fetch_failure_is_reported_and_next_entry_delivered(
    transport, make_subscription
):
    received, errors = [], []

    async def fetch(tx_id):
        if tx_id == "b1":
            raise FetchError(RuntimeError("HTTP 404"), source="test")
        return b"\x02"

    sub = make_subscription(
        "abc",
        100,
        on_publish=received.append,
        on_error=errors.append,
        fetch_transaction=fetch,
    ).subscribe()

    transport.publish("query:abc:100", tx_payload("b1"))
    transport.publish("query:abc:100", tx_payload("b2"))
    await sub.queue(StreamKind.DATA).join()

    assert [tx.id for tx in received] == ["b2"]
    assert len(errors) == 1
    assert errors[0].type == "delivery"
    assert isinstance(errors[0].exception, FetchError)
    await sub.close()


@pytest.mark.asyncio
async def test_decode_error_is_reported_and_stream_stays_up(transport, make_subscription):
    received, errors = [], []
    sub = make_subscription(
        "abc", 100, on_publish=received.append, on_error=errors.append
    ).subscribe()

    transport.publish("query:abc:100", "{broken")
    transport.publish("query:abc:100", tx_payload("b1", body=b"\x01"))
    await sub.queue(StreamKind.DATA).join()

    assert errors[0].type == "decode"
    assert errors[0].channel == "query:abc:100"
    assert [tx.id for tx in received] == ["b1"]
    assert sub.data_subscribed
    await sub.close()


@pytest.mark.asyncio
async def test_transport_error_is_forwarded_without_unsubscribing(
    transport, make_subscription
):
    errors = []
    sub = make_subscription("abc", 100, on_publish=noop, on_error=errors.append).subscribe()

    transport.fail("query:abc:100", "transport", code=3, message="timeout")

    assert errors[0].type == "transport"
    assert errors[0].code == 3
    assert sub.last_error is errors[0]
    assert sub.data_subscribed
    await sub.close()


@pytest.mark.asyncio
async def test_async_error_callback_is_awaited(transport, make_subscription):
    errors = []

    async def on_error(ctx):
        await asyncio.sleep(0)
        errors.append(ctx)

    sub = make_subscription("abc", 100, on_publish=noop, on_error=on_error).subscribe()
    transport.publish(CONTROL, control_payload(101, "bad request"))
    for _ in range(3):
        await asyncio.sleep(0)

    assert [e.type for e in errors] == ["bad request"]
    await sub.close()


@pytest.mark.asyncio
async def test_raising_callback_does_not_detach_listeners(transport, make_subscription):
    on_error = MagicMock(side_effect=RuntimeError("consumer bug"))
    sub = make_subscription("abc", 100, on_publish=noop, on_error=on_error).subscribe()

    transport.publish(CONTROL, control_payload(101, "first"))
    transport.publish(CONTROL, control_payload(101, "second"))

    assert on_error.call_count == 2
    await sub.close()


# =============================================================================
# Backpressure
# =============================================================================


@pytest.mark.asyncio
async def test_backpressure_pause_and_resume(transport, make_subscription, scheduler):
    gate = asyncio.Event()
    received, statuses = [], []

    async def on_publish(tx):
        await gate.wait()
        received.append(tx.id)

    sub = make_subscription(
        "abc", 100, on_publish=on_publish, on_status=statuses.append, max_queue_size=4
    ).subscribe()
    data = "query:abc:100"

    transport.publish(data, tx_payload("t0", body=b"\x00"))
    await asyncio.sleep(0)  # consumer now suspended on t0

    for i in range(1, 11):
        transport.publish(data, tx_payload(f"t{i}", body=b"\x00"))

    assert sub.queue(StreamKind.DATA).size() == 10
    assert transport.commands(data) == [PAUSE_COMMAND]
    assert sub.paused
    paused = [s for s in statuses if s.code is ControlStatusCode.PAUSED]
    assert len(paused) == 1
    assert paused[0].block == 100
    assert paused[0].status == "paused subscription"
    assert paused[0].message == "paused subscription to catch up"

    # still above half: the recheck re-arms
    scheduler.advance_to(2.0)
    assert transport.commands(data) == [PAUSE_COMMAND]

    gate.set()
    await sub.queue(StreamKind.DATA).join()
    scheduler.advance_to(4.0)

    assert transport.commands(data) == [PAUSE_COMMAND, START_COMMAND]
    assert not sub.paused
    assert received == [f"t{i}" for i in range(11)]
    await sub.close()


@pytest.mark.asyncio
async def test_control_and_mempool_never_trigger_pause(transport, make_subscription):
    gate = asyncio.Event()

    async def slow(message):
        await gate.wait()

    sub = make_subscription(
        "abc", 100, on_publish=noop, on_status=slow, on_mempool=slow, max_queue_size=2
    ).subscribe()
    for _ in range(10):
        transport.publish(CONTROL, control_payload(100, "waiting"))
        transport.publish(MEMPOOL, tx_payload("m", body=b"\x01"))

    assert not sub.paused
    assert transport.commands("query:abc:100") == []
    gate.set()
    await sub.close()


# =============================================================================
# Teardown
# =============================================================================


@pytest.mark.asyncio
async def test_unsubscribe_twice_is_a_noop(transport, make_subscription, monkeypatch):
    remove = MagicMock(wraps=transport.remove_subscription)
    monkeypatch.setattr(transport, "remove_subscription", remove)
    sub = make_subscription("abc", 100, on_publish=noop, on_mempool=noop).subscribe()

    sub.unsubscribe()
    assert remove.call_count == 3
    sub.unsubscribe()
    assert remove.call_count == 3

    assert sub.handle(StreamKind.DATA) is None
    assert not (sub.data_subscribed or sub.control_subscribed or sub.mempool_subscribed)
    assert transport.get_subscription(CONTROL) is None
    assert not transport.publish(CONTROL, control_payload(100, "waiting"))
    await sub.close()


@pytest.mark.asyncio
async def test_unsubscribe_cancels_recheck_timer(transport, make_subscription, scheduler):
    gate = asyncio.Event()

    async def on_publish(tx):
        await gate.wait()

    sub = make_subscription("abc", 100, on_publish=on_publish, max_queue_size=1).subscribe()
    transport.publish("query:abc:100", tx_payload("t0", body=b"\x00"))
    await asyncio.sleep(0)
    transport.publish("query:abc:100", tx_payload("t1", body=b"\x00"))
    transport.publish("query:abc:100", tx_payload("t2", body=b"\x00"))
    assert sub.paused

    sub.unsubscribe()
    assert not sub.paused
    gate.set()
    await sub.queue(StreamKind.DATA).join()
    scheduler.advance_to(10.0)

    assert transport.commands("query:abc:100") == [PAUSE_COMMAND]
    await sub.close()


@pytest.mark.asyncio
async def test_close_is_terminal(transport, make_subscription):
    sub = make_subscription("abc", 100, on_publish=noop).subscribe()
    await sub.close()
    await sub.close()

    assert sub.closed
    assert transport.get_subscription(CONTROL) is None
    with pytest.raises(RuntimeError):
        sub.subscribe()
