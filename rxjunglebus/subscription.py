"""Logical subscription over the control, data and mempool channels.

One :class:`JungleBusSubscription` owns up to three channel handles for a
single query id, decodes every publication, routes it through a per-stream
:class:`DeliveryQueue` and keeps track of the block cursor.

Control flow::

    transport ──publication──► decode ──► queue[kind] ──drain──► callback
                                 │            │
                                 │            └─(data) BackpressureController
                                 └─(control) ERROR ─► on_error
                                             BLOCK_DONE ─► current_block

When the data handle falls back from ``subscribed`` to ``subscribing`` (the
connection dropped and the transport is retrying) and the block cursor has
moved on in the meantime, the data handle is replaced by one named after the
live cursor so the retry does not resume from a stale height.
"""

import asyncio
import dataclasses
import inspect
from functools import partial
from typing import Any, Awaitable, Callable

from opentelemetry._logs import LoggerProvider
from opentelemetry.metrics import MeterProvider, NoOpMeterProvider
from reactivex.abc import SchedulerBase
from reactivex.scheduler.eventloop import AsyncIOScheduler

from .backpressure import BackpressureController
from .channels import (
    ActiveStreams,
    StreamKind,
    control_channel,
    data_channel,
    mempool_channel,
    parse_cursor,
)
from .codec import (
    ControlMessage,
    ControlStatusCode,
    Transaction,
    WireProtocol,
    wire_format_factory,
)
from .delivery import DeliveryQueue
from .mechanism import DecodeError, TransportError
from .telemetry import LogContext, MetricsHelper, component_logger
from .transport import (
    ChannelHandle,
    ChannelState,
    PublicationContext,
    StateContext,
    SubscribedContext,
    SubscriptionErrorContext,
    Transport,
)
from .utils import bytes_to_hex, get_short_error_info, invoke_callback

TransactionCallback = Callable[[Transaction], Any]
StatusCallback = Callable[[ControlMessage], Any]
ErrorCallback = Callable[[SubscriptionErrorContext], Any]
FetchTransaction = Callable[[str], Awaitable[bytes]]


class JungleBusSubscription:
    """Stream-level state for one subscription id.

    Args:
        transport: Connection the channel handles are created on.
        subscription_id: Query id registered on the server.
        from_block: Initial block cursor.
        on_publish: Receives confirmed transactions. Enables the control and
            data streams.
        on_status: Receives control messages other than errors.
        on_error: Receives :class:`SubscriptionErrorContext` reports.
        on_mempool: Receives unconfirmed transactions. Enables the mempool
            stream.
        protocol: Wire encoding of the publications.
        max_queue_size: Data queue depth that triggers a pause request.
        fetch_transaction: Coroutine returning the raw body of a transaction
            by id; used to fill in bodies the server did not inline.
        lite_mode: Deliver transactions as received, without fetching
            missing bodies.
        scheduler: Scheduler for the backpressure recheck timer. Defaults to
            an AsyncIOScheduler on the running loop.
        recheck_interval: Seconds between resume checks while paused.
        logger_provider: OTel logger provider; the console default if None.
        meter_provider: OTel meter provider; metrics are dropped if None.

    Callbacks may be plain functions or coroutine functions. Must be created
    and driven from the thread running the event loop.
    """

    def __init__(
        self,
        transport: Transport,
        subscription_id: str,
        from_block: int = 0,
        on_publish: TransactionCallback | None = None,
        on_status: StatusCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_mempool: TransactionCallback | None = None,
        protocol: WireProtocol = "json",
        max_queue_size: int = 20000,
        fetch_transaction: FetchTransaction | None = None,
        lite_mode: bool = False,
        scheduler: SchedulerBase | None = None,
        recheck_interval: float = 2.0,
        logger_provider: LoggerProvider | None = None,
        meter_provider: MeterProvider | None = None,
    ):
        self._transport = transport
        self.subscription_id = subscription_id
        self._current_block = from_block
        self._on_publish = on_publish
        self._on_status = on_status
        self._on_error = on_error
        self._on_mempool = on_mempool
        self._fetch_transaction = fetch_transaction
        self.lite_mode = lite_mode
        self.protocol = protocol
        self._format = wire_format_factory(protocol)

        self._logger = component_logger(
            logger_provider,
            "rxjunglebus.subscription",
            source="JungleBusSubscription",
            context=LogContext(
                service="rxjunglebus",
                component="subscription",
                subscription_id=subscription_id,
            ),
        )

        metrics = MetricsHelper(
            meter_provider or NoOpMeterProvider(), "rxjunglebus.subscription"
        )
        self._inbound = metrics.counter(
            "junglebus.publications.inbound",
            description="Publications received per stream",
        )
        self._decode_errors = metrics.counter(
            "junglebus.decode.errors",
            description="Publications that could not be decoded",
        )
        self._pauses = metrics.counter(
            "junglebus.flow.pauses",
            description="Pause requests sent to the producer",
        )

        self._handles: dict[StreamKind, ChannelHandle] = {}
        self._subscribed: dict[StreamKind, bool] = {kind: False for kind in StreamKind}
        self._last_error: SubscriptionErrorContext | None = None
        self._pending: set[asyncio.Future] = set()
        self._closed = False

        self._queues: dict[StreamKind, DeliveryQueue] = {
            StreamKind.DATA: DeliveryQueue(
                self._deliver_transaction,
                name="data",
                logger=self._logger.with_context(stream="data"),
                capacity=max_queue_size,
                on_failure=partial(self._on_delivery_failure, StreamKind.DATA),
            ),
            StreamKind.CONTROL: DeliveryQueue(
                self._deliver_status,
                name="control",
                logger=self._logger.with_context(stream="control"),
                capacity=max_queue_size,
                on_failure=partial(self._on_delivery_failure, StreamKind.CONTROL),
            ),
            StreamKind.MEMPOOL: DeliveryQueue(
                self._deliver_mempool,
                name="mempool",
                logger=self._logger.with_context(stream="mempool"),
                capacity=max_queue_size,
                on_failure=partial(self._on_delivery_failure, StreamKind.MEMPOOL),
            ),
        }

        if scheduler is None:
            scheduler = AsyncIOScheduler(asyncio.get_running_loop())
        self._controller = BackpressureController(
            depth=self._queues[StreamKind.DATA].size,
            publish=self._publish_data_command,
            on_paused=self._notify_paused,
            scheduler=scheduler,
            logger=self._logger.with_context(stream="data", source="Backpressure"),
            max_queue_size=max_queue_size,
            recheck_interval=recheck_interval,
        )

    # ---------------- public surface ---------------- #

    @property
    def data_subscribed(self) -> bool:
        return self._subscribed[StreamKind.DATA]

    @property
    def control_subscribed(self) -> bool:
        return self._subscribed[StreamKind.CONTROL]

    @property
    def mempool_subscribed(self) -> bool:
        return self._subscribed[StreamKind.MEMPOOL]

    @property
    def paused(self) -> bool:
        return self._controller.paused

    @property
    def pause_state(self):
        """Observable of pause/resume transitions on the data stream."""
        return self._controller.pause_state

    @property
    def last_error(self) -> SubscriptionErrorContext | None:
        return self._last_error

    @property
    def closed(self) -> bool:
        return self._closed

    def get_current_block(self) -> int:
        return self._current_block

    def handle(self, kind: StreamKind) -> ChannelHandle | None:
        return self._handles.get(kind)

    def queue(self, kind: StreamKind) -> DeliveryQueue:
        return self._queues[kind]

    def active_streams(self) -> ActiveStreams:
        return ActiveStreams.from_callbacks(self._on_publish, self._on_mempool)

    def subscribe(self) -> "JungleBusSubscription":
        """Attach the streams enabled by the registered callbacks.

        Any handle left from an earlier call is torn down first.
        """
        if self._closed:
            raise RuntimeError("Subscription is closed.")
        if self._handles:
            self.unsubscribe()

        streams = self.active_streams()
        for kind in streams.kinds():
            self._attach(kind)
        self._logger.info(
            f"Subscribed from block {self._current_block} "
            f"(streams: {', '.join(k.value for k in streams.kinds()) or 'none'})"
        )
        return self

    def unsubscribe(self) -> None:
        """Detach every live handle. Safe to call any number of times.

        Entries already accepted into a queue are still delivered.
        """
        if not self._handles:
            return
        for kind in list(self._handles):
            self._detach(kind)
        self._controller.reset()
        self._logger.info("Unsubscribed.")

    async def close(self) -> None:
        """Unsubscribe, stop every queue and cancel outstanding work."""
        if self._closed:
            return
        self.unsubscribe()
        self._closed = True
        self._controller.dispose()
        for queue in self._queues.values():
            await queue.close()
        pending, self._pending = self._pending, set()
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------------- handle lifecycle ---------------- #

    def _channel_name(self, kind: StreamKind) -> str:
        if kind is StreamKind.CONTROL:
            return control_channel(self.subscription_id)
        if kind is StreamKind.MEMPOOL:
            return mempool_channel(self.subscription_id)
        # read at decision time, never cached
        return data_channel(self.subscription_id, self._current_block)

    def _attach(self, kind: StreamKind) -> ChannelHandle:
        channel = self._channel_name(kind)
        handle = self._transport.new_subscription(channel)
        handle.on("publication", partial(self._on_publication, kind))
        handle.on("subscribed", partial(self._on_subscribed, kind))
        handle.on("state", partial(self._on_state, kind))
        handle.on("error", partial(self._on_handle_error, kind))
        self._handles[kind] = handle
        self._logger.debug(f"Attaching {kind.value} stream", channel=channel)
        handle.subscribe()
        return handle

    def _detach(self, kind: StreamKind) -> None:
        handle = self._handles.pop(kind, None)
        self._subscribed[kind] = False
        if handle is None:
            return
        handle.remove_all_listeners()
        handle.unsubscribe()
        self._transport.remove_subscription(handle)
        self._logger.debug(f"Detached {kind.value} stream", channel=handle.channel)

    def _is_current(self, kind: StreamKind, channel: str) -> bool:
        handle = self._handles.get(kind)
        return handle is not None and handle.channel == channel

    def _resubscribe_data(self) -> None:
        old = self._handles.get(StreamKind.DATA)
        self._detach(StreamKind.DATA)
        self._controller.reset()
        new = self._attach(StreamKind.DATA)
        self._logger.info(
            f"Data channel moved from {old.channel if old else '-'} to {new.channel}"
        )

    # ---------------- transport events ---------------- #

    def _on_subscribed(self, kind: StreamKind, ctx: SubscribedContext) -> None:
        if not self._is_current(kind, ctx.channel):
            return
        self._subscribed[kind] = True
        self._logger.debug(f"{kind.value} stream subscribed", channel=ctx.channel)

    def _on_state(self, kind: StreamKind, ctx: StateContext) -> None:
        if not self._is_current(kind, ctx.channel):
            return
        if ctx.new_state != ChannelState.SUBSCRIBED:
            self._subscribed[kind] = False

        if (
            kind is StreamKind.DATA
            and ctx.old_state == ChannelState.SUBSCRIBED
            and ctx.new_state == ChannelState.SUBSCRIBING
        ):
            cursor = parse_cursor(ctx.channel)
            if cursor is not None and cursor != self._current_block:
                self._logger.warning(
                    f"Reconnecting with stale cursor {cursor}, "
                    f"current block is {self._current_block}",
                    channel=ctx.channel,
                )
                self._resubscribe_data()

    def _on_handle_error(self, kind: StreamKind, ctx: SubscriptionErrorContext) -> None:
        if not self._is_current(kind, ctx.channel):
            return
        self._logger.error(
            f"Transport error on {kind.value} stream: {ctx.type} {ctx.message}",
            channel=ctx.channel,
        )
        self._notify_error(ctx)

    def _on_publication(self, kind: StreamKind, ctx: PublicationContext) -> None:
        if not self._is_current(kind, ctx.channel):
            return
        self._inbound.add(1, {"stream": kind.value})
        try:
            record = self._format.decode(kind, ctx.data)
        except DecodeError as e:
            self._decode_errors.add(1, {"stream": kind.value})
            self._logger.warning(
                f"Dropping undecodable publication: {e}", channel=ctx.channel
            )
            self._notify_error(
                SubscriptionErrorContext(
                    channel=ctx.channel, type="decode", message=str(e), exception=e
                )
            )
            return

        if kind is StreamKind.CONTROL:
            self._handle_control(ctx.channel, record)
        elif kind is StreamKind.DATA:
            self._queues[StreamKind.DATA].push(record)
            self._controller.check()
        else:
            self._queues[StreamKind.MEMPOOL].push(record)

    def _handle_control(self, channel: str, message: ControlMessage) -> None:
        code = message.code
        if code is ControlStatusCode.ERROR:
            self._notify_error(
                SubscriptionErrorContext(
                    channel=channel,
                    type=message.status,
                    code=message.status_code,
                    message=message.message or message.status,
                )
            )
            return

        if code is ControlStatusCode.BLOCK_DONE:
            self._current_block = message.block
            self._logger.debug(f"Block {message.block} done", channel=channel)
        elif code is ControlStatusCode.REORG:
            self._logger.warning(f"Reorg signaled at block {message.block}", channel=channel)

        if self._on_status is not None:
            self._queues[StreamKind.CONTROL].push(message)

    # ---------------- delivery ---------------- #

    async def _deliver_transaction(self, tx: Transaction) -> None:
        if self._on_publish is None:
            return
        await invoke_callback(self._on_publish, await self._hydrate(tx))

    async def _deliver_mempool(self, tx: Transaction) -> None:
        if self._on_mempool is None:
            return
        await invoke_callback(self._on_mempool, await self._hydrate(tx))

    async def _deliver_status(self, message: ControlMessage) -> None:
        if self._on_status is None:
            return
        await invoke_callback(self._on_status, message)

    async def _hydrate(self, tx: Transaction) -> Transaction:
        if self.lite_mode or tx.transaction or self._fetch_transaction is None:
            return tx
        body = await invoke_callback(self._fetch_transaction, tx.id)
        if isinstance(body, (bytes, bytearray)):
            body = bytes_to_hex(body)
        return dataclasses.replace(tx, transaction=body or "")

    def _on_delivery_failure(self, kind: StreamKind, entry: Any, e: Exception) -> None:
        handle = self._handles.get(kind)
        self._notify_error(
            SubscriptionErrorContext(
                channel=handle.channel if handle else "",
                type="delivery",
                message=get_short_error_info(e),
                exception=e,
            )
        )

    # ---------------- backpressure ---------------- #

    def _publish_data_command(self, command: dict[str, str]) -> None:
        handle = self._handles.get(StreamKind.DATA)
        if handle is None:
            raise TransportError(
                RuntimeError("data stream is not attached"),
                source="JungleBusSubscription",
                note=f"publish {command.get('cmd')}",
            )
        handle.publish(command)

    def _notify_paused(self) -> None:
        self._pauses.add(1)
        if self._on_status is None:
            return
        depth = self._queues[StreamKind.DATA].size()
        self._logger.debug(
            f"Paused: queue size {depth} exceeds {self._controller.max_queue_size}"
        )
        self._call(
            self._on_status,
            ControlMessage(
                status_code=int(ControlStatusCode.PAUSED),
                status="paused subscription",
                message="paused subscription to catch up",
                block=self._current_block,
            ),
        )

    # ---------------- callbacks ---------------- #

    def _notify_error(self, ctx: SubscriptionErrorContext) -> None:
        self._last_error = ctx
        if self._on_error is not None:
            self._call(self._on_error, ctx)

    def _call(self, fn: Callable[..., Any], *args: Any) -> None:
        # runs inside transport event dispatch, so nothing may escape
        try:
            result = fn(*args)
        except Exception as e:
            self._logger.error(f"Callback failed: {get_short_error_info(e)}")
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error(f"Callback failed: {get_short_error_info(exc)}")
