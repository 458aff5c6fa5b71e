"""Client facade.

:class:`JungleBusClient` ties a transport connection, the REST API and any
number of :class:`JungleBusSubscription` objects together.

Example:
    >>> client = JungleBusClient("junglebus.example.com", transport)
    >>> sub = await client.subscribe("abc", 800000, on_publish=print)
    >>> ...
    >>> await sub.close()
    >>> client.disconnect()
"""

import re
from dataclasses import dataclass, replace
from typing import Any, Callable

from opentelemetry._logs import LoggerProvider
from opentelemetry.metrics import MeterProvider

from .api import JungleBusAPI
from .codec import WireProtocol
from .mechanism import JungleBusError
from .subscription import (
    ErrorCallback,
    JungleBusSubscription,
    StatusCallback,
    TransactionCallback,
)
from .telemetry import LogContext, component_logger
from .transport import ConnectionState, Transport

_SCHEME_RE = re.compile(r"^(https?|wss?)://")


@dataclass
class ClientOptions:
    """Connection options.

    ``use_ssl`` is inferred from the server URL when left as ``None``: only an
    explicit ``http://`` or ``ws://`` scheme turns it off. ``debug`` keeps
    DEBUG records when the client logs through the console default provider.
    """

    protocol: WireProtocol = "json"
    use_ssl: bool | None = None
    token: str | None = None
    debug: bool = False
    on_connected: Callable[[Any], Any] | None = None
    on_connecting: Callable[[Any], Any] | None = None
    on_disconnected: Callable[[Any], Any] | None = None
    on_error: Callable[[Any], Any] | None = None
    max_queue_size: int = 20000


class JungleBusClient:
    def __init__(
        self,
        server_url: str,
        transport: Transport,
        options: ClientOptions | None = None,
        api: JungleBusAPI | None = None,
        logger_provider: LoggerProvider | None = None,
        meter_provider: MeterProvider | None = None,
    ):
        options = options or ClientOptions()
        if options.use_ssl is None:
            options = replace(
                options, use_ssl=not re.match(r"^(http|ws)://", server_url)
            )
        self.options = options
        self.server_url = _SCHEME_RE.sub("", server_url).rstrip("/")
        self.transport = transport
        self._logger_provider = logger_provider
        self._meter_provider = meter_provider
        self.api = api or JungleBusAPI(
            self.api_url,
            token=self.options.token,
            logger_provider=logger_provider,
            debug=self.options.debug,
        )
        if self.options.token:
            self.api.set_token(self.options.token)
        self._lifecycle_wired = False
        self._logger = component_logger(
            logger_provider,
            "rxjunglebus.client",
            source="JungleBusClient",
            context=LogContext(service="rxjunglebus", component="client"),
            debug=self.options.debug,
        )

    @property
    def websocket_url(self) -> str:
        scheme = "wss" if self.options.use_ssl else "ws"
        query = "?format=protobuf" if self.options.protocol == "protobuf" else ""
        return f"{scheme}://{self.server_url}/connection/websocket{query}"

    @property
    def api_url(self) -> str:
        scheme = "https" if self.options.use_ssl else "http"
        return f"{scheme}://{self.server_url}"

    def get_token(self) -> str | None:
        return self.api.get_token()

    def set_token(self, token: str | None) -> str | None:
        return self.api.set_token(token)

    async def login(self, username: str, password: str) -> str:
        return await self.api.login(username, password)

    async def get_token_from_subscription(self, subscription_id: str) -> str:
        return await self.api.get_token_from_subscription(subscription_id)

    def get_last_error(self) -> Exception | None:
        return self.api.last_error

    def connect(self) -> None:
        """Register the lifecycle callbacks and open the connection.

        The transport renews its connection token through
        :meth:`JungleBusAPI.refresh_token`.
        """
        self.transport.token_provider = self.api.refresh_token
        if not self._lifecycle_wired:
            for event, fn in (
                ("connected", self.options.on_connected),
                ("connecting", self.options.on_connecting),
                ("disconnected", self.options.on_disconnected),
                ("error", self.options.on_error),
            ):
                if fn is not None:
                    self.transport.on(event, fn)
            self._lifecycle_wired = True
        self._logger.info(f"Connecting to {self.websocket_url}")
        self.transport.connect()

    def disconnect(self) -> None:
        self.transport.disconnect()

    async def subscribe(
        self,
        subscription_id: str,
        from_block: int,
        on_publish: TransactionCallback | None = None,
        on_status: StatusCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_mempool: TransactionCallback | None = None,
        lite_mode: bool = False,
        **kwargs: Any,
    ) -> JungleBusSubscription:
        """Start a subscription; connects first when needed.

        Without a token an anonymous one is requested for ``subscription_id``.
        Extra keyword arguments are passed to :class:`JungleBusSubscription`.
        """
        if not self.api.get_token():
            try:
                await self.api.get_token_from_subscription(subscription_id)
            except JungleBusError as e:
                # the server may still accept an anonymous connection
                self._logger.warning(f"No token for {subscription_id}: {e}")

        if self.transport.state == ConnectionState.DISCONNECTED:
            self.connect()

        kwargs.setdefault("max_queue_size", self.options.max_queue_size)
        kwargs.setdefault("logger_provider", self._logger_provider)
        kwargs.setdefault("meter_provider", self._meter_provider)
        subscription = JungleBusSubscription(
            self.transport,
            subscription_id,
            from_block,
            on_publish=on_publish,
            on_status=on_status,
            on_error=on_error,
            on_mempool=on_mempool,
            protocol=self.options.protocol,
            fetch_transaction=self.api.get_transaction_bytes,
            lite_mode=lite_mode,
            **kwargs,
        )
        return subscription.subscribe()

    async def get_transaction(self, tx_id: str) -> dict[str, Any] | None:
        return await self.api.get_transaction(tx_id)

    async def get_block_header(self, block: str | int) -> dict[str, Any] | None:
        return await self.api.get_block_header(block)

    async def get_block_headers(
        self, from_block: str | int, limit: int
    ) -> list[dict[str, Any]] | None:
        return await self.api.get_block_headers(from_block, limit)

    async def get_address_transactions(self, address: str) -> list[dict[str, Any]] | None:
        return await self.api.get_address_transactions(address)

    async def get_address_transaction_details(
        self, address: str
    ) -> list[dict[str, Any]] | None:
        return await self.api.get_address_transaction_details(address)

    async def aclose(self) -> None:
        await self.api.aclose()
