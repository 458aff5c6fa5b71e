"""REST endpoints of the JungleBus server.

Token handling, login, out-of-band transaction body retrieval and the
read-only lookups (transactions, block headers, addresses). Every request
carries the current token in a ``token`` header.

Lookups return the decoded JSON body, or ``None`` when the server answers
with a non-200 status or a body that is not JSON; the reason is kept in :attr:`JungleBusAPI.last_error`.
Network failures are raised as :class:`TransportError`.
"""

from typing import Any

import httpx
from opentelemetry._logs import LoggerProvider

from .mechanism import AuthenticationError, FetchError, TransportError
from .telemetry import LogContext, component_logger


class JungleBusAPI:
    """Async REST client.

    Args:
        base_url: ``http(s)://host[:port]`` of the server.
        token: Initial token, if already known.
        http_client: Client to send requests with. When omitted one is
            created and owned by this object.
        timeout: Request timeout in seconds for an owned client.
        logger_provider: OTel logger provider; the console default if None.
        debug: Keep DEBUG records on the console default provider.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        logger_provider: LoggerProvider | None = None,
        debug: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.last_error: Exception | None = None
        self._logger = component_logger(
            logger_provider,
            "rxjunglebus.api",
            source="JungleBusAPI",
            context=LogContext(service="rxjunglebus", component="api"),
            debug=debug,
        )

    # ---------------- token provider ---------------- #

    def get_token(self) -> str | None:
        return self._token

    def set_token(self, token: str | None) -> str | None:
        self._token = token
        return token

    async def refresh_token(self) -> str:
        """Exchange the current token for a fresh one and store it."""
        response = await self._request("GET", "/v1/user/refresh-token")
        return self._store_token(response, "refresh_token")

    async def login(self, username: str, password: str) -> str:
        response = await self._request(
            "POST",
            "/v1/user/login",
            json={"username": username, "password": password},
        )
        return self._store_token(response, "login")

    async def get_token_from_subscription(self, subscription_id: str) -> str:
        """Obtain an anonymous token scoped to ``subscription_id``."""
        response = await self._request(
            "POST", "/v1/user/subscription-token", json={"id": subscription_id}
        )
        return self._store_token(response, "get_token_from_subscription")

    # ---------------- transactions ---------------- #

    async def get_transaction_bytes(self, tx_id: str) -> bytes:
        """Raw body of transaction ``tx_id``."""
        response = await self._request("GET", f"/v1/transaction/get/{tx_id}/bin")
        if response.status_code != 200:
            error = FetchError(
                RuntimeError(f"HTTP {response.status_code} {response.reason_phrase}"),
                source="JungleBusAPI",
                note=f"get_transaction_bytes {tx_id}",
            )
            self.last_error = error
            raise error
        return response.content

    async def get_transaction(self, tx_id: str) -> dict[str, Any] | None:
        return await self._lookup(f"/v1/transaction/get/{tx_id}")

    # ---------------- block headers ---------------- #

    async def get_block_header(self, block: str | int) -> dict[str, Any] | None:
        """Header by hash or height."""
        return await self._lookup(f"/v1/block_header/get/{block}")

    async def get_block_headers(
        self, from_block: str | int, limit: int
    ) -> list[dict[str, Any]] | None:
        return await self._lookup(
            f"/v1/block_header/list/{from_block}", params={"limit": limit}
        )

    # ---------------- addresses ---------------- #

    async def get_address_transactions(self, address: str) -> list[dict[str, Any]] | None:
        return await self._lookup(f"/v1/address/get/{address}")

    async def get_address_transaction_details(
        self, address: str
    ) -> list[dict[str, Any]] | None:
        """Like :meth:`get_address_transactions` but with bodies and proofs."""
        return await self._lookup(f"/v1/address/transactions/{address}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ---------------- internals ---------------- #

    async def _lookup(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", path, params=params)
        if response.status_code != 200:
            self.last_error = RuntimeError(
                f"HTTP {response.status_code} {response.reason_phrase}"
            )
            self._logger.warning(f"GET {path} failed: {self.last_error}")
            return None
        try:
            return response.json()
        except ValueError as e:
            self.last_error = e
            self._logger.warning(f"GET {path} returned a body that is not JSON: {e}")
            return None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"token": self._token or ""}
        try:
            return await self._client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            error = TransportError(e, source="JungleBusAPI", note=f"{method} {path}")
            self.last_error = error
            self._logger.error(str(error))
            raise error from e

    def _store_token(self, response: httpx.Response, operation: str) -> str:
        token = None
        reason: Exception = RuntimeError(
            f"HTTP {response.status_code} {response.reason_phrase}"
        )
        if response.status_code == 200:
            try:
                token = response.json().get("token")
            except (ValueError, AttributeError) as e:
                reason = e
        if not isinstance(token, str) or not token:
            error = AuthenticationError(
                reason,
                source="JungleBusAPI",
                note=operation,
            )
            self.last_error = error
            raise error
        self._logger.debug(f"Token updated by {operation}")
        return self.set_token(token)
