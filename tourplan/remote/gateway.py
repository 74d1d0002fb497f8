"""Gateway to the remote tour plan datastore.

Wraps the JSON-over-HTTP contract with per-request timeouts, retry with
exponential backoff, and an online/offline signal.
"""

import asyncio
import logging
from typing import Any, Callable

import httpx

from ..errors import RemoteRejected, RemoteUnavailable

logger = logging.getLogger(__name__)

OnlineListener = Callable[[bool], Any]


class RemoteGateway:
    """Async client for the remote datastore.

    Retries network failures and non-JSON error responses; a JSON error body
    or an ``ok: false`` envelope means the server refused the request, which
    is never retried.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        online: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Base URL the endpoint paths are relative to.
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts per call.
            backoff_base: Delay unit; attempt n waits 2**n * backoff_base.
            online: Initial connectivity state.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self._online = online
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._listeners: list[OnlineListener] = []

    # ==================== Connectivity ====================

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: OnlineListener) -> None:
        """Register a callback invoked with the new state on every transition."""
        self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        """Update the connectivity signal, notifying listeners on change."""
        if online == self._online:
            return

        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            listener(online)

    async def probe(self) -> bool:
        """Check reachability with a single request and update the signal."""
        client = self._get_client()
        try:
            await client.get("users")
        except httpx.RequestError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            self.set_online(False)
        else:
            self.set_online(True)
        return self._online

    # ==================== Transport ====================

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform one logical RPC against the datastore.

        Args:
            endpoint: Path relative to base_url (e.g. "plans/set").
            method: HTTP method.
            body: Optional JSON body.

        Returns:
            The parsed response envelope.

        Raises:
            RemoteRejected: The server refused the request.
            RemoteUnavailable: The request could not be delivered.
        """
        client = self._get_client()
        path = endpoint.lstrip("/")
        last_error: BaseException | str | None = None

        for attempt in range(self.max_retries):
            try:
                response = await client.request(method, path, json=body)
            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    f"Request timeout for {path}, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    f"Request failed for {path}, attempt {attempt + 1}/{self.max_retries}: {e}"
                )
            else:
                if response.is_success:
                    return self._parse_envelope(response, path)

                try:
                    data = response.json()
                except ValueError:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"Server error {response.status_code} for {path}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )
                else:
                    message = data.get("message") if isinstance(data, dict) else None
                    raise RemoteRejected(
                        message or f"HTTP {response.status_code}",
                        status_code=response.status_code,
                    )

            # Exponential backoff
            if attempt < self.max_retries - 1:
                await asyncio.sleep((2**attempt) * self.backoff_base)

        raise RemoteUnavailable(
            f"{method} {path} failed after {self.max_retries} attempts", last_error
        )

    @staticmethod
    def _parse_envelope(response: httpx.Response, path: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteRejected(
                f"Malformed response from {path}: {e}", status_code=response.status_code
            ) from e

        if not isinstance(data, dict):
            raise RemoteRejected(
                f"Malformed response from {path}", status_code=response.status_code
            )
        if data.get("ok") is False:
            raise RemoteRejected(
                data.get("message") or f"{path} refused the request",
                status_code=response.status_code,
            )
        return data

    # ==================== Datastore contract ====================

    async def list_users(self) -> list[dict[str, Any]]:
        data = await self.call("users")
        return list(data.get("users") or [])

    async def login(self, name: str, password: str) -> dict[str, Any]:
        return await self.call("login", "POST", {"name": name, "password": password})

    async def get_plans(self, week_id: str) -> dict[str, Any]:
        data = await self.call("plans/get", "POST", {"weekStart": week_id})
        return dict(data.get("plans") or {})

    async def set_plan(self, week_id: str, name: str, locations: list[str]) -> dict[str, Any]:
        return await self.call(
            "plans/set",
            "POST",
            {"weekStart": week_id, "name": name, "locationsArray": list(locations)},
        )

    async def add_user(self, name: str, password: str, is_admin: bool = False) -> dict[str, Any]:
        return await self.call(
            "users/add",
            "POST",
            {"name": name, "password": password, "isAdmin": is_admin},
        )

    async def delete_user(self, name: str) -> dict[str, Any]:
        return await self.call("users/delete", "POST", {"name": name})

    async def decrypt_password(self, name: str) -> str:
        data = await self.call("users/decrypt", "POST", {"name": name})
        return str(data.get("password", ""))

    async def add_custom_location(
        self, name: str, week_id: str, day_date: str, location: str
    ) -> dict[str, Any]:
        return await self.call(
            "custom/add",
            "POST",
            {"name": name, "weekStart": week_id, "dayDate": day_date, "location": location},
        )

    async def get_override(self) -> dict[str, Any] | None:
        data = await self.call("override")
        return data.get("override")

    async def set_override(self, admin_name: str, week_start: str) -> dict[str, Any]:
        return await self.call(
            "override",
            "POST",
            {"adminName": admin_name, "overrideWeekStart": week_start},
        )

    async def clear_override(self) -> dict[str, Any]:
        return await self.call(
            "override", "POST", {"adminName": None, "overrideWeekStart": None}
        )
