"""
Bot API client for the update ingestion monitor.

This module provides a small async client for the provider endpoints the
monitor needs: update retrieval and push-subscription management.
"""

from typing import Any

import httpx
import structlog

from .exceptions import ProviderAPIError
from .models import UpdateRecord

logger = structlog.get_logger(__name__)

# Extra read time on top of the server-side long-poll timeout
LONG_POLL_GRACE_SECONDS = 15.0


class BotAPIClient:
    """
    Async Bot API client.

    Every call is a JSON POST to ``/bot<token>/<method>``. Responses with
    ``ok: false`` and transport failures are raised as ``ProviderAPIError``
    carrying the method name, so callers can classify them.
    """

    def __init__(
        self,
        token: str,
        proxy: str | None = None,
        base_url: str = "https://api.telegram.org",
        request_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the Bot API client.

        Args:
            token: Bot token (never logged)
            proxy: Optional outbound proxy URL
            base_url: Bot API base URL
            request_timeout: Timeout for non-polling requests in seconds
            transport: Optional httpx transport (tests)
        """
        self.request_timeout = request_timeout
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/bot{token}/",
            proxy=proxy,
            timeout=request_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BotAPIClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Invoke a Bot API method.

        Args:
            method: API method name (e.g. ``getUpdates``)
            params: JSON parameters
            timeout: Per-request timeout override in seconds

        Returns:
            The ``result`` field of the response

        Raises:
            ProviderAPIError: On transport failure or an ``ok: false`` response
        """
        try:
            response = await self._client.post(
                method,
                json=params or {},
                timeout=timeout if timeout is not None else self.request_timeout,
            )
        except httpx.HTTPError as e:
            # Never include the request URL: it embeds the token
            raise ProviderAPIError(
                f"Bot API {method} request failed: {type(e).__name__}",
                method=method,
            ) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderAPIError(
                f"Bot API {method} returned invalid JSON "
                f"(HTTP {response.status_code})",
                method=method,
                error_code=response.status_code,
            ) from e

        if not isinstance(payload, dict) or payload.get("ok") is not True:
            error_code = response.status_code
            description = None
            if isinstance(payload, dict):
                error_code = payload.get("error_code", error_code)
                description = payload.get("description")
            raise ProviderAPIError(
                f"Bot API {method} failed ({error_code})"
                + (f": {description}" if description else ""),
                method=method,
                error_code=error_code,
                description=description,
            )

        return payload.get("result")

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int = 30,
        allowed_updates: list[str] | None = None,
        limit: int = 100,
    ) -> list[UpdateRecord]:
        """
        Long-poll for the next batch of updates.

        Args:
            offset: First update id to return (confirms all earlier ones)
            timeout: Server-side long-poll timeout in seconds
            allowed_updates: Update types to receive
            limit: Maximum batch size

        Returns:
            Decoded update records in provider order
        """
        params: dict[str, Any] = {"timeout": timeout, "limit": limit}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates

        result = await self.call(
            "getUpdates", params, timeout=timeout + LONG_POLL_GRACE_SECONDS
        )
        if not isinstance(result, list):
            raise ProviderAPIError(
                "Bot API getUpdates returned no result list", method="getUpdates"
            )

        records: list[UpdateRecord] = []
        for item in result:
            try:
                records.append(UpdateRecord.from_api(item))
            except ValueError as e:
                logger.warning("Skipping malformed update", error=str(e))
        return records

    async def get_webhook_info(self) -> dict[str, Any]:
        """Get the current push-subscription state."""
        result = await self.call("getWebhookInfo")
        return result if isinstance(result, dict) else {}

    async def delete_webhook(self, drop_pending_updates: bool = False) -> bool:
        """Remove the push subscription so polling can be used."""
        result = await self.call(
            "deleteWebhook", {"drop_pending_updates": drop_pending_updates}
        )
        return bool(result)

    async def set_webhook(
        self,
        url: str,
        secret_token: str | None = None,
        allowed_updates: list[str] | None = None,
        max_connections: int | None = None,
    ) -> bool:
        """Register a push subscription."""
        params: dict[str, Any] = {"url": url}
        if secret_token:
            params["secret_token"] = secret_token
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        if max_connections is not None:
            params["max_connections"] = max_connections
        result = await self.call("setWebhook", params)
        return bool(result)
