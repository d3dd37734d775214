"""
Webhook listener for the update ingestion monitor.

This module receives updates pushed by the provider, validates the secret
token, and hands each update to the shared delivery pipeline.
"""

import hmac
import json

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .delivery import UpdateDelivery
from .exceptions import ConsumerError
from .models import UpdateRecord

logger = structlog.get_logger(__name__)


class WebhookListener:
    """
    Push-mode update receiver.

    Per-request failures are answered with an error status so the provider
    retries the update; they never stop the receiver. Updates are delivered in
    arrival order; only ids at or below the delivery's stale floor are
    acknowledged as duplicates.
    """

    def __init__(
        self, delivery: UpdateDelivery, secret: str = "", path: str = "/"
    ) -> None:
        """
        Initialize the webhook listener.

        Args:
            delivery: Delivery pipeline shared with the consumer
            secret: Expected ``X-Telegram-Bot-Api-Secret-Token`` (empty disables)
            path: Route the provider posts updates to
        """
        self.delivery = delivery
        self.secret = secret
        self.path = path
        self.logger = logger.bind(account_id=delivery.account_id)
        self.router = APIRouter()
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up webhook routes."""
        self.router.post(self.path)(self.handle_update)
        self.router.get(self.path)(self.webhook_info)

    def _validate_secret(self, provided: str | None) -> bool:
        """
        Validate the provider's secret token header.

        Args:
            provided: Header value sent with the request

        Returns:
            True if the token matches or no secret is configured
        """
        if not self.secret:
            return True
        if not provided:
            return False
        return hmac.compare_digest(self.secret.encode(), provided.encode())

    async def handle_update(
        self,
        request: Request,
        x_telegram_bot_api_secret_token: str | None = Header(
            None, alias="X-Telegram-Bot-Api-Secret-Token"
        ),
    ) -> JSONResponse:
        """
        Handle one pushed update.

        Args:
            request: FastAPI request object
            x_telegram_bot_api_secret_token: Provider secret token

        Returns:
            JSON response
        """
        if not self._validate_secret(x_telegram_bot_api_secret_token):
            self.logger.error("Invalid webhook secret token")
            raise HTTPException(status_code=401, detail="Invalid secret token")

        payload = await request.body()
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.logger.error("Invalid JSON payload", error=str(e))
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

        try:
            record = UpdateRecord.from_api(data)
        except ValueError as e:
            self.logger.error("Invalid update payload", error=str(e))
            raise HTTPException(status_code=400, detail=str(e)) from e

        try:
            delivered = await self.delivery.deliver(record)
        except ConsumerError as e:
            self.logger.error(
                "Failed to process webhook update",
                update_id=record.sequence_id,
                error=str(e),
            )
            return JSONResponse(
                content={"ok": False, "error": "Failed to process update"},
                status_code=500,
            )

        return JSONResponse(
            content={
                "ok": True,
                "status": "delivered" if delivered else "duplicate",
                "update_id": record.sequence_id,
            },
            status_code=200,
        )

    async def webhook_info(self) -> JSONResponse:
        """
        Get webhook information.

        Returns:
            Webhook information
        """
        return JSONResponse(
            content={
                "message": "Update webhook listener",
                "account_id": self.delivery.account_id,
                "last_update_id": self.delivery.last_sequence_id,
            }
        )
