"""
Webhook runner for the update ingestion monitor.

This module starts the push receiver, registers it with the provider and keeps
it running until the monitor is cancelled.
"""

import asyncio
import contextlib
from collections.abc import Iterator
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from .bot_api import BotAPIClient
from .config import WebhookConfig
from .delivery import UpdateDelivery
from .exceptions import ProviderAPIError, WebhookStartError
from .webhook_listener import WebhookListener

# Interval for checking whether uvicorn finished binding
STARTUP_CHECK_INTERVAL = 0.05


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class WebhookRunner:
    """
    Runs the push receiver for one account.

    Start failures (bind errors, provider rejecting the webhook URL) are
    fatal. Once running, the receiver stops only on cancellation or when the
    server exits.
    """

    def __init__(
        self,
        client: BotAPIClient,
        delivery: UpdateDelivery,
        config: WebhookConfig,
        cancel_event: asyncio.Event,
        allowed_updates: list[str] | None = None,
        logger: Any = None,
    ):
        self.client = client
        self.delivery = delivery
        self.config = config
        self.cancel_event = cancel_event
        self.allowed_updates = allowed_updates
        self.logger = logger or structlog.get_logger(__name__).bind(
            account_id=delivery.account_id
        )
        self.listener = WebhookListener(delivery, secret=config.secret, path=config.path)

    def create_app(self) -> FastAPI:
        """Create the receiver application."""
        app = FastAPI(title="Update webhook receiver", docs_url=None, redoc_url=None)
        app.include_router(self.listener.router)

        @app.get("/health")
        async def health_check() -> dict[str, str]:
            """Health check endpoint."""
            return {"status": "healthy"}

        return app

    async def run(self) -> None:
        """
        Serve until cancelled.

        Raises:
            WebhookStartError: If the receiver could not be started or registered
        """
        server = _EmbeddedServer(
            uvicorn.Config(
                self.create_app(),
                host=self.config.host,
                port=self.config.port,
                lifespan="off",
                log_config=None,
                access_log=False,
            )
        )
        serve_task = asyncio.create_task(self._serve(server))
        try:
            if not await self._wait_started(server, serve_task):
                return
            await self._register()
            self.logger.info(
                "Webhook receiver started",
                host=self.config.host,
                port=self.config.port,
                path=self.config.path,
            )

            stop = asyncio.create_task(self.cancel_event.wait())
            try:
                await asyncio.wait({serve_task, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stop

            if serve_task.done():
                serve_task.result()
                self.logger.info("Webhook receiver exited")
        finally:
            if not serve_task.done():
                server.should_exit = True
                await serve_task
                self.logger.info("Webhook receiver stopped")

    async def _serve(self, server: uvicorn.Server) -> None:
        try:
            await server.serve()
        except (OSError, SystemExit) as e:
            # uvicorn exits the process on bind failure; keep it a local error
            raise WebhookStartError(
                f"Webhook receiver failed on {self.config.host}:{self.config.port}",
                context={
                    "account_id": self.delivery.account_id,
                    "operation": "serve",
                },
            ) from e

    async def _wait_started(
        self, server: uvicorn.Server, serve_task: asyncio.Task[None]
    ) -> bool:
        """Wait for the server to bind; False if cancelled first."""
        while not server.started:
            if serve_task.done():
                serve_task.result()
                raise WebhookStartError(
                    "Webhook receiver exited during startup",
                    context={
                        "account_id": self.delivery.account_id,
                        "operation": "serve",
                    },
                )
            if self.cancel_event.is_set():
                return False
            await asyncio.sleep(STARTUP_CHECK_INTERVAL)
        return True

    async def _register(self) -> None:
        url = self.config.resolved_public_url
        try:
            # One connection keeps provider deliveries in order
            await self.client.set_webhook(
                url,
                secret_token=self.config.secret or None,
                allowed_updates=self.allowed_updates,
                max_connections=1,
            )
        except ProviderAPIError as e:
            raise WebhookStartError(
                f"Failed to register webhook for account "
                f"{self.delivery.account_id}: {e}",
                context={
                    "account_id": self.delivery.account_id,
                    "operation": "setWebhook",
                },
            ) from e
        self.logger.info("Webhook registered", url=url)
