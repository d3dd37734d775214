"""
Monitor orchestrator for the update ingestion monitor.

This module owns the update stream for one account: it resolves credentials,
restores the persisted offset, selects poll or webhook mode, and restarts the
poller with backoff whenever another consumer briefly holds the stream.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .bot_api import BotAPIClient
from .config import Account, Settings, resolve_account
from .delivery import Consumer, UpdateDelivery
from .exceptions import ProviderAPIError, StorageError
from .polling.backoff import (
    RandomSource,
    compute_backoff,
    format_duration_ms,
    sleep_with_abort,
)
from .polling.runner import PollRunner, PollState, RunnerStatus
from .state.offset_store import OffsetStore, OffsetStoreFactory
from .webhook_runner import WebhookRunner

logger = structlog.get_logger(__name__)

SleepFunc = Callable[[int, asyncio.Event], Awaitable[bool]]


class UpdateMonitor:
    """
    Orchestrates update ingestion for a single account.

    ``run()`` returns normally only after a graceful stop requested through
    the cancellation event; every fatal condition is raised to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        consumer: Consumer,
        *,
        account_id: str | None = None,
        token: str | None = None,
        use_webhook: bool | None = None,
        offset_store: OffsetStore | None = None,
        client: BotAPIClient | None = None,
        cancel_event: asyncio.Event | None = None,
        log_sink: Any = None,
        sleep: SleepFunc = sleep_with_abort,
        random_source: RandomSource = random.random,
    ):
        """
        Initialize the monitor.

        Args:
            settings: Application settings
            consumer: Callback receiving each update
            account_id: Account to monitor (defaults to settings)
            token: Token override for the account
            use_webhook: Mode override (defaults to settings)
            offset_store: Offset store (defaults to the configured backend)
            client: Bot API client (created from the account if omitted)
            cancel_event: Cancellation signal (created if omitted)
            log_sink: Logger the monitor binds ``account_id`` onto
            sleep: Cancellable sleep used between restarts
            random_source: Jitter source for the backoff policy
        """
        self.settings = settings
        self.consumer = consumer
        self.account_id = account_id
        self.token = token
        self.use_webhook = settings.use_webhook if use_webhook is None else use_webhook
        self.offset_store = offset_store
        self.client = client
        self.cancel_event = cancel_event or asyncio.Event()
        self.base_logger = log_sink or logger
        self.sleep = sleep
        self.random_source = random_source
        self.backoff_policy = settings.backoff_policy

        self.state: PollState | None = None

    def request_stop(self) -> None:
        """Request a graceful stop."""
        self.cancel_event.set()

    async def run(self) -> None:
        """
        Run the monitor until cancelled.

        Raises:
            ConfigurationError: If no token is configured for the account
            StorageError: If the offset store is unavailable or the persisted
                offset cannot be read
            ProviderAPIError: On a provider error other than a polling conflict
                or a dropped connection
            ConsumerError: If the consumer fails an update
            WebhookStartError: If the webhook receiver cannot start
        """
        account = resolve_account(self.settings, self.account_id, self.token)
        log = self.base_logger.bind(account_id=account.account_id)

        offset_store = self.offset_store or OffsetStoreFactory.create_offset_store(
            self.settings.offset_store_backend, state_dir=self.settings.state_dir
        )
        if not await offset_store.health_check():
            raise StorageError(
                f"Offset store unavailable for account {account.account_id}",
                account_id=account.account_id,
                context={"account_id": account.account_id, "operation": "health_check"},
            )
        last_sequence_id = await offset_store.read(account.account_id)
        log.info(
            "Starting update monitor",
            mode="webhook" if self.use_webhook else "poll",
            last_update_id=last_sequence_id,
        )

        owns_client = self.client is None
        client = self.client or self._create_client(account)
        try:
            if self.use_webhook:
                await self._run_webhook(
                    client, account, offset_store, last_sequence_id, log
                )
            else:
                await self._run_polling(
                    client, account, offset_store, last_sequence_id, log
                )
        finally:
            if owns_client:
                await client.aclose()

    def _create_client(self, account: Account) -> BotAPIClient:
        return BotAPIClient(
            account.token,
            proxy=account.proxy,
            base_url=self.settings.telegram_api_base_url,
            request_timeout=self.settings.request_timeout_seconds,
        )

    async def _run_webhook(
        self,
        client: BotAPIClient,
        account: Account,
        offset_store: OffsetStore,
        last_sequence_id: int | None,
        log: Any,
    ) -> None:
        delivery = UpdateDelivery(
            account.account_id,
            self.consumer,
            offset_store,
            last_sequence_id=last_sequence_id,
            logger=log,
            ordered=False,
        )
        runner = WebhookRunner(
            client,
            delivery,
            self.settings.webhook_config,
            self.cancel_event,
            allowed_updates=self.settings.allowed_update_types,
            logger=log,
        )
        await runner.run()

    async def _run_polling(
        self,
        client: BotAPIClient,
        account: Account,
        offset_store: OffsetStore,
        last_sequence_id: int | None,
        log: Any,
    ) -> None:
        await self._clear_webhook(client, log)

        self.state = PollState(last_sequence_id=last_sequence_id)
        while not self.cancel_event.is_set():
            runner = PollRunner(
                client,
                self.consumer,
                offset_store,
                account.account_id,
                self.cancel_event,
                poll_timeout_seconds=self.settings.poll_timeout_seconds,
                allowed_updates=self.settings.allowed_update_types,
                logger=log,
            )
            result = await runner.run(self.state)
            self.state = result.state
            if result.started:
                self.state.attempt = 0

            if result.outcome is RunnerStatus.STOPPED:
                return

            self.state.attempt += 1
            delay_ms = compute_backoff(
                self.backoff_policy, self.state.attempt, self.random_source
            )
            if result.outcome is RunnerStatus.CONFLICTED:
                message = "getUpdates conflict; retrying"
            else:
                message = "getUpdates connection failed; retrying"
            log.info(
                message,
                retry_in=format_duration_ms(delay_ms),
                attempt=self.state.attempt,
            )
            if await self.sleep(delay_ms, self.cancel_event):
                log.info("Update monitor cancelled during restart backoff")
                return

    async def _clear_webhook(self, client: BotAPIClient, log: Any) -> None:
        """Remove a push subscription left over from webhook mode."""
        try:
            webhook_info = await client.get_webhook_info()
            if webhook_info.get("url"):
                await client.delete_webhook(drop_pending_updates=False)
                log.info("Deleted webhook to enable polling")
        except ProviderAPIError as e:
            log.error("Failed to check/delete webhook", error=str(e))


async def monitor_updates(
    settings: Settings, consumer: Consumer, **kwargs: Any
) -> None:
    """Run an ``UpdateMonitor`` built from ``settings`` until cancelled."""
    await UpdateMonitor(settings, consumer, **kwargs).run()
