"""
Poll runner for the update ingestion monitor.

This module drives one long-polling session against the provider: it fetches
batches of updates, hands them to the consumer in ascending id order and
reports how the session ended so the orchestrator can decide what to do next.
"""

import asyncio
import contextlib
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import structlog

from ..bot_api import BotAPIClient
from ..delivery import Consumer, UpdateDelivery
from ..exceptions import ProviderAPIError
from ..models import UpdateRecord
from ..state.offset_store import OffsetStore
from .conflict import is_recoverable_conflict, is_transient_network_error


class RunnerStatus(str, Enum):
    """Lifecycle states of a poll session."""

    IDLE = "idle"
    RUNNING = "running"
    DELIVERING = "delivering"
    STOPPED = "stopped"
    CONFLICTED = "conflicted"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass
class PollState:
    """Cursor and restart bookkeeping carried between poll sessions."""

    last_sequence_id: int | None = None
    attempt: int = 0


@dataclass
class SessionResult:
    """How a poll session ended (failures are raised instead)."""

    outcome: RunnerStatus
    state: PollState
    started: bool = False
    error: ProviderAPIError | None = None


class PollRunner:
    """
    Runs one polling session.

    The session ends STOPPED when cancellation is requested, CONFLICTED when
    another consumer holds the update stream and DISCONNECTED when a poll
    request never reached the provider. Any other error is raised.
    """

    def __init__(
        self,
        client: BotAPIClient,
        consumer: Consumer,
        offset_store: OffsetStore,
        account_id: str,
        cancel_event: asyncio.Event,
        poll_timeout_seconds: int = 30,
        allowed_updates: list[str] | None = None,
        logger: Any = None,
    ):
        """
        Initialize the poll runner.

        Args:
            client: Bot API client
            consumer: Callback receiving each update
            offset_store: Store the delivered offsets are written to
            account_id: Account being polled
            cancel_event: Set to request a graceful stop
            poll_timeout_seconds: Long-poll timeout
            allowed_updates: Update types to request
            logger: Bound structlog logger
        """
        self.client = client
        self.consumer = consumer
        self.offset_store = offset_store
        self.account_id = account_id
        self.cancel_event = cancel_event
        self.poll_timeout_seconds = poll_timeout_seconds
        self.allowed_updates = allowed_updates
        self.logger = logger or structlog.get_logger(__name__).bind(
            account_id=account_id
        )
        self.status = RunnerStatus.IDLE

    async def run(self, state: PollState) -> SessionResult:
        """
        Run the session until it stops, conflicts or loses the connection.

        Args:
            state: Cursor to resume from

        Returns:
            Session result with the advanced cursor

        Raises:
            ProviderAPIError: On any other provider error
            ConsumerError: If the consumer fails an update
        """
        delivery = UpdateDelivery(
            self.account_id,
            self.consumer,
            self.offset_store,
            last_sequence_id=state.last_sequence_id,
            logger=self.logger,
        )
        started = False
        self.status = RunnerStatus.RUNNING
        self.logger.info(
            "Poll session started", last_update_id=state.last_sequence_id
        )

        try:
            while not self.cancel_event.is_set():
                batch = await self._fetch(delivery.last_sequence_id)
                if batch is None:
                    break
                started = True
                await self._deliver_batch(delivery, batch)
        except ProviderAPIError as e:
            if is_recoverable_conflict(e):
                outcome = RunnerStatus.CONFLICTED
            elif is_transient_network_error(e):
                outcome = RunnerStatus.DISCONNECTED
                self.logger.warning(
                    "Poll request failed", method=e.method, error=str(e)
                )
            else:
                outcome = None
            if outcome is not None:
                self.status = outcome
                return SessionResult(
                    outcome=outcome,
                    state=replace(state, last_sequence_id=delivery.last_sequence_id),
                    started=started,
                    error=e,
                )
            self.status = RunnerStatus.FAILED
            e.context.setdefault("account_id", self.account_id)
            self.logger.error(
                "Polling failed", method=e.method, error_code=e.error_code, error=str(e)
            )
            raise
        except Exception as e:
            self.status = RunnerStatus.FAILED
            self.logger.error(
                "Poll session failed",
                last_update_id=delivery.last_sequence_id,
                error=str(e),
            )
            raise

        self.status = RunnerStatus.STOPPED
        self.logger.info(
            "Poll session stopped", last_update_id=delivery.last_sequence_id
        )
        return SessionResult(
            outcome=RunnerStatus.STOPPED,
            state=replace(state, last_sequence_id=delivery.last_sequence_id),
            started=started,
        )

    async def _fetch(self, last_sequence_id: int | None) -> list[UpdateRecord] | None:
        """Fetch the next batch, or return None if cancelled while waiting."""
        offset = None if last_sequence_id is None else last_sequence_id + 1
        fetch = asyncio.create_task(
            self.client.get_updates(
                offset=offset,
                timeout=self.poll_timeout_seconds,
                allowed_updates=self.allowed_updates,
            )
        )
        stop = asyncio.create_task(self.cancel_event.wait())
        try:
            await asyncio.wait({fetch, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (fetch, stop):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if fetch.cancelled():
            return None
        return fetch.result()

    async def _deliver_batch(
        self, delivery: UpdateDelivery, batch: list[UpdateRecord]
    ) -> None:
        pending = sorted(
            (record for record in batch if delivery.is_new(record.sequence_id)),
            key=lambda record: record.sequence_id,
        )
        if len(pending) < len(batch):
            self.logger.debug(
                "Dropped stale updates",
                received=len(batch),
                pending=len(pending),
                last_update_id=delivery.last_sequence_id,
            )

        for record in pending:
            # Work already handed to the consumer completes; the rest waits
            # for the next session since the offset has not moved past it.
            if self.cancel_event.is_set():
                break
            self.status = RunnerStatus.DELIVERING
            await delivery.deliver(record)
        self.status = RunnerStatus.RUNNING
