"""RetryCoordinator: resilient delivery of user messages.

Wraps ``TurnOrchestrator.run_turn`` with error classification, exponential
backoff and an offline queue.  It is the only place where backoff happens.

Send states (see ``SendState``)::

    not_sent -> sending -> sent
                sending -> retrying -> sending ...      (retryable error)
                sending -> failed                       (non-retryable / exhausted)
    not_sent -> offline -> queued -> sending            (no network)
    failed   -> sending                                 (retry_message only)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from coach_chat.core.history import ConversationHistory
from coach_chat.core.orchestrator import TurnOrchestrator
from coach_chat.errors import InvalidTransitionError, ProtocolError, TurnCancelled
from coach_chat.events.bus import EventBus
from coach_chat.resilience.backoff import BackoffPolicy
from coach_chat.resilience.classifier import ErrorClassifier
from coach_chat.resilience.connectivity import ConnectionType, ConnectivityMonitor
from coach_chat.resilience.offline_queue import OfflineQueue
from coach_chat.types import (
    EventType,
    FailureReason,
    Message,
    SendState,
    SendStatus,
)

_logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class SendOutcome:
    """What happened to one ``send_message``/``retry_message`` call."""

    message_id: str
    status: SendStatus
    reply: Message | None = None
    error: Exception | None = None

    @property
    def delivered(self) -> bool:
        return self.status.state == SendState.SENT


class RetryCoordinator:
    """Deliver user messages through the orchestrator, retrying or queueing.

    Parameters
    ----------
    history:
        The conversation log holding the user messages.
    orchestrator:
        Runs the model turn for a delivered message.
    monitor:
        Connectivity source; going online drains the offline queue.
    system_prompt:
        Prompt passed to every turn.
    policy:
        Backoff delays between attempts.
    max_attempts:
        Total attempts (first send included) before giving up.
    queue:
        Offline FIFO; created without persistence when omitted.
    sleep:
        Awaitable used for backoff waits.
    """

    def __init__(
        self,
        history: ConversationHistory,
        orchestrator: TurnOrchestrator,
        monitor: ConnectivityMonitor,
        system_prompt: str = "",
        policy: BackoffPolicy | None = None,
        max_attempts: int = 3,
        queue: OfflineQueue | None = None,
        classifier: ErrorClassifier | None = None,
        event_bus: EventBus | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._history = history
        self._orchestrator = orchestrator
        self._monitor = monitor
        self.system_prompt = system_prompt
        self._policy = policy or BackoffPolicy()
        self._max_attempts = max(1, max_attempts)
        self._queue = queue or OfflineQueue()
        self._classifier = classifier or ErrorClassifier()
        self._event_bus = event_bus
        self._sleep = sleep
        # One turn per conversation at a time
        self._turn_lock = asyncio.Lock()
        self._drain_task: asyncio.Task[None] | None = None
        self._unsubscribe = monitor.on_change(self._on_connectivity_change)

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message(self, message_id: str) -> SendOutcome:
        """Deliver a user message already appended to the history."""
        self._require(message_id)
        if not self._monitor.is_online:
            return await self._park_offline(message_id)
        return await self._send(message_id)

    async def retry_message(self, message_id: str) -> SendOutcome:
        """Manual retry of a failed, offline or queued message.

        Resets the retry counter before sending.
        """
        message = self._require(message_id)
        status = message.send_status or SendStatus()
        if status.state not in (SendState.FAILED, SendState.OFFLINE, SendState.QUEUED):
            raise InvalidTransitionError(status.state.value, SendState.SENDING.value)

        self._history.update(message.updated(retry_count=0))

        if not self._monitor.is_online:
            if status.state == SendState.FAILED:
                return await self._park_offline(message_id)
            await self._queue.enqueue(message_id)
            return SendOutcome(message_id, status)

        await self._queue.remove(message_id)
        return await self._send(message_id)

    def start(self) -> None:
        """Drain messages restored into the queue, if we are online."""
        if self._monitor.is_online and len(self._queue):
            self._schedule_drain()

    async def close(self) -> None:
        self._unsubscribe()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            await asyncio.gather(self._drain_task, return_exceptions=True)
        self._drain_task = None

    # ------------------------------------------------------------------
    # Delivery loop
    # ------------------------------------------------------------------

    async def _send(self, message_id: str, from_queue: bool = False) -> SendOutcome:
        async with self._turn_lock:
            current = self._require(message_id).send_status or SendStatus()
            if not current.can_transition_to(SendState.SENDING):
                # Delivered or re-queued while we waited for the lock
                return SendOutcome(message_id, current)
            attempt = 0
            while True:
                attempt += 1
                await self._set_status(message_id, SendState.SENDING)
                try:
                    reply = await self._orchestrator.run_turn(
                        self._history, self.system_prompt,
                    )
                except ProtocolError as e:
                    # The request itself went through; only the tool loop failed
                    status = await self._set_status(message_id, SendState.SENT)
                    return SendOutcome(message_id, status, reply=e.message, error=e)
                except TurnCancelled as e:
                    status = await self._set_status(
                        message_id, SendState.FAILED,
                        reason=FailureReason.UNKNOWN, can_retry=True,
                    )
                    return SendOutcome(message_id, status, reply=e.message, error=e)
                except Exception as e:
                    classification = self._classifier.classify(e)
                    _logger.warning(
                        "Send of %s failed (attempt %d/%d): %s",
                        message_id, attempt, self._max_attempts, e,
                    )
                    if not classification.retryable:
                        status = await self._set_status(
                            message_id, SendState.FAILED,
                            reason=classification.reason,
                            can_retry=classification.reason != FailureReason.AUTHENTICATION,
                        )
                        return SendOutcome(message_id, status, error=e)

                    if not self._monitor.is_online:
                        outcome = await self._park_offline(message_id, front=from_queue)
                        outcome.error = e
                        return outcome

                    if attempt >= self._max_attempts:
                        status = await self._set_status(
                            message_id, SendState.FAILED,
                            reason=classification.reason, can_retry=True,
                        )
                        return SendOutcome(message_id, status, error=e)

                    await self._set_status(
                        message_id, SendState.RETRYING,
                        attempt=attempt + 1, max_attempts=self._max_attempts,
                    )
                    delay = self._policy.delay(attempt)
                    _logger.info("Retrying %s in %.2fs", message_id, delay)
                    await self._sleep(delay)

                    if not self._monitor.is_online:
                        outcome = await self._park_offline(message_id, front=from_queue)
                        outcome.error = e
                        return outcome
                    continue

                status = await self._set_status(message_id, SendState.SENT)
                return SendOutcome(message_id, status, reply=reply)

    async def _park_offline(self, message_id: str, front: bool = False) -> SendOutcome:
        """offline -> queued; no backoff timer is started."""
        await self._set_status(message_id, SendState.OFFLINE)
        await self._queue.enqueue(message_id, front=front)
        status = await self._set_status(message_id, SendState.QUEUED)
        _logger.info("Queued %s until connectivity returns", message_id)
        return SendOutcome(message_id, status)

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    async def _on_connectivity_change(
        self, online: bool, connection_type: ConnectionType,
    ) -> None:
        await self._emit(EventType.CONNECTIVITY_CHANGED, {
            "online": online,
            "connection_type": connection_type.value,
        })
        if online and len(self._queue):
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        """Send queued messages in enqueue order while online."""
        while self._monitor.is_online:
            message_id = await self._queue.dequeue()
            if message_id is None:
                return
            message = self._history.get(message_id)
            status = message.send_status if message else None
            if status is None or status.state != SendState.QUEUED:
                _logger.debug("Dropping stale queue entry %s", message_id)
                continue
            try:
                await self._send(message_id, from_queue=True)
            except Exception:
                _logger.exception("Draining %s failed", message_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, message_id: str) -> Message:
        message = self._history.get(message_id)
        if message is None:
            raise KeyError(message_id)
        if message.send_status is None:
            raise ValueError(f"Message {message_id} is not a user message")
        return message

    async def _set_status(
        self,
        message_id: str,
        state: SendState,
        **kwargs: Any,
    ) -> SendStatus:
        message = self._require(message_id)
        current = message.send_status or SendStatus()
        status = current.transition(state, **kwargs)
        retry_count = message.retry_count
        if state == SendState.RETRYING:
            retry_count += 1
        self._history.update(message.updated(send_status=status, retry_count=retry_count))
        _logger.debug("Message %s: %s -> %s", message_id, current.state.value, state.value)
        await self._emit(EventType.SEND_STATUS_CHANGED, {
            "message_id": message_id,
            "state": status.state.value,
            "description": status.status_description,
            "retry_count": retry_count,
        })
        return status

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, **data)
