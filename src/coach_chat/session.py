"""ChatSession: wires config, transport, history, tools and delivery together."""

from __future__ import annotations

import logging

from coach_chat.config import CoachConfig
from coach_chat.core.history import ConversationHistory
from coach_chat.core.orchestrator import TurnOrchestrator
from coach_chat.events.bus import EventBus
from coach_chat.llm.client import AsyncLLMClient, Transport
from coach_chat.resilience.backoff import BackoffPolicy
from coach_chat.resilience.connectivity import (
    ConnectivityMonitor,
    ProbeConnectivityMonitor,
)
from coach_chat.resilience.offline_queue import OfflineQueue
from coach_chat.resilience.retry import RetryCoordinator, SendOutcome
from coach_chat.storage.store import ConversationStore, SqliteConversationStore
from coach_chat.tools.registry import ToolRegistry
from coach_chat.types import Attachment, Message, SendState

_logger = logging.getLogger(__name__)


class ChatSession:
    """One conversation with its collaborators.

    Every collaborator can be injected; the defaults build the real ones
    from *config* (httpx transport, SQLite store, a static or probing
    connectivity monitor).
    """

    def __init__(
        self,
        config: CoachConfig,
        transport: Transport | None = None,
        registry: ToolRegistry | None = None,
        store: ConversationStore | None = None,
        monitor: ConnectivityMonitor | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.event_bus = event_bus or EventBus()
        self.registry = registry or ToolRegistry()
        self.store = store or SqliteConversationStore(config.db_path)
        self.history = ConversationHistory.load(self.store)

        self._owns_transport = transport is None
        self.transport = transport or AsyncLLMClient(
            config.profile,
            timeout=config.request_timeout,
            idle_timeout=config.idle_timeout,
        )

        if monitor is None:
            if config.connectivity_url:
                monitor = ProbeConnectivityMonitor(
                    config.connectivity_url, interval=config.connectivity_interval,
                )
            else:
                monitor = ConnectivityMonitor()
        self.monitor = monitor

        self.orchestrator = TurnOrchestrator(
            self.transport,
            self.registry,
            model=config.profile.model,
            event_bus=self.event_bus,
            max_turns=config.max_turns,
            notify_interval=config.notify_interval,
        )
        self.coordinator = RetryCoordinator(
            self.history,
            self.orchestrator,
            self.monitor,
            system_prompt=self.system_prompt(),
            policy=BackoffPolicy.from_spec(config.retry),
            max_attempts=config.retry.max_attempts,
            queue=OfflineQueue(self.store),
            event_bus=self.event_bus,
        )

    def system_prompt(self) -> str:
        prompt = self.config.resolve_system_prompt()
        tools = self.registry.get_prompt_description()
        if tools:
            prompt = f"{prompt}\n\nAvailable tools:\n{tools}"
        return prompt

    async def start(self) -> None:
        if isinstance(self.monitor, ProbeConnectivityMonitor):
            self.monitor.start()
        self.coordinator.system_prompt = self.system_prompt()
        self.coordinator.start()

    async def send(
        self,
        text: str,
        attachments: list[Attachment] | tuple[Attachment, ...] = (),
    ) -> SendOutcome:
        """Append a user message and deliver it."""
        message = Message.user(text, attachments)
        self.history.append(message)
        self.coordinator.system_prompt = self.system_prompt()
        return await self.coordinator.send_message(message.id)

    async def retry(self, message_id: str) -> SendOutcome:
        self.coordinator.system_prompt = self.system_prompt()
        return await self.coordinator.retry_message(message_id)

    def cancel(self) -> None:
        self.orchestrator.cancel()

    def retryable_messages(self) -> list[Message]:
        """User messages a manual retry applies to, oldest first."""
        states = (SendState.FAILED, SendState.OFFLINE, SendState.QUEUED)
        return [
            m for m in self.history
            if m.send_status is not None and m.send_status.state in states
        ]

    async def close(self) -> None:
        await self.coordinator.close()
        if isinstance(self.monitor, ProbeConnectivityMonitor):
            await self.monitor.stop()
        if self._owns_transport and isinstance(self.transport, AsyncLLMClient):
            await self.transport.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
        _logger.debug("Session closed")
