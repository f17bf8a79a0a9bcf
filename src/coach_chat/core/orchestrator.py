"""TurnOrchestrator: the multi-turn loop behind one user request.

    stream → accumulate → detect tool calls → execute → loop

Each iteration streams one model reply into a ResponseAccumulator, binds an
assistant message to it on the first byte, and hands the finished text to
the ToolCallDetector.  A reply without tool calls ends the loop; otherwise
the calls run and a single system message with their results is appended
before the next iteration.  The orchestrator never retries: errors the
fallback cannot absorb propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Awaitable, TypeVar

from coach_chat.core.accumulator import ResponseAccumulator
from coach_chat.core.executor import Executor, format_tool_results
from coach_chat.core.history import TRUNCATION_MARKER, ConversationHistory
from coach_chat.errors import (
    ChatError,
    ProtocolError,
    ServerError,
    TransportError,
    TurnCancelled,
)
from coach_chat.events.batcher import UpdateBatcher
from coach_chat.events.bus import EventBus
from coach_chat.llm.client import Transport
from coach_chat.tools.detector import Detection, MalformedCall, ToolCallDetector
from coach_chat.tools.registry import ToolRegistry
from coach_chat.types import (
    ChatRequest,
    Completed,
    ContentDelta,
    EventType,
    Failed,
    Message,
    MessageRole,
    MessageState,
    ReasoningDelta,
    ToolCallResult,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

EMPTY_RESPONSE_PLACEHOLDER = (
    "I've processed your request, but encountered an issue generating a "
    "response. Please try again."
)
TURN_CAP_NOTE = (
    "[Stopped: the assistant kept requesting tool calls without reaching an "
    "answer. Please try rephrasing your request.]"
)

_END = object()
_NAME_IN_MARKER_RE = re.compile(r"\[TOOL_CALL:\s*(\w+)")


class _CancelRequested(Exception):
    pass


@dataclass
class _TurnState:
    """Mutable bookkeeping for one streaming iteration."""

    acc: ResponseAccumulator = field(default_factory=ResponseAccumulator)
    message_id: str | None = None
    announced: bool = False
    batcher: UpdateBatcher | None = None


async def _anext_or_end(iterator: Any) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


def _as_chat_error(error: Exception) -> Exception:
    if isinstance(error, ChatError):
        return error
    return TransportError(f"Stream failed: {error}")


def _malformed_result(call: MalformedCall) -> ToolCallResult:
    m = _NAME_IN_MARKER_RE.match(call.raw)
    name = m.group(1) if m else "TOOL_CALL"
    return ToolCallResult.error(
        name,
        f"Could not parse tool call {call.raw!r} ({call.reason}). "
        'Use the syntax [TOOL_CALL: name(key: "value", key: "value")].',
    )


class TurnOrchestrator:
    """Drive streaming model calls and tool execution until a final answer.

    Parameters
    ----------
    transport:
        Model endpoint with ``stream()`` and ``complete()``.
    registry:
        Tools the model may call.
    model:
        Model name put on every request.
    event_bus:
        Receives turn, message and tool events (optional).
    max_turns:
        Maximum model calls per request; protects against tool-call loops.
    notify_interval:
        Cadence (seconds) of batched streaming updates to history and
        presentation.
    """

    def __init__(
        self,
        transport: Transport,
        registry: ToolRegistry,
        model: str = "",
        event_bus: EventBus | None = None,
        max_turns: int = 5,
        notify_interval: float = 0.05,
        detector: ToolCallDetector | None = None,
    ) -> None:
        self._transport = transport
        self._model = model
        self._event_bus = event_bus or EventBus()
        self._executor = Executor(registry, self._event_bus)
        self._detector = detector or ToolCallDetector()
        self._max_turns = max_turns
        self._notify_interval = notify_interval
        self._cancel_event: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._cancel_event is not None

    def cancel(self) -> None:
        """Stop the running turn; ``run_turn`` then raises TurnCancelled."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def run_turn(
        self, history: ConversationHistory, system_prompt: str,
    ) -> Message:
        """Run model turns until one yields no tool calls.

        Returns the finalized assistant message.  Raises TransportError or
        ServerError when both streaming and the non-streaming fallback
        fail, ClientError for rejected requests, ProtocolError when the
        turn cap is hit and TurnCancelled after ``cancel()``.
        """
        if self._cancel_event is not None:
            raise RuntimeError("A turn is already running")
        self._cancel_event = asyncio.Event()
        state = _TurnState()

        await self._emit(EventType.TURN_STARTED, {"max_turns": self._max_turns})

        try:
            last: Message | None = None
            for turn in range(1, self._max_turns + 1):
                state = _TurnState()
                message, detection = await self._run_step(
                    history, system_prompt, state,
                )
                if detection is None or not detection.has_markers:
                    await self._emit(EventType.TURN_COMPLETED, {
                        "message_id": message.id,
                        "turns": turn,
                    })
                    return message

                last = message
                if turn == self._max_turns:
                    break
                await self._execute_tools(history, detection)
                if self._cancel_event.is_set():
                    raise _CancelRequested
        except _CancelRequested:
            kept = await self._finalize_cancelled(history, state)
            await self._emit(EventType.TURN_CANCELLED, {
                "message_id": kept.id if kept else None,
            })
            raise TurnCancelled(kept) from None
        except asyncio.CancelledError:
            await self._finalize_cancelled(history, state)
            raise
        except Exception as e:
            _logger.warning("Turn failed: %s: %s", type(e).__name__, e)
            await self._finalize_failed(history, state)
            await self._emit(EventType.TURN_FAILED, {
                "error": f"{type(e).__name__}: {e}",
            })
            raise
        finally:
            self._cancel_event = None

        noted = self._note_turn_cap(history, last)
        _logger.warning("Turn cap of %d reached", self._max_turns)
        await self._emit(EventType.TURN_FAILED, {
            "error": "turn cap exceeded",
            "message_id": noted.id if noted else None,
        })
        raise ProtocolError(
            f"No final answer after {self._max_turns} turns", message=noted,
        )

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        history: ConversationHistory,
        system_prompt: str,
        state: _TurnState,
    ) -> tuple[Message, Detection | None]:
        request = ChatRequest(
            model=self._model,
            system_prompt=system_prompt,
            history=history.api_messages(),
        )
        state.batcher = UpdateBatcher(
            partial(self._flush, history, state), self._notify_interval,
        )

        try:
            await self._consume_stream(request, history, state)
        except (TransportError, ServerError) as e:
            await self._fallback(request, history, state, e)

        await state.batcher.flush_now()
        final = state.acc.finalize()

        if final.is_empty:
            _logger.info("Empty model reply, using placeholder")
            message = await self._finalize(
                history, state, EMPTY_RESPONSE_PLACEHOLDER, None,
            )
            return message, None

        detection = self._detector.detect(final.content)
        if not detection.has_markers:
            content = final.content if final.content.strip() else EMPTY_RESPONSE_PLACEHOLDER
            message = await self._finalize(history, state, content, final.reasoning)
            return message, detection

        _logger.debug(
            "Detected %d tool call(s), %d malformed",
            len(detection.calls), len(detection.malformed),
        )
        message = await self._finalize(
            history, state, detection.cleaned_text, final.reasoning,
        )
        return message, detection

    async def _consume_stream(
        self,
        request: ChatRequest,
        history: ConversationHistory,
        state: _TurnState,
    ) -> None:
        stream = self._transport.stream(request)
        iterator = stream.__aiter__()
        try:
            while True:
                event = await self._race(_anext_or_end(iterator))
                if event is _END or isinstance(event, Completed):
                    break
                if isinstance(event, Failed):
                    raise _as_chat_error(event.error)
                if isinstance(event, ContentDelta):
                    state.acc = state.acc.append_content(event.text)
                elif isinstance(event, ReasoningDelta):
                    state.acc = state.acc.append_reasoning(event.text)
                else:
                    continue
                if not state.acc.is_bound:
                    self._bind(history, state)
                state.batcher.mark_dirty()
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        state.acc = state.acc.mark_complete()

    async def _fallback(
        self,
        request: ChatRequest,
        history: ConversationHistory,
        state: _TurnState,
        error: Exception,
    ) -> None:
        _logger.warning("Streaming failed (%s), retrying turn without streaming", error)
        await self._emit(EventType.STREAM_FALLBACK, {
            "error": str(error),
            "had_content": state.acc.has_content,
            "had_reasoning": state.acc.has_reasoning,
        })
        result = await self._race(
            self._transport.complete(replace(request, stream=False)),
        )
        state.acc = state.acc.with_fallback(result.content, result.reasoning)
        if not state.acc.is_bound and (state.acc.has_content or state.acc.has_reasoning):
            self._bind(history, state)

    async def _execute_tools(
        self, history: ConversationHistory, detection: Detection,
    ) -> Message:
        exec_result = await self._executor.execute(detection.calls)

        ordered = [(tc.span[0], r) for tc, r in exec_result.results]
        ordered += [(m.span[0], _malformed_result(m)) for m in detection.malformed]
        ordered.sort(key=lambda item: item[0])

        message = Message.system(format_tool_results([r for _, r in ordered]))
        history.append(message)
        await self._emit(EventType.MESSAGE_CREATED, {
            "message_id": message.id,
            "role": message.role.value,
            "content": message.content,
        })
        return message

    # ------------------------------------------------------------------
    # Message lifecycle
    # ------------------------------------------------------------------

    def _bind(self, history: ConversationHistory, state: _TurnState) -> None:
        message = Message(role=MessageRole.ASSISTANT, state=MessageState.STREAMING)
        index = history.append(message)
        state.acc = state.acc.bind(index)
        state.message_id = message.id

    def _visible(self, content: str) -> str:
        cleaned = self._detector.detect(content).cleaned_text
        return self._detector.visible_prefix(cleaned).rstrip()

    async def _flush(self, history: ConversationHistory, state: _TurnState) -> None:
        if state.message_id is None:
            return
        current = history.get(state.message_id)
        if current is None or current.state != MessageState.STREAMING:
            return
        message = replace(
            current,
            content=self._detector.visible_prefix(state.acc.content),
            reasoning=state.acc.reasoning,
        )
        history.update(message)
        await self._announce(state, message)

    async def _finalize(
        self,
        history: ConversationHistory,
        state: _TurnState,
        content: str,
        reasoning: str | None,
        message_state: MessageState = MessageState.COMPLETED,
    ) -> Message:
        current = history.get(state.message_id) if state.message_id else None
        if current is None:
            message = Message(
                role=MessageRole.ASSISTANT,
                content=content,
                reasoning=reasoning,
                state=message_state,
            )
            history.append(message)
            state.message_id = message.id
        else:
            message = replace(
                current, content=content, reasoning=reasoning, state=message_state,
            )
            history.update(message)
        await self._announce(state, message, final=True)
        return message

    async def _finalize_cancelled(
        self, history: ConversationHistory, state: _TurnState,
    ) -> Message | None:
        if state.batcher is not None:
            await state.batcher.flush_now()
        if state.message_id is None:
            return None
        current = history.get(state.message_id)
        if current is None or current.state != MessageState.STREAMING:
            return current

        visible = self._visible(state.acc.content)
        if visible:
            return await self._finalize(
                history, state, visible + TRUNCATION_MARKER, state.acc.reasoning,
            )
        return await self._finalize(
            history, state, "", state.acc.reasoning, MessageState.FAILED,
        )

    async def _finalize_failed(
        self, history: ConversationHistory, state: _TurnState,
    ) -> None:
        if state.batcher is not None:
            await state.batcher.flush_now()
        if state.message_id is None:
            return
        current = history.get(state.message_id)
        if current is None or current.state != MessageState.STREAMING:
            return
        await self._finalize(
            history,
            state,
            self._visible(state.acc.content),
            state.acc.reasoning,
            MessageState.FAILED,
        )

    def _note_turn_cap(
        self, history: ConversationHistory, last: Message | None,
    ) -> Message | None:
        if last is None:
            return None
        current = history.get(last.id) or last
        content = f"{current.content}\n\n{TURN_CAP_NOTE}" if current.content else TURN_CAP_NOTE
        noted = replace(current, content=content)
        history.update(noted)
        return noted

    async def _announce(
        self, state: _TurnState, message: Message, final: bool = False,
    ) -> None:
        if not state.announced:
            state.announced = True
            await self._emit(EventType.MESSAGE_CREATED, {
                "message_id": message.id,
                "role": message.role.value,
            })
        await self._emit(EventType.MESSAGE_UPDATED, {
            "message_id": message.id,
            "content": message.content,
            "reasoning": message.reasoning,
            "state": message.state.value,
            "final": final,
        })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _race(self, aw: Awaitable[T]) -> T:
        """Await *aw* unless ``cancel()`` fires first."""
        assert self._cancel_event is not None
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task in done:
            return task.result()
        raise _CancelRequested

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.publish(event_type, **data)
