# streaming.py
# Progress events for observers: message types, the per-session log and
# the broadcaster that fans events out to an external transport.
#
# Observability only. Nothing in the engines reads these logs back to make
# a control-flow decision.

import logging
import threading
import time
from collections.abc import Callable
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentline.config import SESSION_TTL_SECONDS
from agentline.models import AgentMetadata

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------


class _StreamMessageBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int = Field(default=0, description="Epoch milliseconds, stamped on append.")
    agent_name: str


class LLMResponseMessage(_StreamMessageBase):
    type: Literal["llm_response"] = "llm_response"
    content: str
    iteration: int
    streaming: bool = False
    has_tool_calls: bool | None = None
    metadata: AgentMetadata | None = None


class FinalResponseMessage(_StreamMessageBase):
    type: Literal["final_response"] = "final_response"
    content: str
    iteration: int
    completed: bool = True
    metadata: AgentMetadata | None = None


class ToolStartMessage(_StreamMessageBase):
    type: Literal["tool_start"] = "tool_start"
    tool_name: str
    iteration: int
    args: dict[str, Any] = Field(default_factory=dict)


class ToolProgressMessage(_StreamMessageBase):
    type: Literal["tool_progress"] = "tool_progress"
    tool_name: str
    iteration: int
    message: str


class ToolResultMessage(_StreamMessageBase):
    type: Literal["tool_result"] = "tool_result"
    tool_name: str
    iteration: int
    result: Any = None
    success: Literal[True] = True


class ToolErrorMessage(_StreamMessageBase):
    type: Literal["tool_error"] = "tool_error"
    tool_name: str
    iteration: int
    error: str
    success: Literal[False] = False


class QuestionsMessage(_StreamMessageBase):
    type: Literal["questions"] = "questions"
    content: str = "The AI needs more information to continue."
    questions: list[str]
    metadata: AgentMetadata | None = None


StreamMessage = Annotated[
    Union[
        LLMResponseMessage,
        FinalResponseMessage,
        ToolStartMessage,
        ToolProgressMessage,
        ToolResultMessage,
        ToolErrorMessage,
        QuestionsMessage,
    ],
    Field(discriminator="type"),
]

_stream_message_adapter: TypeAdapter = TypeAdapter(StreamMessage)


def parse_stream_message(data: dict[str, Any]) -> StreamMessage:
    """Rebuild a typed message from its JSON form (e.g. on the observer side)."""
    return _stream_message_adapter.validate_python(data)


OnMessage = Callable[[str, StreamMessage], None]


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """
    Append-only, per-session message logs.

    Entries are never reordered or removed individually. Whole sessions go
    away only through close() or an explicit evict_expired() call when a TTL
    is configured. Safe to append from several threads; each session keeps
    its own append order and strictly increasing timestamps, so polling with
    `since=<last timestamp seen>` never drops a message.
    """

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._logs: dict[str, list[StreamMessage]] = {}
        self._last_append: dict[str, float] = {}
        self._lock = threading.Lock()

    def append(self, session_id: str, message: StreamMessage) -> StreamMessage:
        """Stamp and store the message. Returns the stamped copy."""
        with self._lock:
            log = self._logs.setdefault(session_id, [])
            now = self._clock()
            stamp = int(now * 1000)
            if log and stamp <= log[-1].timestamp:
                stamp = log[-1].timestamp + 1
            stamped = message.model_copy(update={"timestamp": stamp})
            log.append(stamped)
            self._last_append[session_id] = now
            return stamped

    def messages(self, session_id: str, since: int | None = None) -> list[StreamMessage]:
        with self._lock:
            log = list(self._logs.get(session_id, ()))
        if since is None:
            return log
        return [m for m in log if m.timestamp > since]

    def count(self, session_id: str) -> int:
        with self._lock:
            return len(self._logs.get(session_id, ()))

    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._logs)

    def close(self, session_id: str) -> bool:
        """Drop a finished session. Returns False if it was unknown."""
        with self._lock:
            self._last_append.pop(session_id, None)
            return self._logs.pop(session_id, None) is not None

    def evict_expired(self, now: float | None = None) -> list[str]:
        """Close every session idle for longer than the TTL. No-op without a TTL."""
        if self.ttl_seconds is None:
            return []
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                session_id
                for session_id, last in self._last_append.items()
                if now - last > self.ttl_seconds
            ]
            for session_id in expired:
                self._logs.pop(session_id, None)
                self._last_append.pop(session_id, None)
        if expired:
            logger.debug("Evicted %d idle session(s): %s", len(expired), expired)
        return expired


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------


class Broadcaster:
    """
    Records progress events and forwards each one to an optional observer.

    Delivery is best-effort: an observer failure is logged and the message
    stays in the store for later polling.

    Example:
        broadcaster = Broadcaster(on_message=lambda sid, msg: ws.send(sid, msg))
        broadcaster.add_message("session-123", llm_response_message("assistant", "Hi", 1))
        broadcaster.get_messages("session-123")
    """

    def __init__(self, store: SessionStore | None = None, on_message: OnMessage | None = None) -> None:
        self.store = store if store is not None else SessionStore(ttl_seconds=SESSION_TTL_SECONDS)
        self._on_message = on_message

    def set_on_message(self, on_message: OnMessage | None) -> None:
        self._on_message = on_message

    def add_message(self, session_id: str, message: StreamMessage) -> StreamMessage:
        stamped = self.store.append(session_id, message)
        if self._on_message is not None:
            try:
                self._on_message(session_id, stamped)
            except Exception:
                logger.warning(
                    "Observer delivery failed for session %s (%s); message kept in store.",
                    session_id,
                    stamped.type,
                    exc_info=True,
                )
        return stamped

    def get_messages(self, session_id: str, since: int | None = None) -> list[StreamMessage]:
        return self.store.messages(session_id, since)

    def has_messages(self, session_id: str) -> bool:
        return self.store.count(session_id) > 0


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def llm_response_message(
    agent_name: str,
    content: str,
    iteration: int,
    *,
    streaming: bool = False,
    has_tool_calls: bool | None = None,
    metadata: AgentMetadata | None = None,
) -> LLMResponseMessage:
    return LLMResponseMessage(
        agent_name=agent_name,
        content=content,
        iteration=iteration,
        streaming=streaming,
        has_tool_calls=has_tool_calls,
        metadata=metadata,
    )


def final_response_message(
    agent_name: str, content: str, iteration: int, metadata: AgentMetadata | None = None
) -> FinalResponseMessage:
    return FinalResponseMessage(agent_name=agent_name, content=content, iteration=iteration, metadata=metadata)


def tool_start_message(tool_name: str, agent_name: str, iteration: int, args: dict[str, Any]) -> ToolStartMessage:
    return ToolStartMessage(tool_name=tool_name, agent_name=agent_name, iteration=iteration, args=args)


def tool_progress_message(tool_name: str, agent_name: str, iteration: int, message: str) -> ToolProgressMessage:
    return ToolProgressMessage(tool_name=tool_name, agent_name=agent_name, iteration=iteration, message=message)


def tool_result_message(tool_name: str, agent_name: str, iteration: int, result: Any) -> ToolResultMessage:
    return ToolResultMessage(tool_name=tool_name, agent_name=agent_name, iteration=iteration, result=result)


def tool_error_message(tool_name: str, agent_name: str, iteration: int, error: str) -> ToolErrorMessage:
    return ToolErrorMessage(tool_name=tool_name, agent_name=agent_name, iteration=iteration, error=error)


def questions_message(
    agent_name: str,
    questions: list[str],
    content: str = "The AI needs more information to continue.",
    metadata: AgentMetadata | None = None,
) -> QuestionsMessage:
    return QuestionsMessage(agent_name=agent_name, questions=list(questions), content=content, metadata=metadata)
