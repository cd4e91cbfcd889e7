# steps.py
# The step substrate the engines run on.
#
# Engines only ever talk to a StepRunner. A durable implementation (a
# workflow service, a database journal) makes runs resumable; LocalStepRunner
# keeps the journal in memory, which is enough for tests, scripts and
# replaying a run from an exported journal.

import copy
import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from agentline.config import parse_duration
from agentline.models import Event

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventMatcher = Callable[[Event], bool]


@runtime_checkable
class StepRunner(Protocol):
    """
    Named, at-most-once units of work.

    run(name, fn) executes fn the first time a name is seen and returns the
    recorded result on every later call with that name, including calls made
    while replaying the run in a fresh process.

    occurrence(name) returns 1, 2, 3... on successive calls with the same
    name, in the order the workflow makes them.
    """

    def run(self, name: str, fn: Callable[[], T]) -> T: ...

    def wait_for_event(
        self,
        step_id: str,
        event: str,
        *,
        match: EventMatcher | None = None,
        timeout: str | float | None = None,
    ) -> Event | None: ...

    def send_event(self, name: str, payload: dict[str, Any]) -> None: ...

    def occurrence(self, name: str) -> int: ...


class LocalStepRunner:
    """
    In-memory step journal.

    Pass a previous runner's `journal` to replay: already recorded steps
    return their stored results and are not executed again. `executed`
    lists the names actually executed by this runner, in order.

    Events sent before anyone waits for them are buffered, and each event
    satisfies at most one wait.

    occurrence(name) counts how often a name has been claimed on this
    runner, starting at 1. A workflow that claims names in the same order
    gets the same numbers on replay, so repeated units of work (the same
    agent run twice) can be told apart.

    Example:
        first = LocalStepRunner()
        pipeline.run(first, {"topic": "tides"})

        replay = LocalStepRunner(journal=first.journal)
        pipeline.run(replay, {"topic": "tides"})
        assert replay.executed == []
    """

    def __init__(self, journal: dict[str, Any] | None = None) -> None:
        self._journal: dict[str, Any] = copy.deepcopy(journal) if journal else {}
        self._events: list[Event] = []
        self._lock = threading.Lock()
        self._event_arrived = threading.Condition(self._lock)
        self.executed: list[str] = []
        self._occurrences: Counter[str] = Counter()

    @property
    def journal(self) -> dict[str, Any]:
        """A deep copy of everything recorded so far."""
        with self._lock:
            return copy.deepcopy(self._journal)

    def run(self, name: str, fn: Callable[[], T]) -> T:
        with self._lock:
            if name in self._journal:
                logger.debug("Step %s replayed from journal.", name)
                return copy.deepcopy(self._journal[name])

        logger.debug("Step %s executing.", name)
        result = fn()

        with self._lock:
            self._journal[name] = copy.deepcopy(result)
            self.executed.append(name)
        return result

    def occurrence(self, name: str) -> int:
        with self._lock:
            self._occurrences[name] += 1
            return self._occurrences[name]

    def wait_for_event(
        self,
        step_id: str,
        event: str,
        *,
        match: EventMatcher | None = None,
        timeout: str | float | None = None,
    ) -> Event | None:
        seconds = parse_duration(timeout)
        deadline = None if seconds is None else time.monotonic() + seconds

        with self._event_arrived:
            if step_id in self._journal:
                recorded = self._journal[step_id]
                logger.debug("Wait %s replayed from journal.", step_id)
                return None if recorded is None else Event.model_validate(recorded)

            logger.debug("Wait %s waiting for %s (timeout=%s).", step_id, event, timeout)
            while True:
                received = self._take_event(event, match)
                if received is not None:
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    logger.debug("Wait %s timed out.", step_id)
                    break
                self._event_arrived.wait(remaining)

            self._journal[step_id] = None if received is None else received.model_dump(mode="json")
            self.executed.append(step_id)
            return received

    def send_event(self, name: str, payload: dict[str, Any]) -> None:
        with self._event_arrived:
            self._events.append(Event(name=name, data=payload))
            self._event_arrived.notify_all()

    def _take_event(self, event: str, match: EventMatcher | None) -> Event | None:
        for index, candidate in enumerate(self._events):
            if candidate.name != event:
                continue
            if match is not None and not match(candidate):
                continue
            return self._events.pop(index)
        return None


class NamespacedStepRunner:
    """Prefixes every step name so concurrent agents never collide."""

    def __init__(self, inner: StepRunner, prefix: str) -> None:
        self.inner = inner
        self.prefix = prefix

    def _name(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def run(self, name: str, fn: Callable[[], T]) -> T:
        return self.inner.run(self._name(name), fn)

    def wait_for_event(
        self,
        step_id: str,
        event: str,
        *,
        match: EventMatcher | None = None,
        timeout: str | float | None = None,
    ) -> Event | None:
        return self.inner.wait_for_event(self._name(step_id), event, match=match, timeout=timeout)

    def send_event(self, name: str, payload: dict[str, Any]) -> None:
        self.inner.send_event(name, payload)

    def occurrence(self, name: str) -> int:
        return self.inner.occurrence(self._name(name))
