# invariants.py
# Policy rules evaluated over a run's event history.
#
# An invariant is a named predicate over (history, run_id). The kernel runs
# every registered invariant after each caller-logged event; the replay
# harness runs them once over a finished history. Invariants never mutate
# the history they are given.

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from agent_audit.models import Event, InvariantResult

CheckFn = Callable[[Sequence[Event], str], InvariantResult]


class Invariant(ABC):
    """Base class for history rules. Subclasses set `name` and `description`."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def check(self, events: Sequence[Event], run_id: str) -> InvariantResult:
        """Return validity and severity for `events`, the full history of `run_id`."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class CallableInvariant(Invariant):
    """
    Wrap a plain function as an invariant.

    Example:
        no_budget = CallableInvariant(
            "no_budget_exhaustion",
            "Runs must finish within budget.",
            lambda events, run_id: InvariantResult(
                valid=not any(e.type == "budget.exhausted" for e in events),
                severity="fatal",
            ),
        )
    """

    def __init__(self, name: str, description: str, fn: CheckFn) -> None:
        self.name = name
        self.description = description
        self._fn = fn

    def check(self, events: Sequence[Event], run_id: str) -> InvariantResult:
        return self._fn(events, run_id)


# ---------------------------------------------------------------------------
# Reference rules
# ---------------------------------------------------------------------------


class PlanBeforeAction(Invariant):
    """Every tool request must cite a decision.made event among its causes."""

    name = "plan_before_action"
    description = "All tool requests must be preceded by a decision."

    def check(self, events: Sequence[Event], run_id: str) -> InvariantResult:
        if not events or events[-1].type != "tool.requested":
            return InvariantResult(valid=True)

        request = events[-1]
        by_id = {event.id: event for event in events}
        if any(
            cause in by_id and by_id[cause].type == "decision.made"
            for cause in request.causes
        ):
            return InvariantResult(valid=True)

        tool = request.payload.get("tool") or (request.meta.tool if request.meta else None)
        return InvariantResult(
            valid=False,
            message=f"Tool '{tool}' called without a decision.made cause (seq={request.seq}).",
            severity="error",
        )


class NoFileCollision(Invariant):
    """A transaction may touch each path at most once."""

    name = "no_file_collision"
    description = "fs.diff events within one txId must target distinct paths."

    def check(self, events: Sequence[Event], run_id: str) -> InvariantResult:
        if not events or events[-1].type != "fs.diff":
            return InvariantResult(valid=True)

        latest = events[-1]
        tx_id = latest.payload.get("txId")
        path = latest.payload.get("path")
        for earlier in events[:-1]:
            if (
                earlier.type == "fs.diff"
                and earlier.payload.get("txId") == tx_id
                and earlier.payload.get("path") == path
            ):
                return InvariantResult(
                    valid=False,
                    message=f"Path '{path}' touched twice in transaction '{tx_id}' (seq={latest.seq}).",
                    severity="error",
                )
        return InvariantResult(valid=True)
