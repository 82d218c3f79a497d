# kernel.py
# Single-writer logging kernel for one agent run.
#
# The Kernel is the only producer of events. Each log() call, in order:
#   assign seq + timestamp → derive content id → persist (if a store is
#   attached) → append to in-memory history → evaluate invariants
#
# Everything is synchronous; the next log() cannot start before the previous
# one has finished, so every invariant sees a gap-free prefix of the run.

import copy
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from agent_audit import display
from agent_audit.invariants import Invariant
from agent_audit.models import SCHEMA_VERSION, Event, EventType, Meta
from agent_audit.store import EventStore


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class KernelError(Exception):
    """Base class for kernel failures."""


class PersistenceError(KernelError):
    """Raised when the attached store cannot durably append an event."""


class RunHaltedError(KernelError):
    """Raised by log() after a fatal invariant failure halted the run."""


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------


class Kernel:
    """
    Append-only event log for a single run, with reactive invariant checks.

    Invariant failures are recorded as `invariant.failed` events caused by
    the triggering event. Those events are appended on the kernel's own path
    and never trigger another round of checks. A `fatal` failure halts the
    run when `halt_on_fatal` is set: it is still recorded, but later log()
    calls raise RunHaltedError.

    Example:
        kernel = Kernel("run-001", store=EventStore.from_settings("run-001"))
        kernel.register_invariant(PlanBeforeAction())
        decision = kernel.log("decision.made", {"rationale": "list files", "plan": ["ls"]})
        kernel.log("tool.requested", {"tool": "ls"}, causes=[decision.id])
    """

    def __init__(
        self,
        run_id: str,
        store: EventStore | None = None,
        invariants: Iterable[Invariant] = (),
        version: int | float = SCHEMA_VERSION,
        clock: Callable[[], int] | None = None,
        halt_on_fatal: bool = True,
    ) -> None:
        self._run_id = run_id
        self._store = store
        self._invariants: list[Invariant] = list(invariants)
        self._version = version
        self._clock = clock or _wall_clock_ms
        self._halt_on_fatal = halt_on_fatal
        self._history: list[Event] = []
        self._halted = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def last_event(self) -> Event | None:
        return self._history[-1].model_copy(deep=True) if self._history else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register_invariant(self, invariant: Invariant) -> None:
        """Add a check. Registration order is evaluation order."""
        self._invariants.append(invariant)

    def log(
        self,
        type: EventType,
        payload: dict[str, Any] | None = None,
        meta: Meta | dict[str, Any] | None = None,
        causes: Sequence[str] = (),
    ) -> Event:
        """
        Append one event and enforce invariants against the whole history.

        Raises RunHaltedError if a fatal invariant already halted the run,
        and PersistenceError if the store could not write the event; in
        that case nothing is added to history. The returned event is a copy;
        mutating its payload never reaches the recorded history.
        """
        if self._halted:
            raise RunHaltedError(f"Run '{self._run_id}' is halted; refusing to log '{type}'.")

        event = self._append(type, payload or {}, meta, causes)
        self._enforce(event)
        return event.model_copy(deep=True)

    def get_history(self) -> tuple[Event, ...]:
        """Deep copy of the history; mutating it never reaches the kernel."""
        return tuple(event.model_copy(deep=True) for event in self._history)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(
        self,
        type: EventType,
        payload: dict[str, Any],
        meta: Meta | dict[str, Any] | None,
        causes: Sequence[str],
    ) -> Event:
        event = Event.create(
            run_id=self._run_id,
            seq=len(self._history),
            type=type,
            timestamp=self._clock(),
            payload=copy.deepcopy(payload),
            causes=tuple(causes),
            meta=meta,
            v=self._version,
        )

        if self._store is not None:
            try:
                self._store.append(event)
            except OSError as exc:
                display.persistence_failed(self._run_id, event.seq, exc)
                raise PersistenceError(
                    f"Failed to persist seq={event.seq} ({event.type}) for run '{self._run_id}': {exc}"
                ) from exc

        self._history.append(event)
        return event

    def _enforce(self, trigger: Event) -> None:
        # All invariants see the same history, ending at the trigger. Each
        # gets its own copy so a check cannot rewrite stored events.
        failures = []
        for invariant in self._invariants:
            snapshot = tuple(event.model_copy(deep=True) for event in self._history)
            result = invariant.check(snapshot, self._run_id)
            if not result.valid:
                failures.append((invariant, result))

        for invariant, result in failures:
            failed = self._append(
                "invariant.failed",
                {
                    "invariant": invariant.name,
                    "message": result.message or "No message",
                    "severity": result.severity,
                    "triggerEventId": trigger.id,
                },
                {"agentId": "kernel"},
                [trigger.id],
            )
            display.invariant_failed(failed)

            if result.severity == "fatal" and self._halt_on_fatal:
                self._halted = True

        if self._halted:
            display.run_halted(self._run_id, f"fatal invariant failure after seq={trigger.seq}")
