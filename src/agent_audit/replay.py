# replay.py
# Deterministic replay of a recorded run, and structural diff of two runs.
#
# Replay holds the recorded plan fixed and lets mocks stand in for the tool
# and model backends: every *.requested event with a registered mock has its
# paired *.responded payload replaced by the mock's output. Each replayed
# event is re-derived (same seq, timestamp and type, causes remapped to the
# new ids), so a divergent backend shows up as a different digest sequence.

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from agent_audit.invariants import Invariant
from agent_audit.models import DiffResult, Event, InvariantOutcome, ReplayResult

_REQUEST_KIND = {"tool.requested": "tool", "model.requested": "model"}
_RESPONSE_KIND = {"tool.responded": "tool", "model.responded": "model"}

# Recorded response fields that no longer apply once a mock has answered.
_DROPPED_ON_SUBSTITUTION = ("output", "error", "exitCode")


@dataclass(frozen=True)
class MockTool:
    """Stand-in for a tool backend: simulate(args) -> output."""

    name: str
    simulate: Callable[[Any], Any]


@dataclass(frozen=True)
class MockModel:
    """Stand-in for a model backend: simulate(prompt) -> completion."""

    name: str
    simulate: Callable[[Any], str]


@dataclass
class _Pending:
    kind: str
    output: Any


class ReplayHarness:
    """
    Re-walk an event log against mock backends and re-check invariants.

    Example:
        harness = ReplayHarness(
            events=store.read_log(),
            tools={"ls": MockTool("ls", lambda args: {"files": ["a.txt"]})},
            invariants=[PlanBeforeAction()],
        )
        result = harness.replay()
    """

    def __init__(
        self,
        events: Sequence[Event],
        tools: dict[str, MockTool] | None = None,
        models: dict[str, MockModel] | None = None,
        invariants: Iterable[Invariant] = (),
    ) -> None:
        self._events = list(events)
        self._tools = dict(tools or {})
        self._models = dict(models or {})
        self._invariants = list(invariants)
        self._run_id = self._events[0].run_id if self._events else "unknown"

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self) -> ReplayResult:
        id_map: dict[str, str] = {}
        pending: dict[str, _Pending] = {}
        by_call_id: dict[str, str] = {}
        replayed: list[Event] = []
        substituted: list[int] = []

        for event in self._events:
            payload = event.payload

            if event.type in _REQUEST_KIND:
                mocked = self._simulate(event)
                if mocked is not None:
                    pending[event.id] = mocked
                    call_id = payload.get("callId")
                    if call_id:
                        by_call_id[call_id] = event.id

            elif event.type in _RESPONSE_KIND:
                request_id = self._pair(event, pending, by_call_id)
                if request_id is not None:
                    output = pending.pop(request_id).output
                    payload = {
                        key: value
                        for key, value in payload.items()
                        if key not in _DROPPED_ON_SUBSTITUTION
                    }
                    payload["output"] = output
                    substituted.append(event.seq)

            rebuilt = Event.create(
                run_id=event.run_id,
                seq=event.seq,
                type=event.type,
                timestamp=event.timestamp,
                payload=payload,
                causes=[id_map.get(cause, cause) for cause in event.causes],
                meta=event.meta,
                v=event.v,
            )
            id_map[event.id] = rebuilt.id
            replayed.append(rebuilt)

        outcomes = [
            InvariantOutcome(invariant=invariant.name, result=invariant.check(tuple(replayed), self._run_id))
            for invariant in self._invariants
        ]
        return ReplayResult(
            success=all(outcome.result.valid for outcome in outcomes),
            invariant_results=outcomes,
            events=replayed,
            substituted=substituted,
        )

    def _simulate(self, request: Event) -> _Pending | None:
        kind = _REQUEST_KIND[request.type]
        payload = request.payload
        meta = request.meta

        if kind == "tool":
            name = payload.get("tool") or (meta.tool if meta else None)
            mock = self._tools.get(name) if name else None
            if mock is None:
                return None
            return _Pending(kind, mock.simulate(payload.get("args") or {}))

        name = payload.get("model") or (meta.model if meta else None)
        model = self._models.get(name) if name else None
        if model is None:
            return None
        return _Pending(kind, model.simulate(payload.get("prompt", "")))

    @staticmethod
    def _pair(
        response: Event,
        pending: dict[str, _Pending],
        by_call_id: dict[str, str],
    ) -> str | None:
        """Find the mocked request this response answers: by callId, else by cause."""
        kind = _RESPONSE_KIND[response.type]
        call_id = response.payload.get("callId")
        if call_id and call_id in by_call_id:
            request_id = by_call_id[call_id]
            if request_id in pending and pending[request_id].kind == kind:
                del by_call_id[call_id]
                return request_id

        for cause in response.causes:
            if cause in pending and pending[cause].kind == kind:
                return cause
        return None

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    @staticmethod
    def diff(log_a: Sequence[Event], log_b: Sequence[Event]) -> DiffResult:
        """
        Compare two logs digest by digest.

        Reports the first index whose ids differ, or the shorter length when
        one log is a strict prefix of the other.
        """
        common = min(len(log_a), len(log_b))

        for index in range(common):
            if log_a[index].id != log_b[index].id:
                return DiffResult(
                    identical=False,
                    diverge_at=index,
                    summary=f"Logs diverge at event {index}: {log_a[index].type} vs {log_b[index].type}",
                    types=(log_a[index].type, log_b[index].type),
                )

        if len(log_a) != len(log_b):
            return DiffResult(
                identical=False,
                diverge_at=common,
                summary=f"Log length mismatch: {len(log_a)} vs {len(log_b)}",
                types=(
                    log_a[common].type if common < len(log_a) else None,
                    log_b[common].type if common < len(log_b) else None,
                ),
            )

        return DiffResult(identical=True, summary="Logs are identical")
