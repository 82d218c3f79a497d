from unittest.mock import MagicMock

import pytest

from agent_audit.invariants import CallableInvariant, PlanBeforeAction
from agent_audit.kernel import Kernel, PersistenceError, RunHaltedError
from agent_audit.models import InvariantResult
from agent_audit.verify import verify_run


def failing(name, severity="error"):
    return CallableInvariant(
        name,
        f"{name} always fails.",
        lambda events, run_id: InvariantResult(valid=False, message=f"{name} failed", severity=severity),
    )


# ---------------------------------------------------------------------------
# Sequencing and identity
# ---------------------------------------------------------------------------


def test_log_assigns_gapless_seq_and_content_ids(clock):
    kernel = Kernel("run-001", clock=clock)
    for i in range(5):
        kernel.log("decision.made", {"rationale": f"step {i}", "plan": []})

    history = kernel.get_history()
    assert [e.seq for e in history] == [0, 1, 2, 3, 4]
    assert all(e.id == e.recompute_id() for e in history)
    assert len({e.id for e in history}) == 5
    assert all(e.run_id == "run-001" for e in history)


def test_log_records_meta_and_causes(clock):
    kernel = Kernel("run-001", clock=clock)
    decision = kernel.log("decision.made", {"rationale": "r"}, meta={"agentId": "main"})
    request = kernel.log("tool.requested", {"tool": "ls"}, meta={"tool": "exec"}, causes=[decision.id])

    assert decision.meta.agent_id == "main"
    assert request.causes == (decision.id,)
    assert request.timestamp > decision.timestamp


# ---------------------------------------------------------------------------
# History isolation
# ---------------------------------------------------------------------------


def test_get_history_returns_isolated_copies(clock):
    kernel = Kernel("run-001", clock=clock)
    kernel.log("decision.made", {"rationale": "r", "plan": ["a"]})

    snapshot = kernel.get_history()
    snapshot[0].payload["plan"].append("injected")

    assert kernel.get_history()[0].payload["plan"] == ["a"]
    assert isinstance(snapshot, tuple)


def test_caller_payload_mutation_does_not_reach_history(clock):
    kernel = Kernel("run-001", clock=clock)
    payload = {"rationale": "r", "plan": ["a"]}
    event = kernel.log("decision.made", payload)
    payload["plan"].append("later")

    assert kernel.get_history()[0].payload["plan"] == ["a"]
    assert kernel.get_history()[0].id == event.id


def test_returned_event_mutation_does_not_reach_history(clock):
    kernel = Kernel("run-001", clock=clock)
    event = kernel.log("decision.made", {"plan": ["a"]})
    event.payload["plan"].append("injected")

    stored = kernel.get_history()[0]
    assert stored.payload == {"plan": ["a"]}
    assert stored.id == stored.recompute_id()


def test_invariant_cannot_rewrite_recorded_events(clock):
    def tamper(events, run_id):
        events[-1].payload["x"] = 1
        return InvariantResult(valid=True)

    kernel = Kernel("run-001", clock=clock)
    kernel.register_invariant(CallableInvariant("tamper", "", tamper))
    kernel.log("decision.made", {"plan": ["a"]})

    stored = kernel.get_history()[0]
    assert stored.payload == {"plan": ["a"]}
    assert stored.id == stored.recompute_id()


# ---------------------------------------------------------------------------
# Invariant enforcement
# ---------------------------------------------------------------------------


def test_tool_without_decision_records_invariant_failure(clock):
    kernel = Kernel("run-001", clock=clock)
    kernel.register_invariant(PlanBeforeAction())

    request = kernel.log("tool.requested", {"tool": "rm"}, causes=[])
    history = kernel.get_history()

    assert len(history) == 2
    failure = history[1]
    assert failure.type == "invariant.failed"
    assert failure.payload["severity"] == "error"
    assert failure.payload["invariant"] == "plan_before_action"
    assert failure.payload["triggerEventId"] == request.id
    assert failure.causes == (request.id,)
    assert failure.meta.agent_id == "kernel"


def test_tool_with_decision_records_nothing(clock):
    kernel = Kernel("run-001", clock=clock, invariants=[PlanBeforeAction()])
    decision = kernel.log("decision.made", {"rationale": "list", "plan": ["ls"]})
    kernel.log("tool.requested", {"tool": "ls"}, causes=[decision.id])

    assert [e.type for e in kernel.get_history()] == ["decision.made", "tool.requested"]


def test_invariant_failures_do_not_retrigger_checks(clock):
    always = failing("always")
    kernel = Kernel("run-001", clock=clock, invariants=[always])

    kernel.log("run.started", {})
    kernel.log("decision.made", {"rationale": "r"})

    types = [e.type for e in kernel.get_history()]
    assert types == ["run.started", "invariant.failed", "decision.made", "invariant.failed"]


def test_failures_follow_registration_order(clock):
    kernel = Kernel("run-001", clock=clock)
    kernel.register_invariant(failing("first"))
    kernel.register_invariant(failing("second"))

    trigger = kernel.log("run.started", {})
    failures = kernel.get_history()[1:]

    assert [f.payload["invariant"] for f in failures] == ["first", "second"]
    assert all(f.causes == (trigger.id,) for f in failures)


def test_invariants_see_history_ending_at_trigger(clock):
    lengths = []

    def record_length(events, run_id):
        lengths.append(events[-1].type)
        return InvariantResult(valid=False, severity="warn")

    kernel = Kernel("run-001", clock=clock)
    kernel.register_invariant(CallableInvariant("a", "", record_length))
    kernel.register_invariant(CallableInvariant("b", "", record_length))
    kernel.log("run.started", {})

    assert lengths == ["run.started", "run.started"]


# ---------------------------------------------------------------------------
# Fatal policy
# ---------------------------------------------------------------------------


def test_fatal_failure_halts_run(clock):
    kernel = Kernel("run-001", clock=clock, invariants=[failing("budget", "fatal")])
    kernel.log("run.started", {})

    assert kernel.halted is True
    assert kernel.get_history()[-1].payload["severity"] == "fatal"
    with pytest.raises(RunHaltedError):
        kernel.log("decision.made", {"rationale": "too late"})
    assert len(kernel.get_history()) == 2


def test_fatal_is_advisory_when_halting_disabled(clock):
    kernel = Kernel("run-001", clock=clock, invariants=[failing("budget", "fatal")], halt_on_fatal=False)
    kernel.log("run.started", {})
    kernel.log("decision.made", {"rationale": "continue"})

    assert kernel.halted is False
    assert len(kernel.get_history()) == 4


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def test_store_append_happens_before_log_returns(clock):
    store = MagicMock()
    kernel = Kernel("run-001", store=store, clock=clock)

    event = kernel.log("run.started", {})

    store.append.assert_called_once_with(event)


def test_persistence_failure_propagates_and_leaves_history_untouched(clock):
    store = MagicMock()
    store.append.side_effect = OSError("disk full")
    kernel = Kernel("run-001", store=store, clock=clock)

    with pytest.raises(PersistenceError, match="disk full"):
        kernel.log("run.started", {})

    assert kernel.get_history() == ()
    assert kernel.last_event is None


def test_persisted_kernel_log_verifies(kernel, store):
    kernel.register_invariant(PlanBeforeAction())
    started = kernel.log("run.started", {"name": "demo", "version": "1"})
    rogue = kernel.log("tool.requested", {"tool": "rm"}, causes=[started.id])
    kernel.log("tool.responded", {"output": "", "exitCode": 0}, causes=[rogue.id])
    kernel.log("run.finished", {"status": "success"}, causes=[kernel.last_event.id])

    result = verify_run(store.log_path, strict=True, blobs_dir=store.blobs_path.parent)

    assert result.valid is True
    assert result.event_count == len(kernel.get_history()) == 5
    assert result.run_id == "run-001"
