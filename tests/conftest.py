import itertools

import pytest

from agent_audit.digest import canonical_json
from agent_audit.kernel import Kernel
from agent_audit.models import Event
from agent_audit.store import EventStore

RUN_ID = "run-001"
T0 = 1_700_000_000_000


@pytest.fixture
def clock():
    counter = itertools.count(T0)
    return lambda: next(counter)


@pytest.fixture
def runs_dir(tmp_path):
    return tmp_path / "runs"


@pytest.fixture
def store(runs_dir):
    return EventStore(RUN_ID, runs_dir=runs_dir, blobs_dir=runs_dir / "blobs", max_payload_size=1024)


@pytest.fixture
def kernel(store, clock):
    return Kernel(RUN_ID, store=store, clock=clock)


@pytest.fixture
def chain():
    """Build a linear run: each event caused by the one before it."""

    def _chain(*steps, run_id=RUN_ID):
        events = []
        for seq, step in enumerate(steps):
            type_, payload = step[0], step[1]
            meta = step[2] if len(step) > 2 else None
            events.append(
                Event.create(
                    run_id=run_id,
                    seq=seq,
                    type=type_,
                    timestamp=T0 + seq,
                    payload=payload,
                    causes=[events[-1].id] if events else [],
                    meta=meta,
                )
            )
        return events

    return _chain


@pytest.fixture
def golden(chain):
    """Five-event golden run ending in a commit."""
    return chain(
        ("run.started", {}),
        ("decision.made", {"thought": "Check workspace state"}),
        ("tool.requested", {"tool": "ls"}, {"agentId": "main", "tool": "exec"}),
        ("tool.responded", {"files": []}),
        ("run.commit", {"status": "golden"}),
    )


@pytest.fixture
def write_log(runs_dir):
    """Write events (or raw record dicts) as a JSONL log and return its path."""

    def _write(items, name=f"{RUN_ID}.jsonl"):
        runs_dir.mkdir(parents=True, exist_ok=True)
        path = runs_dir / name
        lines = [canonical_json(item.to_record() if isinstance(item, Event) else item) for item in items]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
