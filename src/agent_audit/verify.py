# verify.py
# Offline, single-pass auditor for a persisted run log.
#
# Trusts nothing the kernel asserted. For every record, in file order:
#   1. schema conformance (tagged-union dispatch on `type`)
#   2. digest integrity   (id == sha256(canonical(record minus id)))
#   3. sequence contiguity (0, 1, 2, ...)
#   4. causal soundness    (every cause names an earlier record)
#   5. filesystem replay   (fs.diff / fs.snapshot against the projection)
# and, in strict mode, a terminal run.commit / run.finished must exist.
#
# Fail-fast: the first violation raises. There is no partial result.

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agent_audit.digest import NULL_DIGEST, event_id, workspace_hash
from agent_audit.models import (
    RECORD_ADAPTER,
    TERMINAL_TYPES,
    FSDiffPayload,
    FSDiffRecord,
    FSSnapshotPayload,
    FSSnapshotRecord,
    VerificationResult,
)
from agent_audit.store import blob_reference, load_blob


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class VerificationError(Exception):
    """Base class for every verification failure. Always fatal to the pass."""

    rule = "VerificationError"

    def __init__(
        self,
        seq: int | None,
        detail: str,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        self.seq = seq
        self.detail = detail
        self.expected = expected
        self.actual = actual
        message = f"[{self.rule}] seq={seq}: {detail}"
        if expected is not None or actual is not None:
            message += f" (expected: {expected}, actual: {actual})"
        super().__init__(message)


class SchemaViolation(VerificationError):
    """Record does not match the shape declared by its `type`."""

    rule = "SchemaViolation"


class DigestMismatch(VerificationError):
    """Recomputed id disagrees with the stored id: tampering or corruption."""

    rule = "DigestMismatch"


class SequenceGap(VerificationError):
    """`seq` is missing, repeated or out of order."""

    rule = "SequenceGap"


class CausalityViolation(VerificationError):
    """A cause is unknown or does not precede the event."""

    rule = "CausalityViolation"


class FSCollision(VerificationError):
    """The same path was touched twice within one transaction."""

    rule = "FSCollision"


class FSStaleWrite(VerificationError):
    """`beforeDigest` disagrees with the tracked projection."""

    rule = "FSStaleWrite"


class FSSnapshotMismatch(VerificationError):
    """A snapshot lists a file digest the projection does not hold."""

    rule = "FSSnapshotMismatch"


class WorkspaceHashMismatch(VerificationError):
    """Snapshot `workspaceHash` disagrees with the recomputed commitment."""

    rule = "WorkspaceHashMismatch"


class UnresolvedBlob(VerificationError):
    """An offloaded payload cannot be found, so its digest cannot be checked."""

    rule = "UnresolvedBlob"


class StrictModeMissingTerminal(VerificationError):
    """Strict verification found no run.commit / run.finished event."""

    rule = "StrictModeMissingTerminal"


# ---------------------------------------------------------------------------
# Filesystem projection
# ---------------------------------------------------------------------------


class FSProjection:
    """
    Workspace state rebuilt from fs.diff events.

    Maps each tracked path to (digest, size). A path is absent until an
    fs.diff creates it and absent again after one deletes it.
    """

    def __init__(self) -> None:
        self._files: dict[str, tuple[str, int]] = {}
        self._touched: dict[str, set[str]] = {}

    @property
    def files(self) -> dict[str, tuple[str, int]]:
        return dict(self._files)

    def digest_of(self, path: str) -> str:
        entry = self._files.get(path)
        return entry[0] if entry else NULL_DIGEST

    def workspace_hash(self) -> str:
        return workspace_hash({path: digest for path, (digest, _) in self._files.items()})

    def apply_diff(self, seq: int, diff: FSDiffPayload) -> None:
        if not diff.tx_id:
            raise SchemaViolation(seq, "fs.diff requires a non-empty txId.")

        touched = self._touched.setdefault(diff.tx_id, set())
        if diff.path in touched:
            raise FSCollision(seq, f"Path '{diff.path}' touched twice in transaction '{diff.tx_id}'.")
        touched.add(diff.path)

        current = self.digest_of(diff.path)
        if diff.before_digest != current:
            raise FSStaleWrite(
                seq,
                f"beforeDigest for '{diff.path}' does not match tracked state.",
                expected=current,
                actual=diff.before_digest,
            )

        if diff.after_digest == NULL_DIGEST:
            self._files.pop(diff.path, None)
        else:
            self._files[diff.path] = (diff.after_digest, diff.size or 0)

    def check_snapshot(self, seq: int, snapshot: FSSnapshotPayload) -> None:
        for entry in snapshot.files:
            current = self.digest_of(entry.path)
            if current != entry.digest:
                raise FSSnapshotMismatch(
                    seq,
                    f"Snapshot entry for '{entry.path}' does not match tracked state.",
                    expected=current,
                    actual=entry.digest,
                )

        recomputed = self.workspace_hash()
        if snapshot.workspace_hash != recomputed:
            raise WorkspaceHashMismatch(
                seq,
                "workspaceHash does not commit to the tracked workspace.",
                expected=snapshot.workspace_hash,
                actual=recomputed,
            )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _seq_hint(record: Any, fallback: int) -> int:
    seq = record.get("seq") if isinstance(record, dict) else None
    return seq if isinstance(seq, int) and not isinstance(seq, bool) else fallback


def _rehydrate(record: dict[str, Any], index: int, blobs_dir: Path) -> dict[str, Any]:
    ref = blob_reference(record.get("payload"))
    if ref is None:
        return record

    run_id = record.get("runId")
    payload = load_blob(blobs_dir / str(run_id), ref) if isinstance(run_id, str) else None
    if payload is None:
        raise UnresolvedBlob(
            _seq_hint(record, index),
            f"Offloaded payload {ref} not found under {blobs_dir / str(run_id)}.",
        )
    return {**record, "payload": payload}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def verify_run(
    path: Path | str,
    strict: bool = False,
    blobs_dir: Path | str | None = None,
) -> VerificationResult:
    """
    Verify the log at `path` in one forward pass.

    Offloaded payloads are read from `blobs_dir/<runId>/` (default: a
    `blobs` directory beside the log). Returns a VerificationResult on
    success; raises the first VerificationError encountered otherwise.
    """
    path = Path(path)
    blobs_root = Path(blobs_dir) if blobs_dir is not None else path.parent / "blobs"

    with open(path, encoding="utf-8") as fh:
        lines = [line for line in fh.read().splitlines() if line.strip()]

    seen: set[str] = set()
    projection = FSProjection()
    tracked_fs = False
    has_terminal = False
    run_id: str | None = None
    expected_seq = 0

    for index, line in enumerate(lines):
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise SchemaViolation(index, f"Line {index + 1} is not valid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise SchemaViolation(index, f"Line {index + 1} is not a JSON object.")

        record = _rehydrate(record, index, blobs_root)

        # 1. Schema conformance
        try:
            event = RECORD_ADAPTER.validate_python(record)
        except ValidationError as exc:
            raise SchemaViolation(_seq_hint(record, index), f"Record does not match its type: {exc}") from exc

        if run_id is None:
            run_id = event.run_id
        elif event.run_id != run_id:
            raise SchemaViolation(event.seq, "Record belongs to a different run.", expected=run_id, actual=event.run_id)

        # 2. Digest integrity
        recomputed = event_id(record)
        if recomputed != event.id:
            raise DigestMismatch(
                event.seq,
                f"Stored id {event.id} does not match recomputed {recomputed}.",
                expected=event.id,
                actual=recomputed,
            )

        # 3. Sequence contiguity
        if event.seq != expected_seq:
            raise SequenceGap(event.seq, "Sequence is not contiguous.", expected=expected_seq, actual=event.seq)

        # 4. Causal soundness
        for cause in event.causes:
            if cause not in seen:
                raise CausalityViolation(event.seq, f"Unknown cause {cause}.")

        # 5. Filesystem replay
        if isinstance(event, FSDiffRecord):
            projection.apply_diff(event.seq, event.payload)
            tracked_fs = True
        elif isinstance(event, FSSnapshotRecord):
            projection.check_snapshot(event.seq, event.payload)
            tracked_fs = True

        if event.type in TERMINAL_TYPES:
            has_terminal = True

        seen.add(event.id)
        expected_seq += 1

    # 6. Strict-mode terminal check
    if strict and not has_terminal:
        raise StrictModeMissingTerminal(None, "No run.commit or run.finished event found.")

    return VerificationResult(
        valid=True,
        event_count=len(lines),
        run_id=run_id,
        workspace_hash=projection.workspace_hash() if tracked_fs else None,
    )
