# store.py
# Append-only JSONL persistence with content-addressed blob offload.
#
# Layout:
#   <runs_dir>/<runId>.jsonl               one canonical record per line, seq order
#   <blobs_dir>/<runId>/<eventId>.json     payloads larger than max_payload_size
#
# An offloaded record keeps {"_blobRef": "<eventId>"} as its payload. Blobs
# are written once and may be pruned independently of the log, so a missing
# blob never stops the log from being read.

import json
import os
from pathlib import Path
from typing import Any

from agent_audit import display
from agent_audit.config import Settings, settings as default_settings
from agent_audit.digest import canonical_json
from agent_audit.models import Event, RunIndex

BLOB_REF_KEY = "_blobRef"


class CorruptLogError(ValueError):
    """A log line does not parse to a JSON object."""


def blob_reference(payload: Any) -> str | None:
    """Return the referenced event id if `payload` is an offload sentinel."""
    if isinstance(payload, dict) and set(payload) == {BLOB_REF_KEY}:
        ref = payload[BLOB_REF_KEY]
        if isinstance(ref, str):
            return ref
    return None


def load_blob(blob_dir: Path, ref: str) -> Any | None:
    """Read an offloaded payload, or None if the side file is gone."""
    blob_path = blob_dir / f"{ref}.json"
    if not blob_path.is_file():
        return None
    with open(blob_path, encoding="utf-8") as fh:
        return json.load(fh)


class EventStore:
    """
    Per-run event log on disk.

    append() is synchronous and durable: the line is flushed and fsynced
    before it returns, and any OSError propagates to the caller. Directories
    are created on first write, so a store opened only for reading leaves
    the filesystem untouched.
    """

    def __init__(
        self,
        run_id: str,
        runs_dir: Path | str,
        blobs_dir: Path | str,
        max_payload_size: int = 65536,
    ) -> None:
        self.run_id = run_id
        self.max_payload_size = max_payload_size
        self.log_path = Path(runs_dir) / f"{run_id}.jsonl"
        self.blobs_path = Path(blobs_dir) / run_id

    @classmethod
    def from_settings(cls, run_id: str, settings: Settings | None = None) -> "EventStore":
        settings = settings or default_settings
        return cls(
            run_id,
            runs_dir=settings.runs_dir,
            blobs_dir=settings.blobs_dir,
            max_payload_size=settings.max_payload_size,
        )

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, event: Event) -> None:
        record = event.to_record()
        payload_size = len(canonical_json(event.payload).encode("utf-8"))

        if payload_size > self.max_payload_size:
            self.blobs_path.mkdir(parents=True, exist_ok=True)
            blob_path = self.blobs_path / f"{event.id}.json"
            with open(blob_path, "w", encoding="utf-8") as fh:
                json.dump(event.payload, fh, indent=2, ensure_ascii=False)
            record["payload"] = {BLOB_REF_KEY: event.id}

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "a", encoding="utf-8") as fh:
            fh.write(canonical_json(record) + "\n")
            fh.flush()
            os.fsync(fh.fileno())

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _lines(self) -> list[str]:
        if not self.log_path.exists():
            return []
        with open(self.log_path, encoding="utf-8") as fh:
            return [line for line in fh.read().splitlines() if line.strip()]

    def _parse(self, line: str, number: int) -> dict[str, Any]:
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise CorruptLogError(f"{self.log_path}: line {number} is not valid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise CorruptLogError(f"{self.log_path}: line {number} is not a JSON object.")
        return record

    def read_records(self) -> list[dict[str, Any]]:
        """Raw records in file order, with blob payloads rehydrated where possible."""
        records: list[dict[str, Any]] = []
        for number, line in enumerate(self._lines(), start=1):
            record = self._parse(line, number)
            ref = blob_reference(record.get("payload"))
            if ref is not None:
                payload = load_blob(self.blobs_path, ref)
                if payload is None:
                    display.blob_missing(self.run_id, ref)
                else:
                    record["payload"] = payload
            records.append(record)
        return records

    def read_log(self) -> list[Event]:
        return [Event.from_record(record) for record in self.read_records()]

    def get_index(self) -> RunIndex:
        """Event count and first/last timestamps, without touching blobs."""
        lines = self._lines()
        if not lines:
            return RunIndex(run_id=self.run_id, event_count=0)

        first = self._parse(lines[0], 1)
        last = self._parse(lines[-1], len(lines))
        return RunIndex(
            run_id=self.run_id,
            event_count=len(lines),
            started=first.get("timestamp"),
            finished=last.get("timestamp"),
        )
