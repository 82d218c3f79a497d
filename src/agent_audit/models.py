# models.py
# Data contracts for the agent audit log.
# Event envelope, per-type payload shapes and result records. The only logic
# here is turning an Event into its wire record and deriving its id.

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agent_audit.digest import event_id

EventType = Literal[
    "run.started",
    "run.finished",
    "run.commit",
    "agent.started",
    "agent.finished",
    "decision.made",
    "model.requested",
    "model.responded",
    "tool.requested",
    "tool.responded",
    "fs.diff",
    "fs.snapshot",
    "invariant.failed",
    "budget.exhausted",
    "error.raised",
]

Severity = Literal["warn", "error", "fatal"]

SCHEMA_VERSION = 1.1

# Event types that close a run; strict verification requires one of them.
TERMINAL_TYPES: frozenset[str] = frozenset({"run.commit", "run.finished"})


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------


class Meta(BaseModel):
    """Optional attribution of an event to an agent, tool or model."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    agent_id: str | None = Field(default=None, alias="agentId")
    tool: str | None = None
    model: str | None = None


class Event(BaseModel):
    """
    One immutable, content-addressed entry of a run's log.

    `id` is the SHA-256 digest of `to_record()` with the id itself removed.
    Use Event.create() to build a new event; it derives the id for you.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    v: int | float = SCHEMA_VERSION
    id: str
    run_id: str = Field(..., alias="runId")
    seq: int = Field(..., ge=0)
    type: EventType
    timestamp: int = Field(..., description="Logical creation time, unix ms.")
    causes: tuple[str, ...] = Field(default=(), description="Ids of causal parents.")
    payload: dict[str, Any] = Field(default_factory=dict)
    meta: Meta | None = None

    @classmethod
    def create(
        cls,
        *,
        run_id: str,
        seq: int,
        type: EventType,
        timestamp: int,
        payload: dict[str, Any],
        causes: tuple[str, ...] | list[str] = (),
        meta: Meta | dict[str, Any] | None = None,
        v: int | float = SCHEMA_VERSION,
    ) -> "Event":
        if isinstance(meta, dict):
            meta = Meta.model_validate(meta) if any(value is not None for value in meta.values()) else None
        draft = cls(
            v=v,
            id="",
            run_id=run_id,
            seq=seq,
            type=type,
            timestamp=timestamp,
            causes=tuple(causes),
            payload=payload,
            meta=meta,
        )
        return draft.model_copy(update={"id": event_id(draft.to_record())})

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Event":
        return cls.model_validate(record)

    def to_record(self) -> dict[str, Any]:
        """Wire shape of the event. `meta` is omitted when there is no attribution."""
        record: dict[str, Any] = {
            "v": self.v,
            "id": self.id,
            "runId": self.run_id,
            "seq": self.seq,
            "type": self.type,
            "timestamp": self.timestamp,
            "causes": list(self.causes),
            "payload": self.payload,
        }
        if self.meta is not None:
            record["meta"] = self.meta.model_dump(by_alias=True, exclude_none=True)
        return record

    def recompute_id(self) -> str:
        return event_id(self.to_record())


# ---------------------------------------------------------------------------
# Payload shapes (one per event type)
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(strict=True, extra="allow", populate_by_name=True)


class UnifiedPatch(_Payload):
    kind: Literal["unified"]
    text: str


class BlobPatch(_Payload):
    kind: Literal["blob"]
    digest: str


class FSDiffPayload(_Payload):
    tx_id: str = Field(..., alias="txId")
    path: str
    before_digest: str = Field(..., alias="beforeDigest")
    after_digest: str = Field(..., alias="afterDigest")
    patch: UnifiedPatch | BlobPatch | None = None
    size: int | None = None


class FileEntry(_Payload):
    path: str
    digest: str
    size: int = 0


class FSSnapshotPayload(_Payload):
    workspace_hash: str = Field(..., alias="workspaceHash")
    files: list[FileEntry]
    tx_id: str | None = Field(default=None, alias="txId")


class InvariantFailedPayload(_Payload):
    invariant: str
    message: str
    severity: Severity
    trigger_event_id: str | None = Field(default=None, alias="triggerEventId")


class ToolRequestedPayload(_Payload):
    tool: str
    call_id: str | None = Field(default=None, alias="callId")
    tx_id: str | None = Field(default=None, alias="txId")
    args: dict[str, Any] | list[Any] | None = None
    caps: dict[str, Any] | None = None


class ToolError(_Payload):
    code: str
    message: str


class ToolRespondedPayload(_Payload):
    call_id: str | None = Field(default=None, alias="callId")
    tx_id: str | None = Field(default=None, alias="txId")
    output: Any = None
    error: ToolError | None = None
    exit_code: int | None = Field(default=None, alias="exitCode")


class ModelRequestedPayload(_Payload):
    call_id: str | None = Field(default=None, alias="callId")
    model: str | None = None
    prompt: Any = None


class ModelRespondedPayload(_Payload):
    call_id: str | None = Field(default=None, alias="callId")
    output: Any = None


class RunFinishedPayload(_Payload):
    status: Literal["success", "failed", "killed"] | None = None
    commit_hash: str | None = Field(default=None, alias="commitHash")


class ErrorRaisedPayload(_Payload):
    code: str
    message: str


# ---------------------------------------------------------------------------
# Wire records: tagged union keyed by `type`
# ---------------------------------------------------------------------------


class _Envelope(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)

    v: int | float
    id: str
    run_id: str = Field(..., alias="runId")
    seq: int = Field(..., ge=0)
    timestamp: int
    causes: list[str]
    meta: dict[str, Any] | None = None


class FreeformRecord(_Envelope):
    type: Literal[
        "run.started",
        "run.commit",
        "agent.started",
        "agent.finished",
        "decision.made",
        "budget.exhausted",
    ]
    payload: dict[str, Any]


class RunFinishedRecord(_Envelope):
    type: Literal["run.finished"]
    payload: RunFinishedPayload


class ModelRequestedRecord(_Envelope):
    type: Literal["model.requested"]
    payload: ModelRequestedPayload


class ModelRespondedRecord(_Envelope):
    type: Literal["model.responded"]
    payload: ModelRespondedPayload


class ToolRequestedRecord(_Envelope):
    type: Literal["tool.requested"]
    payload: ToolRequestedPayload


class ToolRespondedRecord(_Envelope):
    type: Literal["tool.responded"]
    payload: ToolRespondedPayload


class FSDiffRecord(_Envelope):
    type: Literal["fs.diff"]
    payload: FSDiffPayload


class FSSnapshotRecord(_Envelope):
    type: Literal["fs.snapshot"]
    payload: FSSnapshotPayload


class InvariantFailedRecord(_Envelope):
    type: Literal["invariant.failed"]
    payload: InvariantFailedPayload


class ErrorRaisedRecord(_Envelope):
    type: Literal["error.raised"]
    payload: ErrorRaisedPayload


EventRecord = Annotated[
    Union[
        FreeformRecord,
        RunFinishedRecord,
        ModelRequestedRecord,
        ModelRespondedRecord,
        ToolRequestedRecord,
        ToolRespondedRecord,
        FSDiffRecord,
        FSSnapshotRecord,
        InvariantFailedRecord,
        ErrorRaisedRecord,
    ],
    Field(discriminator="type"),
]

RECORD_ADAPTER = TypeAdapter(EventRecord)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class InvariantResult(BaseModel):
    """Outcome of one invariant check over a history."""

    valid: bool
    message: str | None = None
    severity: Severity = "warn"


class InvariantOutcome(BaseModel):
    invariant: str
    result: InvariantResult


class RunIndex(BaseModel):
    """Run-level metadata read without rehydrating payloads."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    event_count: int = Field(..., alias="eventCount")
    started: int | None = None
    finished: int | None = None


class VerificationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    valid: bool = True
    event_count: int = Field(..., alias="eventCount")
    run_id: str | None = Field(default=None, alias="runId")
    workspace_hash: str | None = Field(default=None, alias="workspaceHash")


class DiffResult(BaseModel):
    """Position-by-position comparison of two logs."""

    model_config = ConfigDict(populate_by_name=True)

    identical: bool
    diverge_at: int | None = Field(default=None, alias="divergeAt")
    summary: str
    types: tuple[str | None, str | None] | None = Field(
        default=None, description="Event types of both logs at the divergence point."
    )


class ReplayResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    invariant_results: list[InvariantOutcome] = Field(default_factory=list, alias="invariantResults")
    events: list[Event] = Field(default_factory=list)
    substituted: list[int] = Field(default_factory=list, description="Seqs of responses taken from mocks.")
