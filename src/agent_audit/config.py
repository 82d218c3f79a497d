# config.py
# Runtime settings, read from the environment (and a local .env file).

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

ENV_PREFIX = "AGENT_AUDIT_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


class Settings(BaseModel):
    """Where logs live and how they are written and checked."""

    runs_dir: Path = Field(default=Path("runs"), description="Directory of <runId>.jsonl logs.")
    blobs_dir: Path = Field(default=Path("runs/blobs"), description="Root of per-run blob directories.")
    max_payload_size: int = Field(
        default=65536,
        ge=0,
        description="Canonical payload size in bytes above which payloads are offloaded.",
    )
    strict: bool = Field(default=False, description="Require a terminal event when verifying.")
    quiet: bool = Field(default=False, description="Silence terminal output.")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            runs_dir=Path(_env("RUNS_DIR", "runs")),
            blobs_dir=Path(_env("BLOBS_DIR", "runs/blobs")),
            max_payload_size=int(_env("MAX_PAYLOAD_SIZE", "65536")),
            strict=_env_flag("STRICT"),
            quiet=_env_flag("QUIET"),
        )


settings = Settings.from_env()
