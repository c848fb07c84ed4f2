from dataclasses import dataclass, field
from datetime import datetime
import enum
from pathlib import Path

from reportledger.run_log import RunLog


class Verdict(enum.IntEnum):
    # Ordered from best to worst.

    SUCCESS = 0
    UNSTABLE = 1
    FAILURE = 2
    NOT_BUILT = 3
    ABORTED = 4

    def is_worse_than(self, other: "Verdict") -> bool:
        return self > other

    def is_worse_or_equal_to(self, other: "Verdict") -> bool:
        return self >= other

    @classmethod
    def parse(cls, value: str) -> "Verdict":
        return cls[value.strip().upper()]


class ThresholdMode(str, enum.Enum):
    NUMBER = "number"
    PERCENT = "percent"


@dataclass(frozen=True)
class ToolConfig:
    format: str
    pattern: str
    stylesheet: str | None = None
    skip_if_no_files: bool = False
    fail_if_not_new: bool = True
    delete_output_files: bool = True
    stop_on_error: bool = True


@dataclass(frozen=True)
class ValidationError:
    file: str
    line: int
    message: str

    def __str__(self) -> str:
        return f"{self.file}:{self.line}: {self.message}"


@dataclass(frozen=True)
class RunContext:
    run_id: int
    run_key: str
    workspace: Path
    started_at: datetime
    log: RunLog
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessResult:
    run_id: int
    run_key: str
    status: str
    verdict: Verdict | None
    processed_reports: int
    passed: int
    failed: int
    skipped: int
    namespace: str
    error: str | None = None
