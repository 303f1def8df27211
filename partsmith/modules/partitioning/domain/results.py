"""
Structured results for engine operations.

Every operation returns an OperationResult instead of raising for expected
outcomes: a held lock, an exhausted lock wait, a skipped set. Diagnostics
are logged as they are recorded and kept on the result for the caller.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

logger = structlog.get_logger()

# Count reported when batch movement gives up waiting for row or table locks
LOCK_WAIT_EXHAUSTED_COUNT = -1


class OperationStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    LOCK_TIMEOUT = "lock_timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class Diagnostic:
    event: str
    level: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationResult:
    operation: str
    parent_table: Optional[str] = None
    status: OperationStatus = OperationStatus.SUCCESS
    count: int = 0
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def note(self, event: str, **details: Any) -> None:
        self.diagnostics.append(Diagnostic(event, "info", details))
        logger.info(event, operation=self.operation, parent_table=self.parent_table, **details)

    def warn(self, event: str, **details: Any) -> None:
        self.diagnostics.append(Diagnostic(event, "warning", details))
        if self.status is OperationStatus.SUCCESS:
            self.status = OperationStatus.PARTIAL
        logger.warning(event, operation=self.operation, parent_table=self.parent_table, **details)

    def fail(self, event: str, **details: Any) -> None:
        self.diagnostics.append(Diagnostic(event, "error", details))
        self.status = OperationStatus.FAILED
        logger.error(event, operation=self.operation, parent_table=self.parent_table, **details)

    def skip(self, event: str, **details: Any) -> "OperationResult":
        self.status = OperationStatus.SKIPPED
        self.note(event, **details)
        return self

    def abort_on_lock_wait(self, **details: Any) -> "OperationResult":
        self.status = OperationStatus.LOCK_TIMEOUT
        self.count = LOCK_WAIT_EXHAUSTED_COUNT
        self.diagnostics.append(Diagnostic("lock_wait_exhausted", "error", details))
        return self

    @property
    def aborted(self) -> bool:
        return self.status is OperationStatus.LOCK_TIMEOUT

    def as_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "parent_table": self.parent_table,
            "status": self.status.value,
            "count": self.count,
            "diagnostics": [
                {"event": d.event, "level": d.level, "details": _jsonable(d.details)}
                for d in self.diagnostics
            ],
        }


@dataclass
class MaintenanceResult(OperationResult):
    created: int = 0
    dropped: int = 0
    sets: list[OperationResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = super().as_dict()
        data.update(
            created=self.created,
            dropped=self.dropped,
            sets=[result.as_dict() for result in self.sets],
        )
        return data


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value if isinstance(value, (str, int, float, bool, type(None), list, dict)) else str(value)
        for key, value in details.items()
    }
