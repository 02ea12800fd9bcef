"""Per-target outcomes returned by fan-out operations."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from .errors import PackageError
from .exit_codes import ExitCode


class ResultStatus(str, Enum):
    """Outcome of an operation against one (host, component) target."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    WARNING = "warning"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` for hard failures."""
        return self is ResultStatus.ERROR


@dataclass(frozen=True, slots=True)
class TargetResult:
    """What happened to a single target."""

    host: str
    component: str
    action: str
    status: ResultStatus
    detail: str = ""
    version: str | None = None
    error: Exception | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "component": self.component,
            "action": self.action,
            "status": self.status.value,
            "detail": self.detail,
            "version": self.version,
            "error": str(self.error) if self.error else None,
        }


@dataclass(slots=True)
class ResultSet:
    """Ordered collection of :class:`TargetResult` values."""

    results: list[TargetResult] = field(default_factory=list)

    def __iter__(self) -> Iterator[TargetResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def add(self, result: TargetResult) -> TargetResult:
        """Append *result* and return it."""
        self.results.append(result)
        return result

    def extend(self, other: Iterable[TargetResult]) -> None:
        """Append every result of *other*."""
        self.results.extend(other)

    @property
    def changed(self) -> list[TargetResult]:
        """Return targets that were modified."""
        return [item for item in self.results if item.status is ResultStatus.CHANGED]

    @property
    def failures(self) -> list[TargetResult]:
        """Return targets that failed."""
        return [item for item in self.results if item.status.is_failure]

    @property
    def ok(self) -> bool:
        """Return ``True`` when no target failed."""
        return not self.failures

    def exit_code(self) -> ExitCode:
        """Return the most severe exit code across failed targets."""
        code = ExitCode.OK
        for item in self.failures:
            candidate = (
                item.error.exit_code if isinstance(item.error, PackageError) else ExitCode.PROVIDER
            )
            code = max(code, candidate)
        return code

    def to_list(self) -> list[dict[str, object]]:
        """Return a serialisable representation."""
        return [item.to_dict() for item in self.results]


__all__ = ["ResultSet", "ResultStatus", "TargetResult"]
