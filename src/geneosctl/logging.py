"""Structured operation logging.

Each top-level operation (install, update, ...) is appended as a single JSON
document to ``<logs_dir>/operations.jsonl``. Diagnostics inside library
modules use ordinary :mod:`logging` loggers; :func:`configure_logging` routes
them to the terminal through rich.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.logging import RichHandler

_LOG = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    """Send package log records to stderr via rich."""
    root = logging.getLogger("geneosctl")
    if any(isinstance(handler, RichHandler) for handler in root.handlers):
        root.setLevel(logging.DEBUG if verbose else logging.INFO)
        return
    handler = RichHandler(show_path=False, show_time=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def _now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe rendering of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    return str(value)


class OperationScope:
    """Collects the steps and outcome of a single operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Start timing the operation *name*."""
        self.name = name
        self.id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now()
        self._start = time.perf_counter()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = "") -> None:
        """Record an intermediate step."""
        self.steps.append(
            {"name": name, "status": status, "detail": _sanitise(detail), "at": _now()}
        )

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record the time spent waiting for locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings),
            errors=list(errors),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": warnings or [],
            "errors": errors or [],
            "context": _sanitise(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON document for this operation."""
        return {
            "id": self.id,
            "operation": self.name,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "started_at": self.started_at,
            "finished_at": _now(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``.

    Logging never breaks an operation: when the directory or file cannot be
    written the logger disables itself and carries on silently.
    """

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable the logger when it cannot be created."""
        self.log_dir = log_dir.expanduser()
        self._operations_log_path = self.log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOG.debug("operation log disabled, cannot create %s: %s", self.log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None or scope.result.get("status") != "error":
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("completed")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            _LOG.debug("operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
