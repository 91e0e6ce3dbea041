from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """Raised when persisted-state operations fail."""


class ConcurrentUpdateError(StateStoreError):
    """Raised when a write was based on a stale revision."""


class JsonStateStore:
    """File-backed repository for the session and build-checkpoint records.

    Each namespace is one JSON document, always rewritten in full and wrapped
    in an envelope carrying a schema version and a monotonically increasing
    revision.  Writers hold an exclusive lock file while writing.
    """

    NAMESPACES = {"session", "build"}
    SCHEMA_VERSION = 1

    def __init__(self, project_dir: Path, *, state_dir: str = ".pipewright/state") -> None:
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = self.project_dir / state_dir
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in JsonStateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def path_for(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self.path_for(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self.path_for(namespace)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(serialized, encoding="utf-8")
        os.replace(temp_path, path)

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any] | None:
        if raw_payload is None:
            return None
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data"),
            }

        # Bare payload written before envelopes existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self, namespace: str) -> dict[str, Any] | None:
        self._validate_namespace(namespace)
        return self._normalize_envelope(self._read_raw_json(namespace))

    def revision(self, namespace: str) -> int:
        envelope = self.get_envelope(namespace)
        return 0 if envelope is None else int(envelope["revision"])

    def load(self, namespace: str) -> Any | None:
        envelope = self.get_envelope(namespace)
        if envelope is None:
            return None
        return envelope.get("data")

    def save(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        """Overwrite ``namespace`` with ``data`` and return the new revision."""
        self._validate_namespace(namespace)
        with self._state_lock():
            current_revision = self.revision(namespace)
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)
        logger.debug("Saved %s revision %d", namespace, current_revision + 1)
        return current_revision + 1

    def update(self, namespace: str, updater: Callable[[Any], Any]) -> Any:
        last_error: Exception | None = None
        for _ in range(4):
            current_revision = self.revision(namespace)
            updated = updater(self.load(namespace))
            try:
                self.save(namespace, updated, expected_revision=current_revision)
                return updated
            except ConcurrentUpdateError as exc:
                last_error = exc
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def clear(self, namespace: str) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            try:
                self.path_for(namespace).unlink()
            except FileNotFoundError:
                pass
