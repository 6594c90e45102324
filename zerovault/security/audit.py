"""
Preview Audit Events
====================

Lifecycle events emitted by the preview orchestrator, and sinks that
record them.

Event names:
    requested, decrypted, classified, rendered, errored:<reason>, released

Events carry file ids, states and error tags only; never key material,
plaintext, filenames or tokens.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Final, Optional, Protocol, runtime_checkable

from zerovault.core.logging import get_secure_logger

logger = get_secure_logger(__name__)

EVENT_REQUESTED: Final[str] = "requested"
EVENT_DECRYPTED: Final[str] = "decrypted"
EVENT_CLASSIFIED: Final[str] = "classified"
EVENT_RENDERED: Final[str] = "rendered"
EVENT_RELEASED: Final[str] = "released"
EVENT_ERRORED_PREFIX: Final[str] = "errored:"

GENESIS_HASH: Final[str] = "genesis"


def errored(reason: str) -> str:
    """Event name for an error with the given tag."""
    return f"{EVENT_ERRORED_PREFIX}{reason}"


@dataclass(frozen=True, slots=True)
class PreviewEvent:
    """One preview lifecycle event."""

    name: str
    file_id: str
    state: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detail: Optional[str] = None
    request: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "file_id": self.file_id,
            "state": self.state,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
            "request": self.request,
        }


@runtime_checkable
class AuditSink(Protocol):
    """Receives preview lifecycle events."""

    def emit(self, event: PreviewEvent) -> None:
        ...


class InMemoryAuditSink:
    """Keeps events in a list. Useful for tests and diagnostics."""

    def __init__(self) -> None:
        self._events: list[PreviewEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: PreviewEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[PreviewEvent]:
        with self._lock:
            return list(self._events)

    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class LoggingAuditSink:
    """Writes each event as one log line."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
        self._log = log or logger
        self._level = level

    def emit(self, event: PreviewEvent) -> None:
        self._log.log(
            self._level,
            "preview %s file=%s state=%s detail=%s",
            event.name,
            event.file_id,
            event.state,
            event.detail or "-",
            extra={"event": event.name},
        )


class ChainedAuditSink:
    """
    Append-only audit log with tamper detection.

    Features:
    - Chained hashes for integrity (HMAC-SHA256 when a key is given)
    - Append-only (no deletion)
    - JSON Lines format
    - No sensitive plaintext
    """

    def __init__(self, log_path: Path | str, hmac_key: Optional[bytes] = None) -> None:
        self._log_path = Path(log_path)
        self._hmac_key = hmac_key
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._event_count = 0

        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_chain()

    @property
    def path(self) -> Path:
        return self._log_path

    @property
    def event_count(self) -> int:
        return self._event_count

    def _digest(self, record: dict) -> str:
        payload = json.dumps(record, sort_keys=True).encode()
        if self._hmac_key:
            return hmac.new(self._hmac_key, payload, hashlib.sha256).hexdigest()
        return hashlib.sha256(payload).hexdigest()

    def _load_chain(self) -> None:
        """Continue an existing chain from its last record."""
        if not self._log_path.exists():
            return

        with open(self._log_path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Audit log line %d is not valid JSON", lineno)
                    continue
                self._last_hash = record.get("event_hash", self._last_hash)
                self._event_count += 1

    def emit(self, event: PreviewEvent) -> None:
        record = event.to_dict()

        with self._lock:
            record["previous_hash"] = self._last_hash
            record["event_hash"] = self._digest(record)

            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = record["event_hash"]
            self._event_count += 1

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Verify log chain integrity.

        Each record's hash is recomputed and its link to the previous
        record checked.

        Returns:
            Tuple of (is_valid, number of records verified)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = GENESIS_HASH
        count = 0

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    return False, count

                stored_hash = record.pop("event_hash", "")
                if record.get("previous_hash") != previous_hash:
                    return False, count
                if not hmac.compare_digest(stored_hash, self._digest(record)):
                    return False, count

                previous_hash = stored_hash
                count += 1

        return True, count

    def read_events(self, file_id: Optional[str] = None, limit: int = 100) -> list[dict]:
        """Read recorded events (read-only), optionally for one file."""
        events: list[dict] = []

        if not self._log_path.exists():
            return events

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                record = json.loads(line)
                if file_id is not None and record.get("file_id") != file_id:
                    continue
                events.append(record)
                if len(events) >= limit:
                    break

        return events
