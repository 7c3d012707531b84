"""Duplicate-delivery guard for drive commands.

Commands are published at QoS 1, so the broker may deliver the same command
more than once. Each command carries a unique ``command_id``; the receiving
side records the ids it has executed and skips repeats.

Key features:
- TTL-based expiration (default 10 minutes)
- Bounded memory with periodic cleanup
- Safe to call from the MQTT network thread
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessedCommand:
    """Record of an executed command."""

    command_id: str
    action: str
    processed_at: datetime


class CommandIdempotencyGuard:
    """
    Tracks executed command ids to prevent duplicate execution.

    Usage:
        guard = CommandIdempotencyGuard()

        if not guard.should_process(message.command_id):
            return

        execute(message.action)
        guard.mark_processed(message.command_id, action=message.action)
    """

    def __init__(
        self,
        ttl_seconds: float = 600.0,
        max_entries: int = 1000,
        cleanup_interval: int = 100,
    ) -> None:
        """
        Args:
            ttl_seconds: How long an executed id is remembered.
            max_entries: Maximum entries before forced cleanup.
            cleanup_interval: Run cleanup every N operations.
        """
        self._processed: Dict[str, ProcessedCommand] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._cleanup_interval = cleanup_interval
        self._operation_count = 0
        self._lock = threading.Lock()

    def should_process(self, command_id: str) -> bool:
        """Return False when ``command_id`` was already executed within the TTL.

        Commands without an id cannot be deduplicated and are always processed.
        """
        if not command_id:
            return True

        with self._lock:
            self._maybe_cleanup()

            entry = self._processed.get(command_id)
            if entry is None:
                return True
            if not self._is_expired(entry):
                LOGGER.info(
                    "Duplicate command detected: %s (action=%s, processed at %s)",
                    command_id,
                    entry.action,
                    entry.processed_at.isoformat(),
                )
                return False
            del self._processed[command_id]
            return True

    def mark_processed(self, command_id: str, *, action: str) -> None:
        if not command_id:
            return

        with self._lock:
            self._maybe_cleanup()
            self._processed[command_id] = ProcessedCommand(
                command_id=command_id,
                action=action,
                processed_at=datetime.now(timezone.utc),
            )
        LOGGER.debug("Command %s marked as processed (action=%s)", command_id, action)

    def _is_expired(self, entry: ProcessedCommand) -> bool:
        cutoff = datetime.now(timezone.utc) - self._ttl
        return entry.processed_at < cutoff

    def _maybe_cleanup(self) -> None:
        # Caller holds the lock.
        self._operation_count += 1

        if (
            self._operation_count % self._cleanup_interval != 0
            and len(self._processed) < self._max_entries
        ):
            return

        self._cleanup_expired()

    def _cleanup_expired(self) -> None:
        cutoff = datetime.now(timezone.utc) - self._ttl
        expired_keys = [
            k for k, v in self._processed.items() if v.processed_at < cutoff
        ]

        for key in expired_keys:
            del self._processed[key]

        if expired_keys:
            LOGGER.debug("Cleaned up %d expired command entries", len(expired_keys))

        if len(self._processed) >= self._max_entries:
            sorted_entries = sorted(
                self._processed.items(), key=lambda x: x[1].processed_at
            )
            remove_count = len(sorted_entries) // 2
            for key, _ in sorted_entries[:remove_count]:
                del self._processed[key]
            LOGGER.warning(
                "Forced cleanup of %d oldest command entries (max_entries=%d reached)",
                remove_count,
                self._max_entries,
            )
