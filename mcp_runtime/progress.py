"""Client-side progress tracking.

Servers report long-running work with ``notifications/progress``, tagged by
the ``progressToken`` the client put in the request's ``_meta``. The store
keeps the latest report per token.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

ProgressToken = str | int


@dataclass(frozen=True)
class Progress:
    """Latest progress reported for one token.

    Attributes:
        token: The request's progress token.
        progress: Work done so far.
        total: Total amount of work, if the server knows it.
        message: Optional human-readable status.
        updated_at: When this report arrived.
    """

    token: ProgressToken
    progress: float
    total: float | None = None
    message: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def fraction(self) -> float | None:
        """``progress / total``, or None without a positive total."""
        if not self.total:
            return None
        return self.progress / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "progress": self.progress,
            "total": self.total,
            "message": self.message,
            "updated_at": self.updated_at.isoformat(),
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ProgressStore:
    """Latest ``Progress`` per token."""

    def __init__(self) -> None:
        self._entries: dict[ProgressToken, Progress] = {}
        self._lock = threading.Lock()

    def update(self, params: Mapping[str, Any]) -> Progress | None:
        """Record a ``notifications/progress`` payload.

        Returns:
            The stored entry, or None if the payload has no usable token or
            progress value.
        """
        token = params.get("progressToken")
        value = params.get("progress")
        if not isinstance(token, (str, int)) or isinstance(token, bool) or not _is_number(value):
            return None

        total = params.get("total")
        message = params.get("message")
        entry = Progress(
            token=token,
            progress=value,
            total=total if _is_number(total) else None,
            message=message if isinstance(message, str) else None,
        )
        with self._lock:
            self._entries[token] = entry
        return entry

    def get(self, token: ProgressToken) -> Progress | None:
        with self._lock:
            return self._entries.get(token)

    def discard(self, token: ProgressToken) -> bool:
        with self._lock:
            return self._entries.pop(token, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def snapshot(self) -> dict[ProgressToken, Progress]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
