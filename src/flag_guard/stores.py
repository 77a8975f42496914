"""In-memory collaborators of the flagging core.

These back the FastAPI service and the tests. A deployment that keeps its
comments elsewhere only has to provide objects with the same methods.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from threading import Lock
from time import time
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError

STATUS_VISIBLE = "visible"
STATUS_HELD = "held"

THRESHOLD_MIN = 1
THRESHOLD_MAX = 100


@dataclass
class ContentReportState:
    """Moderation bookkeeping attached to one content item.

    Attributes:
        status: Either "visible" or "held".
        report_count: Number of accepted reports, never decreases.
        moderated: True once an administrator released the item from hold.
    """

    status: str = STATUS_VISIBLE
    report_count: int = 0
    moderated: bool = False


class InMemoryContentStore:
    """A thread-safe content store keyed by integer content id."""

    def __init__(self):
        self.items: Dict[int, ContentReportState] = {}
        self.lock = Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def add(self, content_id: int, status: str = STATUS_VISIBLE) -> ContentReportState:
        with self.lock:
            state = self.items.get(content_id)
            if state is None:
                state = ContentReportState(status=status)
                self.items[content_id] = state
            return state

    def content_exists(self, content_id: int) -> bool:
        return content_id in self.items

    def _state(self, content_id: int) -> ContentReportState:
        state = self.items.get(content_id)
        if state is None:
            raise KeyError(f"Unknown content id: {content_id}")
        return state

    def get_report_count(self, content_id: int) -> int:
        return self._state(content_id).report_count

    def increment_report_count(self, content_id: int) -> int:
        with self.lock:
            state = self._state(content_id)
            state.report_count += 1
            return state.report_count

    def get_moderated_flag(self, content_id: int) -> bool:
        return self._state(content_id).moderated

    def get_status(self, content_id: int) -> str:
        return self._state(content_id).status

    def set_status(self, content_id: int, status: str):
        if status not in (STATUS_VISIBLE, STATUS_HELD):
            raise ValueError(f"Unknown status: {status}")
        with self.lock:
            self._state(content_id).status = status

    def approve(self, content_id: int) -> bool:
        """Releases held content and remembers that a moderator reviewed it.

        Returns:
            True if the item went from held to visible, False otherwise.
        """
        with self.lock:
            state = self._state(content_id)
            if state.status != STATUS_HELD:
                return False
            state.status = STATUS_VISIBLE
            state.moderated = True
        self.logger.info(f"Content {content_id} approved; future auto-holds suppressed")
        return True


class AdminNotices:
    """Administrator-facing messages that live for a limited time."""

    def __init__(self, ttl: int = 3600, clock: Callable[[], float] = time):
        self.ttl = ttl
        self.clock = clock
        self.notices: Dict[str, float] = {}
        self.lock = Lock()

    def add(self, message: str):
        with self.lock:
            self.notices[message] = self.clock() + self.ttl

    def pending(self) -> List[str]:
        with self.lock:
            now = self.clock()
            return [m for m, expires_at in self.notices.items() if now < expires_at]

    def pop_all(self) -> List[str]:
        """Returns the live notices and clears the queue."""
        with self.lock:
            now = self.clock()
            live = [m for m, expires_at in self.notices.items() if now < expires_at]
            self.notices.clear()
            return live


class Settings:
    """Administrator settings: the enable toggle and the hold threshold."""

    threshold_notice = (
        "Please revise your flagging threshold and enter a number between 1 and 100"
    )

    def __init__(self, enabled: bool, threshold: Any, notices: Optional[AdminNotices] = None):
        self.notices = notices if notices is not None else AdminNotices()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.enabled = bool(enabled)
        self.threshold = self.check_threshold(threshold)

    def is_enabled(self) -> bool:
        return self.enabled

    def get_threshold(self) -> int:
        return self.threshold

    def check_threshold(self, value: Any) -> int:
        """Coerces a submitted threshold to int and flags out-of-range values.

        The value is kept even when it is out of range so that saving the
        other settings is never blocked; the administrator gets a notice.
        """
        try:
            threshold = int(value)
        except (TypeError, ValueError, OverflowError):
            threshold = 0
        try:
            self._validate_threshold(threshold)
        except ConfigurationError as e:
            self.logger.warning(f"Invalid flagging threshold {value!r}: {e.message}")
            self.notices.add(e.message)
        return threshold

    def _validate_threshold(self, threshold: int):
        if threshold < THRESHOLD_MIN or threshold > THRESHOLD_MAX:
            raise ConfigurationError(self.threshold_notice)

    def update(self, enabled: Optional[bool] = None, threshold: Any = None):
        if enabled is not None:
            self.enabled = bool(enabled)
        if threshold is not None:
            self.threshold = self.check_threshold(threshold)

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "threshold": self.threshold}
