"""This module provides the core functionality for the Flag Guard service.

It includes the `FlagGuard` class, which decides whether an anonymous report
against a comment counts, records it, and sends the comment to moderation
once enough reports accumulate. The module also defines the report outcome
and metrics data structures, the request context handed in by the transport
layer, and the `ModerationGate` that performs the hold transition.
"""

from __future__ import annotations
import json
import os
import logging
from dataclasses import dataclass, asdict, field
from collections import Counter
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter as PromCounter

from . import tokens
from .errors import DuplicateReport, InvalidReport
from .stores import STATUS_HELD
from .window import RateWindowStore

# Prometheus metrics (opt-in via env in app.py)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    flag_requests_total = PromCounter(
        "flag_requests_total", "Total flag requests processed", ["endpoint"]
    )
    flag_outcomes_total = PromCounter(
        "flag_outcomes_total", "Total report outcomes", ["status"]
    )
    flag_holds_total = PromCounter(
        "flag_holds_total", "Comments sent to moderation by reports"
    )

ACCEPTED = "ACCEPTED"
ALREADY_FLAGGED = "ALREADY_FLAGGED"
REJECTED_INVALID = "REJECTED_INVALID"

DAY_IN_SECONDS = 24 * 60 * 60
WEEK_IN_SECONDS = 7 * DAY_IN_SECONDS

# --- Default Configuration ---
DEFAULT_CONFIG: Dict[str, Any] = {
    "enabled": True,
    "threshold": 5,
    # Cookie holding the reports made by this browser.
    "storage_cookie": "flag_guard_reports",
    # Probe cookie; its presence means the browser round-trips cookies.
    "test_cookie": "flag_guard_cookie_check",
    "test_cookie_value": "cookie_check",
    # Window hits tolerated per comment before a clean cookie is distrusted.
    # Keep this lower than the threshold.
    "no_cookie_grace": 3,
    "cookie_lifetime": WEEK_IN_SECONDS,
    # Shorter than the cookie so memory stays low and shared addresses
    # (offices, campuses) are not locked out for long.
    "window_lifetime": DAY_IN_SECONDS,
    "window_max_entries": 10000,
    "notice_ttl": 3600,
    "allow_moderated_to_be_reflagged": False,
    "thank_you_message": "Thank you for your feedback. We will look into it.",
    "invalid_values_message": "Cheating huh?",
    "already_flagged_message": "It seems you already reported this comment.",
    "already_flagged_note": "You reported this comment.",
    "disabled_message": "Comment flagging is disabled.",
    "error_message": "Your report could not be processed. Please try again later.",
}


@dataclass
class RequestContext:
    """What the transport layer knows about the reporting client.

    Attributes:
        client_address: The client's network address.
        capability_token_present: Whether the cookie probe came back, i.e.
            the client keeps cookies.
        capability_token_value: The raw durable token cookie, if sent.
    """

    client_address: str
    capability_token_present: bool = False
    capability_token_value: Optional[str] = None


@dataclass
class Outcome:
    """Represents the result of a report submission.

    Attributes:
        status: One of "ACCEPTED", "ALREADY_FLAGGED", "REJECTED_INVALID".
        message: A message safe to show to the reporting visitor.
        comment_id: The parsed content id, when it could be parsed.
        token: The durable token to hand back to the client, on acceptance.
        token_max_age: Lifetime of ``token`` in seconds.
    """

    status: str
    message: str
    comment_id: Optional[int] = None
    token: Optional[str] = field(default=None, repr=False)
    token_max_age: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        """Returns the client-facing fields; the token travels as a cookie."""
        data = asdict(self)
        data.pop("token")
        data.pop("token_max_age")
        return data

    def to_json(self) -> str:
        """Serializes the outcome to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


@dataclass
class Metrics:
    """A class to track metrics related to report submissions."""

    total_requests: int = 0
    accepted: int = 0
    rejected: int = 0
    holds: int = 0
    outcomes: Counter = field(default_factory=Counter)

    def record(self, outcome: Outcome):
        """Records an outcome, updating the metrics."""
        self.total_requests += 1
        if outcome.accepted:
            self.accepted += 1
        else:
            self.rejected += 1
        self.outcomes[outcome.status] += 1
        if PROMETHEUS_ENABLED:
            flag_outcomes_total.labels(status=outcome.status).inc()

    def record_hold(self):
        self.holds += 1
        if PROMETHEUS_ENABLED:
            flag_holds_total.inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        return {
            "total": self.total_requests,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "accept_rate": self.accepted / max(1, self.total_requests),
            "holds": self.holds,
            "outcomes": dict(self.outcomes),
        }


class ModerationGate:
    """Moves content from visible to held, at most once."""

    def __init__(self, content_store):
        self.content_store = content_store
        self.lock = Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def hold(self, content_id: int) -> bool:
        """Sends content to moderation.

        Returns:
            True if the content was visible and is now held, False if it was
            already held.
        """
        with self.lock:
            if self.content_store.get_status(content_id) == STATUS_HELD:
                return False
            self.content_store.set_status(content_id, STATUS_HELD)
        self.logger.info(f"Content {content_id} held for moderation")
        return True


class FlagGuard:
    """The main class for the Flag Guard service."""

    def __init__(
        self,
        config: Dict,
        content_store,
        settings,
        window: Optional[RateWindowStore] = None,
    ):
        """Initializes the FlagGuard instance.

        Args:
            config: A dictionary containing the configuration for the guard.
            content_store: Tracks report counters and moderation state.
            settings: Provides the enable toggle and the hold threshold.
            window: The address-keyed report window. Built from ``config``
                when omitted.
        """
        self._validate_config(config)
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.content_store = content_store
        self.settings = settings
        self.window = window or RateWindowStore(
            namespace=config["storage_cookie"],
            window=config["window_lifetime"],
            max_entries=config["window_max_entries"],
        )
        self.gate = ModerationGate(content_store)
        self.metrics = Metrics()
        self.listeners: List[Callable[[int], Any]] = []

    def _validate_config(self, config: Dict):
        """Validates the configuration dictionary."""
        required = [
            "storage_cookie",
            "no_cookie_grace",
            "cookie_lifetime",
            "window_lifetime",
            "window_max_entries",
            "allow_moderated_to_be_reflagged",
            "thank_you_message",
            "invalid_values_message",
            "already_flagged_message",
            "already_flagged_note",
            "disabled_message",
            "error_message",
        ]
        missing = [k for k in required if k not in config]
        if missing:
            raise ValueError(f"Config missing keys: {missing}")

    def add_listener(self, callback: Callable[[int], Any]):
        """Registers a callback invoked with the content id on each hold."""
        self.listeners.append(callback)

    def _emit_flagged(self, content_id: int):
        for callback in self.listeners:
            try:
                callback(content_id)
            except Exception as e:
                self.logger.error(f"Flag listener {callback!r} failed for {content_id}: {e}")

    def _parse_content_id(self, raw: Any) -> int:
        """Parses a submitted content id into a positive integer."""
        if raw is None or isinstance(raw, bool):
            raise InvalidReport(self.config["invalid_values_message"])
        if isinstance(raw, int):
            content_id = raw
        elif isinstance(raw, float) and raw.is_integer():
            content_id = int(raw)
        elif isinstance(raw, str) and raw.strip().isascii() and raw.strip().isdigit():
            try:
                content_id = int(raw.strip())
            except ValueError:
                raise InvalidReport(self.config["invalid_values_message"])
        else:
            raise InvalidReport(self.config["invalid_values_message"])
        if content_id <= 0:
            raise InvalidReport(self.config["invalid_values_message"])
        return content_id

    def _client_reports(self, context: RequestContext) -> tokens.CleanReports:
        if not context.capability_token_value:
            return {}
        return tokens.decode(context.capability_token_value)

    def check_already_flagged(self, content_id: int, context: RequestContext) -> bool:
        """Checks if this client reported the content before.

        The durable token is trusted only when the client is known to keep
        cookies. Otherwise, or when the token is clean, the address window
        decides: any hit counts for cookie-less clients, while clients with
        cookies get ``no_cookie_grace`` hits before a clean token is taken
        as a sign of cookie clearing.

        Args:
            content_id: The content being reported.
            context: The reporting client.

        Returns:
            True if the report must not count again.
        """
        if context.capability_token_present and content_id in self._client_reports(context):
            return True

        key = self.window.key_for(context.client_address)
        entry = self.window.get(key)
        if not entry or content_id not in entry:
            return False
        if not context.capability_token_present:
            return True
        return entry[content_id] >= self.config["no_cookie_grace"]

    def mark_flagged(self, content_id: int, context: RequestContext) -> str:
        """Records a report and holds the content once the threshold is met.

        Counting always happens so that the administrator's tally stays
        accurate. Only the hold is skipped for content a moderator already
        released, unless ``allow_moderated_to_be_reflagged`` is set.

        Args:
            content_id: The content being reported.
            context: The reporting client.

        Returns:
            The updated durable token for the client.
        """
        reports = self._client_reports(context)
        reports[content_id] = reports.get(content_id, 0) + 1
        token = tokens.encode(reports)

        key = self.window.key_for(context.client_address)
        self.window.increment(key, content_id, self.config["window_lifetime"])

        self.content_store.increment_report_count(content_id)

        # A moderator's approval outranks later reports
        report_count = self.content_store.get_report_count(content_id)
        already_moderated = self.content_store.get_moderated_flag(content_id)
        if report_count > 0 and already_moderated:
            if not self.config["allow_moderated_to_be_reflagged"]:
                self.logger.info(
                    f"Content {content_id} was moderated before; report counted, no hold"
                )
                return token

        threshold = self.settings.get_threshold()
        if report_count >= threshold:
            if self.gate.hold(content_id):
                self.metrics.record_hold()
                self._emit_flagged(content_id)
        return token

    def submit_report(self, content_id: Any, context: RequestContext) -> Outcome:
        """Handles one report from the transport layer.

        Args:
            content_id: The submitted content id, not yet validated.
            context: The reporting client.

        Returns:
            An Outcome. This method does not raise.
        """
        if PROMETHEUS_ENABLED:
            flag_requests_total.labels(endpoint="flag").inc()
        parsed_id: Optional[int] = None
        try:
            if not self.settings.is_enabled():
                raise InvalidReport(self.config["disabled_message"])
            parsed_id = self._parse_content_id(content_id)
            if not self.content_store.content_exists(parsed_id):
                raise InvalidReport(self.config["invalid_values_message"])
            if self.check_already_flagged(parsed_id, context):
                raise DuplicateReport(self.config["already_flagged_message"])
            token = self.mark_flagged(parsed_id, context)
            outcome = Outcome(
                status=ACCEPTED,
                message=self.config["thank_you_message"],
                comment_id=parsed_id,
                token=token,
                token_max_age=self.config["cookie_lifetime"],
            )
        except InvalidReport as e:
            outcome = Outcome(status=REJECTED_INVALID, message=e.message)
        except DuplicateReport as e:
            outcome = Outcome(status=ALREADY_FLAGGED, message=e.message, comment_id=parsed_id)
        except Exception as e:
            self.logger.error(f"Report for {content_id!r} failed: {e}")
            outcome = Outcome(
                status=REJECTED_INVALID,
                message=self.config["error_message"],
                comment_id=parsed_id,
            )
        self.metrics.record(outcome)
        return outcome

    def flag_status(self, content_id: int, context: RequestContext) -> Dict[str, Any]:
        """Tells a client whether to offer the report link for content.

        Raises:
            InvalidReport: If the content does not exist.
        """
        content_id = self._parse_content_id(content_id)
        if not self.content_store.content_exists(content_id):
            raise InvalidReport("This comment does not exist.")
        flagged = self.check_already_flagged(content_id, context)
        return {
            "comment_id": content_id,
            "already_flagged": flagged,
            "note": self.config["already_flagged_note"] if flagged else "",
        }

    def report_summary(self, content_id: int) -> Dict[str, Any]:
        """Returns the administrator view of one content item."""
        return {
            "comment_id": content_id,
            "reported": max(0, int(self.content_store.get_report_count(content_id))),
            "status": self.content_store.get_status(content_id),
            "moderated": bool(self.content_store.get_moderated_flag(content_id)),
        }
