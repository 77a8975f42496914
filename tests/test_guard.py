"""Tests for the FlagGuard decision engine."""
import base64
import pytest
from flag_guard import tokens
from flag_guard.guard import (
    ACCEPTED,
    ALREADY_FLAGGED,
    DEFAULT_CONFIG,
    REJECTED_INVALID,
    FlagGuard,
    Outcome,
    RequestContext,
)
from flag_guard.stores import InMemoryContentStore, Settings, STATUS_HELD, STATUS_VISIBLE
from flag_guard.window import RateWindowStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_guard(threshold=5, enabled=True, clock=None, **overrides):
    config = {**DEFAULT_CONFIG, **overrides}
    store = InMemoryContentStore()
    for content_id in (7, 42, 99):
        store.add(content_id)
    window = RateWindowStore(
        namespace=config["storage_cookie"],
        window=config["window_lifetime"],
        clock=clock or FakeClock(),
    )
    return FlagGuard(config, store, Settings(enabled, threshold), window=window)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return make_guard(clock=clock)


def cookie_client(address="10.0.0.1", token=None):
    """A browser that keeps cookies."""
    return RequestContext(
        client_address=address,
        capability_token_present=True,
        capability_token_value=token,
    )


def cookieless_client(address="10.0.0.1"):
    return RequestContext(client_address=address)


class TestSubmitReport:
    """Tests for the outcome of a report submission."""

    def test_accepted_report(self, guard):
        outcome = guard.submit_report(42, cookie_client())
        assert outcome.status == ACCEPTED
        assert outcome.comment_id == 42
        assert outcome.message == DEFAULT_CONFIG["thank_you_message"]
        assert tokens.decode(outcome.token) == {42: 1}
        assert outcome.token_max_age == DEFAULT_CONFIG["cookie_lifetime"]
        assert guard.content_store.get_report_count(42) == 1

    @pytest.mark.parametrize(
        "content_id",
        [
            None, "", "abc", "4.5", 4.5, 0, 0.0, "0", -3, "-3", True, [42], {"id": 42},
            float("inf"), float("nan"), "9" * 5000,
        ],
    )
    def test_invalid_content_id(self, guard, content_id):
        outcome = guard.submit_report(content_id, cookie_client())
        assert outcome.status == REJECTED_INVALID
        assert outcome.message == DEFAULT_CONFIG["invalid_values_message"]
        assert outcome.token is None

    def test_integral_float_content_id(self, guard):
        outcome = guard.submit_report(42.0, cookie_client())
        assert outcome.status == ACCEPTED
        assert outcome.comment_id == 42

    def test_numeric_string_content_id(self, guard):
        outcome = guard.submit_report(" 42 ", cookie_client())
        assert outcome.status == ACCEPTED
        assert outcome.comment_id == 42

    def test_unknown_content_has_no_side_effects(self, guard):
        ctx = cookieless_client()
        outcome = guard.submit_report(1234, ctx)
        assert outcome.status == REJECTED_INVALID
        assert guard.window.get(guard.window.key_for(ctx.client_address)) is None

    def test_disabled(self):
        guard = make_guard(enabled=False)
        outcome = guard.submit_report(42, cookie_client())
        assert outcome.status == REJECTED_INVALID
        assert outcome.message == DEFAULT_CONFIG["disabled_message"]
        assert guard.content_store.get_report_count(42) == 0

    def test_duplicate_has_no_side_effects(self, guard):
        ctx = cookieless_client()
        guard.submit_report(42, ctx)
        outcome = guard.submit_report(42, ctx)
        assert outcome.status == ALREADY_FLAGGED
        assert outcome.comment_id == 42
        assert outcome.message == DEFAULT_CONFIG["already_flagged_message"]
        assert outcome.token is None
        assert guard.content_store.get_report_count(42) == 1
        assert guard.window.get(guard.window.key_for(ctx.client_address)) == {42: 1}

    def test_collaborator_failure_becomes_outcome(self, guard):
        def broken(content_id):
            raise RuntimeError("database gone")

        guard.content_store.increment_report_count = broken
        outcome = guard.submit_report(42, cookie_client())
        assert outcome.status == REJECTED_INVALID
        assert outcome.message == DEFAULT_CONFIG["error_message"]

    def test_custom_messages(self):
        guard = make_guard(thank_you_message="Danke")
        assert guard.submit_report(42, cookie_client()).message == "Danke"

    def test_outcome_json_hides_token(self, guard):
        outcome = guard.submit_report(42, cookie_client())
        assert outcome.to_dict() == {
            "status": ACCEPTED,
            "message": DEFAULT_CONFIG["thank_you_message"],
            "comment_id": 42,
        }
        assert "token" not in outcome.to_json()

    def test_metrics(self, guard):
        ctx = cookieless_client()
        guard.submit_report(42, ctx)
        guard.submit_report(42, ctx)
        guard.submit_report("nope", ctx)
        summary = guard.metrics.summary()
        assert summary["total"] == 3
        assert summary["accepted"] == 1
        assert summary["rejected"] == 2
        assert summary["outcomes"] == {ACCEPTED: 1, ALREADY_FLAGGED: 1, REJECTED_INVALID: 1}


class TestAlreadyFlagged:
    """Tests for duplicate-report detection."""

    def test_token_marks_content(self, guard):
        token = tokens.encode({42: 1})
        for _ in range(3):
            assert guard.check_already_flagged(42, cookie_client(token=token))
        assert not guard.check_already_flagged(7, cookie_client(token=token))

    def test_token_ignored_without_cookie_probe(self, guard):
        ctx = RequestContext(
            client_address="10.0.0.1",
            capability_token_present=False,
            capability_token_value=tokens.encode({42: 1}),
        )
        assert not guard.check_already_flagged(42, ctx)

    def test_token_client_sees_flag_on_every_later_call(self, guard):
        """Once the token records content, the client stays flagged."""
        first = guard.submit_report(42, cookie_client())
        for address in ("10.0.0.2", "10.0.0.3", "10.0.0.4"):
            outcome = guard.submit_report(42, cookie_client(address, first.token))
            assert outcome.status == ALREADY_FLAGGED

    def test_cookieless_address_flagged_after_one_report(self, guard):
        assert guard.submit_report(42, cookieless_client()).status == ACCEPTED
        assert guard.check_already_flagged(42, cookieless_client())
        assert not guard.check_already_flagged(7, cookieless_client())
        assert not guard.check_already_flagged(42, cookieless_client("10.0.0.2"))

    def test_cleared_cookie_within_grace(self, guard):
        """Cookie clients clearing their token get no_cookie_grace reports."""
        grace = DEFAULT_CONFIG["no_cookie_grace"]
        for _ in range(grace):
            assert guard.submit_report(42, cookie_client()).status == ACCEPTED
        for _ in range(3):
            assert guard.submit_report(42, cookie_client()).status == ALREADY_FLAGGED
        assert guard.content_store.get_report_count(42) == grace

    def test_foreign_token_counts_as_cleared(self, guard):
        foreign = tokens.encode({7: 1})
        grace = DEFAULT_CONFIG["no_cookie_grace"]
        results = [
            guard.submit_report(42, cookie_client(token=foreign)).status
            for _ in range(grace + 1)
        ]
        assert results == [ACCEPTED] * grace + [ALREADY_FLAGGED]

    @pytest.mark.parametrize(
        "raw",
        [
            b"[" * 1100,
            b"{\"1\":" * 3000,
            b"{\"" + b"9" * 5000 + b"\":1}",
            b"{\"1\":\"" + b"9" * 5000 + b"\"}",
        ],
    )
    def test_hostile_token_is_a_fresh_client(self, guard, raw):
        """Deeply nested or oversized token content never blocks a report."""
        token = base64.urlsafe_b64encode(raw).decode()
        ctx = cookie_client(token=token)
        assert guard.flag_status(42, ctx)["already_flagged"] is False
        outcome = guard.submit_report(42, ctx)
        assert outcome.status == ACCEPTED
        assert tokens.decode(outcome.token) == {42: 1}

    def test_tampered_token_is_a_fresh_client(self, guard):
        tampered = "eyJldmlsIjoxfQ"  # {"evil":1}
        assert tokens.decode(tampered) == {}
        outcome = guard.submit_report(42, cookie_client(token=tampered))
        assert outcome.status == ACCEPTED
        assert tokens.decode(outcome.token) == {42: 1}

    def test_window_expiry_allows_new_report(self, guard, clock):
        ctx = cookieless_client()
        guard.submit_report(42, ctx)
        clock.now += DEFAULT_CONFIG["window_lifetime"]
        assert guard.submit_report(42, ctx).status == ACCEPTED


class TestMarkFlagged:
    """Tests for recording reports and holding content."""

    def test_token_extends_existing_reports(self, guard):
        token = tokens.encode({7: 1})
        new_token = guard.mark_flagged(42, cookie_client(token=token))
        assert tokens.decode(new_token) == {7: 1, 42: 1}

    def test_token_counter_increments(self, guard):
        token = tokens.encode({42: 2})
        new_token = guard.mark_flagged(42, cookie_client(token=token))
        assert tokens.decode(new_token) == {42: 3}

    def test_report_count_monotonic(self, guard):
        counts = []
        for i in range(8):
            guard.submit_report(42, cookieless_client(f"10.0.0.{i}"))
            guard.submit_report(42, cookieless_client(f"10.0.0.{i}"))
            counts.append(guard.content_store.get_report_count(42))
        assert counts == sorted(counts)
        assert counts[-1] == 8

    def test_threshold_scenario(self, guard):
        """Five distinct clients hold content 42 at threshold 5."""
        for i in range(4):
            assert guard.submit_report(42, cookieless_client(f"10.0.0.{i}")).accepted
            assert guard.content_store.get_status(42) == STATUS_VISIBLE
        assert guard.submit_report(42, cookieless_client("10.0.0.9")).accepted
        assert guard.content_store.get_status(42) == STATUS_HELD
        assert guard.content_store.get_report_count(42) == 5

    def test_cookieless_scenario(self, guard):
        """Cookie-less client reporting 7 three times counts once."""
        ctx = cookieless_client()
        statuses = [guard.submit_report(7, ctx).status for _ in range(3)]
        assert statuses == [ACCEPTED, ALREADY_FLAGGED, ALREADY_FLAGGED]
        assert guard.content_store.get_report_count(7) == 1

    def test_flagged_event_emitted_once(self):
        guard = make_guard(threshold=2)
        events = []
        guard.add_listener(events.append)
        for i in range(5):
            guard.submit_report(42, cookieless_client(f"10.0.0.{i}"))
        assert events == [42]
        assert guard.metrics.summary()["holds"] == 1

    def test_failing_listener_does_not_change_outcome(self):
        guard = make_guard(threshold=1)

        def broken(content_id):
            raise RuntimeError("mail server down")

        events = []
        guard.add_listener(broken)
        guard.add_listener(events.append)
        outcome = guard.submit_report(42, cookieless_client())
        assert outcome.status == ACCEPTED
        assert events == [42]
        assert guard.content_store.get_status(42) == STATUS_HELD

    def test_moderated_content_is_not_held_again(self):
        guard = make_guard(threshold=1)
        guard.submit_report(42, cookieless_client("10.0.0.1"))
        assert guard.content_store.get_status(42) == STATUS_HELD
        assert guard.content_store.approve(42)

        outcome = guard.submit_report(42, cookieless_client("10.0.0.2"))
        assert outcome.status == ACCEPTED
        assert guard.content_store.get_status(42) == STATUS_VISIBLE
        assert guard.content_store.get_report_count(42) == 2

    def test_moderated_content_reflagged_when_allowed(self):
        guard = make_guard(threshold=1, allow_moderated_to_be_reflagged=True)
        events = []
        guard.add_listener(events.append)
        guard.submit_report(42, cookieless_client("10.0.0.1"))
        guard.content_store.approve(42)
        guard.submit_report(42, cookieless_client("10.0.0.2"))
        assert guard.content_store.get_status(42) == STATUS_HELD
        assert events == [42, 42]

    def test_threshold_read_at_report_time(self, guard):
        guard.submit_report(42, cookieless_client("10.0.0.1"))
        guard.settings.update(threshold=2)
        guard.submit_report(42, cookieless_client("10.0.0.2"))
        assert guard.content_store.get_status(42) == STATUS_HELD


class TestFlagStatus:
    def test_status_before_and_after(self, guard):
        ctx = cookieless_client()
        assert guard.flag_status(42, ctx) == {
            "comment_id": 42,
            "already_flagged": False,
            "note": "",
        }
        guard.submit_report(42, ctx)
        status = guard.flag_status(42, ctx)
        assert status["already_flagged"] is True
        assert status["note"] == DEFAULT_CONFIG["already_flagged_note"]

    def test_status_unknown_content(self, guard):
        from flag_guard.errors import InvalidReport

        with pytest.raises(InvalidReport):
            guard.flag_status(1234, cookieless_client())


def test_missing_config_keys():
    with pytest.raises(ValueError, match="Config missing keys"):
        FlagGuard({}, InMemoryContentStore(), Settings(True, 5))


def test_outcome_accepted_property():
    assert Outcome(status=ACCEPTED, message="ok").accepted
    assert not Outcome(status=ALREADY_FLAGGED, message="no").accepted
