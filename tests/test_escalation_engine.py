"""
Escalation engine tests.

Part 1 drives ``run_escalation_pass`` against in-memory fakes of the
store protocols, which makes failure injection (store outages, version
conflicts, broken notification delivery) straightforward.

Part 2 runs ``run_auto_escalation`` end-to-end against the SQL stores:
scenario checks, idempotence, the compare-and-swap guard against a second
pass working from a stale snapshot, and tenant isolation.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta

import pytest

from complaint_portal.core.exceptions import ConcurrentModification, StoreUnavailable
from complaint_portal.models import db
from complaint_portal.models.complaint import TERMINAL_STATUSES, Complaint
from complaint_portal.models.history import ComplaintHistory
from complaint_portal.models.notification import Notification
from complaint_portal.services.escalation_engine import (
    SYSTEM_ACTOR,
    age_hours,
    is_due,
    is_well_formed,
    run_auto_escalation,
    run_escalation_pass,
    select_rule,
)
from complaint_portal.services.stores import (
    ComplaintRecord,
    ComplaintStore,
    HistoryLog,
    NotificationSink,
    RuleRecord,
    RuleSource,
    SqlComplaintStore,
    SqlHistoryLog,
    SqlNotificationSink,
    SqlRuleSource,
)
from complaint_portal.utils.helpers import as_utc, utcnow

NOW = utcnow().replace(microsecond=0)
ADMIN_ID = 900
LECTURER_ID = 901


# ═════════════════════════════════════════════════════════════════════════════
# In-memory collaborators
# ═════════════════════════════════════════════════════════════════════════════


class FakeComplaintStore:
    """Dict-backed ComplaintStore. Writes become visible on commit only."""

    def __init__(self, complaints, *, unavailable_ids=(), conflict_ids=()):
        self.rows = {c.id: c for c in complaints}
        self.unavailable_ids = set(unavailable_ids)
        self.conflict_ids = set(conflict_ids)
        self.history = []
        self._pending_rows = {}
        self._pending_history = []

    def list_open_complaints(self):
        return [c for c in self.rows.values() if c.status not in TERMINAL_STATUSES]

    def get_complaint(self, complaint_id):
        return self.rows[complaint_id]

    def update_complaint(self, complaint_id, patch, expected_version):
        if complaint_id in self.unavailable_ids:
            raise StoreUnavailable("update_complaint", "connection reset by peer")
        current = self.rows[complaint_id]
        if complaint_id in self.conflict_ids or current.version != expected_version:
            raise ConcurrentModification(complaint_id, expected_version)
        updated = replace(current, **patch, version=current.version + 1)
        self._pending_rows[complaint_id] = updated
        return updated

    @contextmanager
    def transaction(self):
        self._pending_rows, self._pending_history = {}, []
        try:
            yield
        except Exception:
            self._pending_rows, self._pending_history = {}, []
            raise
        self.rows.update(self._pending_rows)
        self.history.extend(self._pending_history)


class FakeHistoryLog:
    def __init__(self, store, *, fail_for=()):
        self.store = store
        self.fail_for = set(fail_for)

    def append(self, entry):
        if entry.complaint_id in self.fail_for:
            raise RuntimeError("history ledger rejected entry")
        self.store._pending_history.append(entry)


class FakeNotificationSink:
    def __init__(self, *, broken=False):
        self.broken = broken
        self.sent = []

    def enqueue(self, request):
        if self.broken:
            raise ConnectionError("notification queue offline")
        self.sent.append(request)


def _record(cid, *, age=3.0, category="academic", priority="high", status="new",
            escalation_level=0, escalated_at=None, assigned_to=None, version=1):
    return ComplaintRecord(
        id=cid,
        tenant_id=1,
        student_id=10,
        title=f"Complaint {cid}",
        status=status,
        category=category,
        priority=priority,
        created_at=NOW - timedelta(hours=age),
        assigned_to=assigned_to,
        escalation_level=escalation_level,
        escalated_at=escalated_at,
        version=version,
    )


def _rule(rid="r-2h", *, hours=2, escalate_to=ADMIN_ID, category="academic", priority="high"):
    return RuleRecord(id=rid, category=category, priority=priority,
                      hours_threshold=hours, escalate_to=escalate_to)


def _run(rules, complaints, *, store=None, history=None, notifier=None, now=NOW, **kwargs):
    store = store or FakeComplaintStore(complaints)
    history = history or FakeHistoryLog(store)
    notifier = notifier or FakeNotificationSink()
    result = run_escalation_pass(
        now, rules, store.list_open_complaints() if complaints is None else complaints,
        store=store, history=history, notifier=notifier, **kwargs,
    )
    return result, store, notifier


# ═════════════════════════════════════════════════════════════════════════════
# Protocol conformance
# ═════════════════════════════════════════════════════════════════════════════


def test_fakes_and_sql_stores_satisfy_protocols(tenant):
    fake = FakeComplaintStore([])
    assert isinstance(fake, ComplaintStore)
    assert isinstance(FakeHistoryLog(fake), HistoryLog)
    assert isinstance(FakeNotificationSink(), NotificationSink)
    assert isinstance(SqlComplaintStore(tenant.id), ComplaintStore)
    assert isinstance(SqlHistoryLog(tenant.id), HistoryLog)
    assert isinstance(SqlNotificationSink(tenant.id), NotificationSink)
    assert isinstance(SqlRuleSource(tenant.id), RuleSource)


# ═════════════════════════════════════════════════════════════════════════════
# Matching helpers
# ═════════════════════════════════════════════════════════════════════════════


def test_select_rule_prefers_smallest_threshold():
    rules = [_rule("r-4h", hours=4), _rule("r-2h", hours=2), _rule("r-8h", hours=8)]
    assert select_rule(rules, "academic", "high").id == "r-2h"


def test_select_rule_equal_thresholds_break_on_id():
    rules = [_rule("r-b", hours=2), _rule("r-a", hours=2)]
    assert select_rule(rules, "academic", "high").id == "r-a"


def test_select_rule_requires_exact_pair():
    rules = [_rule(category="academic", priority="low")]
    assert select_rule(rules, "academic", "high") is None


@pytest.mark.parametrize("bad", [
    {"hours_threshold": 0},
    {"hours_threshold": -3},
    {"hours_threshold": 8761},
    {"hours_threshold": "2"},
    {"hours_threshold": True},
    {"hours_threshold": 2.5},
    {"category": "parking"},
    {"priority": "urgent"},
    {"escalate_to": None},
    {"is_active": False},
])
def test_is_well_formed_rejects_malformed_rules(bad):
    assert is_well_formed(_rule()) is True
    assert is_well_formed(replace(_rule(), **bad)) is False


def test_age_hours_handles_naive_timestamps():
    naive = (NOW - timedelta(hours=5)).replace(tzinfo=None)
    assert age_hours(NOW, naive) == pytest.approx(5.0)


def test_is_due_at_exact_threshold():
    assert is_due(_record("c", age=2.0), _rule(hours=2), NOW) is True
    assert is_due(_record("c", age=1.99), _rule(hours=2), NOW) is False


# ═════════════════════════════════════════════════════════════════════════════
# Pass behaviour (fakes)
# ═════════════════════════════════════════════════════════════════════════════


def test_three_hour_old_complaint_escalates_under_two_hour_rule():
    complaint = _record("c1", age=3)

    result, store, notifier = _run([_rule(hours=2)], [complaint])

    assert result.escalated_ids == ["c1"]
    assert result.escalated_count == 1
    row = store.rows["c1"]
    assert row.assigned_to == ADMIN_ID
    assert row.escalation_level == 1
    assert row.escalated_at == NOW
    assert row.status == "new"
    assert row.version == 2
    assert len(store.history) == 1
    entry = store.history[0]
    assert entry.action == "escalated"
    assert entry.performed_by == SYSTEM_ACTOR
    assert entry.old_value == "Level 0"
    assert entry.new_value == "Level 1"
    assert entry.details.hours_threshold == 2
    assert entry.details.escalation_level == 1
    assert entry.details.rule_id == "r-2h"
    assert entry.details.auto_escalated is True
    assert [(n.user_id, n.type) for n in notifier.sent] == [(ADMIN_ID, "complaint_escalated")]


def test_one_hour_old_complaint_is_left_alone():
    complaint = _record("c1", age=1)

    result, store, notifier = _run([_rule(hours=2)], [complaint])

    assert result.escalated_count == 0
    assert store.rows["c1"] == complaint
    assert store.history == []
    assert notifier.sent == []


def test_duplicate_active_rules_smaller_threshold_wins():
    rules = [_rule("r-4h", hours=4, escalate_to=LECTURER_ID), _rule("r-2h", hours=2)]

    result, store, _ = _run(rules, [_record("c1", age=3)])

    assert result.escalated_ids == ["c1"]
    assert store.rows["c1"].assigned_to == ADMIN_ID
    assert store.history[0].details.rule_id == "r-2h"
    assert store.history[0].details.hours_threshold == 2


def test_second_pass_with_same_now_is_a_no_op():
    store = FakeComplaintStore([_record("c1", age=3), _record("c2", age=5)])
    rules = [_rule(hours=2)]

    first, _, _ = _run(rules, None, store=store)
    second, _, notifier = _run(rules, None, store=store)

    assert sorted(first.escalated_ids) == ["c1", "c2"]
    assert second.escalated_count == 0
    assert notifier.sent == []
    assert [store.rows[c].escalation_level for c in ("c1", "c2")] == [1, 1]
    assert len(store.history) == 2


def test_later_pass_does_not_re_escalate_under_same_rule():
    store = FakeComplaintStore([_record("c1", age=3)])
    rules = [_rule(hours=2)]

    _run(rules, None, store=store)
    later, _, _ = _run(rules, None, store=store, now=NOW + timedelta(hours=48))

    assert later.escalated_count == 0
    assert store.rows["c1"].escalation_level == 1


def test_escalation_before_threshold_crossing_does_not_block_next_level():
    prior = NOW - timedelta(hours=9)  # created 10h ago, escalated 1h in
    complaint = _record("c1", age=10, escalation_level=1, escalated_at=prior, assigned_to=LECTURER_ID)

    result, store, _ = _run([_rule(hours=4)], [complaint])

    assert result.escalated_ids == ["c1"]
    assert store.rows["c1"].escalation_level == 2
    assert store.history[0].old_value == "Level 1"
    assert store.history[0].details.escalation_level == 2


def test_no_matching_rule_is_skipped():
    complaint = _record("c1", age=50, category="facilities", priority="low")
    result, store, _ = _run([_rule(hours=2)], [complaint])
    assert result.escalated_count == 0
    assert store.rows["c1"].escalation_level == 0


def test_terminal_complaints_are_never_escalated():
    complaints = [_record("closed", age=30, status="closed"), _record("gone", age=30, status="withdrawn")]
    result, store, _ = _run([_rule(hours=2)], complaints)
    assert result.escalated_count == 0
    assert store.history == []


def test_escalation_keeps_status_in_progress():
    result, store, _ = _run([_rule(hours=2)], [_record("c1", age=3, status="in_progress")])
    assert result.escalated_ids == ["c1"]
    assert store.rows["c1"].status == "in_progress"


def test_malformed_rules_are_skipped_not_fatal():
    rules = [
        replace(_rule("broken-zero"), hours_threshold=0),
        replace(_rule("broken-str"), hours_threshold="1"),
        replace(_rule("broken-target"), escalate_to=None),
        _rule("good", hours=2),
    ]

    result, store, _ = _run(rules, [_record("c1", age=3)])

    assert result.escalated_ids == ["c1"]
    assert store.history[0].details.rule_id == "good"
    assert sorted(result.skipped_rule_ids) == ["broken-str", "broken-target", "broken-zero"]


def test_only_malformed_rules_means_no_escalation():
    result, store, _ = _run([replace(_rule(), hours_threshold=-1)], [_record("c1", age=3)])
    assert result.escalated_count == 0
    assert store.rows["c1"].escalation_level == 0


def test_store_failure_on_one_complaint_does_not_abort_the_pass():
    complaints = [_record("c1", age=3), _record("c2", age=3), _record("c3", age=3)]
    store = FakeComplaintStore(complaints, unavailable_ids={"c2"})

    result, _, notifier = _run([_rule(hours=2)], complaints, store=store)

    assert result.escalated_ids == ["c1", "c3"]
    assert result.failed_ids == ["c2"]
    assert result.failures[0].error == "store_unavailable"
    assert store.rows["c2"].escalation_level == 0
    assert {e.complaint_id for e in store.history} == {"c1", "c3"}
    assert {n.related_id for n in notifier.sent} == {"c1", "c3"}


def test_version_conflict_is_reported_and_left_for_next_pass():
    complaints = [_record("c1", age=3), _record("c2", age=3)]
    store = FakeComplaintStore(complaints, conflict_ids={"c1"})

    result, _, _ = _run([_rule(hours=2)], complaints, store=store)

    assert result.escalated_ids == ["c2"]
    assert result.failures[0].complaint_id == "c1"
    assert result.failures[0].error == "concurrent_modification"
    assert store.rows["c1"].escalation_level == 0


def test_history_failure_rolls_back_that_complaint_only():
    complaints = [_record("c1", age=3), _record("c2", age=3)]
    store = FakeComplaintStore(complaints)
    history = FakeHistoryLog(store, fail_for={"c1"})

    result, _, _ = _run([_rule(hours=2)], complaints, store=store, history=history)

    assert result.escalated_ids == ["c2"]
    assert result.failures[0].error == "RuntimeError"
    assert store.rows["c1"].escalation_level == 0
    assert store.rows["c1"].version == 1
    assert [e.complaint_id for e in store.history] == ["c2"]


def test_notification_failure_does_not_undo_escalation():
    notifier = FakeNotificationSink(broken=True)
    result, store, _ = _run([_rule(hours=2)], [_record("c1", age=3)], notifier=notifier)
    assert result.escalated_ids == ["c1"]
    assert result.failures == []
    assert store.rows["c1"].escalation_level == 1


def test_custom_system_actor_is_recorded():
    _, store, _ = _run([_rule(hours=2)], [_record("c1", age=3)], system_actor="escalation-bot")
    assert store.history[0].performed_by == "escalation-bot"


def test_escalation_logs_structured_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="complaint_portal.services.escalation_engine"):
        _run([_rule(hours=2)], [_record("c1", age=3)])

    records = [r for r in caplog.records if getattr(r, "complaint_id", None) == "c1"]
    assert len(records) == 1
    assert records[0].levelno == logging.WARNING
    assert records[0].rule_id == "r-2h"
    assert records[0].escalation_level == 1


def test_result_to_dict_shape():
    complaints = [_record("c1", age=3), _record("c2", age=3)]
    store = FakeComplaintStore(complaints, unavailable_ids={"c2"})
    result, _, _ = _run([_rule(hours=2)], complaints, store=store)
    assert result.to_dict() == {
        "escalated_count": 1,
        "escalated_ids": ["c1"],
        "failed_count": 1,
        "failures": [{
            "complaint_id": "c2",
            "error": "store_unavailable",
            "message": result.failures[0].message,
        }],
        "skipped_rule_ids": [],
    }


# ═════════════════════════════════════════════════════════════════════════════
# End-to-end with the SQL stores
# ═════════════════════════════════════════════════════════════════════════════


def _reload(complaint_id):
    db.session.expire_all()
    return db.session.get(Complaint, complaint_id)


def test_auto_escalation_scenario_against_database(tenant, admin, make_complaint, make_rule):
    rule = make_rule(admin, hours_threshold=2)
    complaint = make_complaint(age_hours=3, now=NOW)

    summary = run_auto_escalation(now=NOW)

    assert summary["escalated_count"] == 1
    assert summary["tenants"][tenant.id]["escalated_ids"] == [complaint.id]
    row = _reload(complaint.id)
    assert row.assigned_to == admin.id
    assert row.escalation_level == 1
    assert as_utc(row.escalated_at) == NOW
    assert row.status == "new"
    assert row.version == 2

    entries = ComplaintHistory.query.filter_by(complaint_id=complaint.id, action="escalated").all()
    assert len(entries) == 1
    assert entries[0].performed_by == "system"
    assert entries[0].details == {
        "escalation_level": 1,
        "rule_id": rule.id,
        "hours_threshold": 2,
        "auto_escalated": True,
    }
    notes = Notification.query.filter_by(user_id=admin.id, type="complaint_escalated").all()
    assert len(notes) == 1
    assert notes[0].related_id == complaint.id


def test_auto_escalation_young_complaint_unchanged(admin, make_complaint, make_rule):
    make_rule(admin, hours_threshold=2)
    complaint = make_complaint(age_hours=1, now=NOW)

    summary = run_auto_escalation(now=NOW)

    assert summary["escalated_count"] == 0
    row = _reload(complaint.id)
    assert row.escalation_level == 0
    assert row.escalated_at is None
    assert row.assigned_to is None


def test_auto_escalation_twice_escalates_once(admin, make_complaint, make_rule):
    make_rule(admin, hours_threshold=2)
    complaint = make_complaint(age_hours=3, now=NOW)

    run_auto_escalation(now=NOW)
    second = run_auto_escalation(now=NOW)

    assert second["escalated_count"] == 0
    assert _reload(complaint.id).escalation_level == 1
    assert ComplaintHistory.query.filter_by(action="escalated").count() == 1


def test_stale_snapshot_cannot_double_escalate(tenant, admin, make_complaint, make_rule):
    """Two overlapping passes read the same snapshot; only one may win."""
    make_rule(admin, hours_threshold=2)
    complaint = make_complaint(age_hours=3, now=NOW)
    store = SqlComplaintStore(tenant.id)
    rules = SqlRuleSource(tenant.id).list_active_rules()
    snapshot = store.list_open_complaints()

    kwargs = dict(store=store, history=SqlHistoryLog(tenant.id), notifier=SqlNotificationSink(tenant.id))
    first = run_escalation_pass(NOW, rules, snapshot, **kwargs)
    second = run_escalation_pass(NOW, rules, snapshot, **kwargs)

    assert first.escalated_ids == [complaint.id]
    assert second.escalated_count == 0
    assert second.failures[0].error == "concurrent_modification"
    assert _reload(complaint.id).escalation_level == 1
    assert ComplaintHistory.query.filter_by(action="escalated").count() == 1


def test_inactive_rule_is_ignored(admin, make_complaint, make_rule):
    make_rule(admin, hours_threshold=2, is_active=False)
    complaint = make_complaint(age_hours=3, now=NOW)
    assert run_auto_escalation(now=NOW)["escalated_count"] == 0
    assert _reload(complaint.id).escalation_level == 0


def test_resolved_complaint_is_still_open_for_escalation(admin, make_complaint, make_rule):
    make_rule(admin, hours_threshold=2)
    resolved = make_complaint(status="resolved", age_hours=3, now=NOW)
    closed = make_complaint(status="closed", age_hours=3, now=NOW)

    run_auto_escalation(now=NOW)

    assert _reload(resolved.id).escalation_level == 1
    assert _reload(closed.id).escalation_level == 0


def test_rules_only_apply_within_their_tenant(
    tenant, other_tenant, admin, make_user, make_complaint, make_rule,
):
    make_rule(admin, hours_threshold=2)
    outsider = make_user("student", tenant_obj=other_tenant)
    foreign = make_complaint(age_hours=3, now=NOW, owner=outsider, tenant_obj=other_tenant)
    local = make_complaint(age_hours=3, now=NOW)

    summary = run_auto_escalation(now=NOW)

    assert summary["escalated_count"] == 1
    assert _reload(local.id).escalation_level == 1
    assert _reload(foreign.id).escalation_level == 0


def test_single_tenant_run(tenant, other_tenant, admin, make_user, make_complaint, make_rule):
    other_admin = make_user("admin", tenant_obj=other_tenant)
    make_rule(admin, hours_threshold=2)
    make_rule(other_admin, hours_threshold=2, tenant_obj=other_tenant)
    outsider = make_user("student", tenant_obj=other_tenant)
    foreign = make_complaint(age_hours=3, now=NOW, owner=outsider, tenant_obj=other_tenant)
    make_complaint(age_hours=3, now=NOW)

    summary = run_auto_escalation(now=NOW, tenant_id=tenant.id)

    assert list(summary["tenants"]) == [tenant.id]
    assert _reload(foreign.id).escalation_level == 0


def test_inactive_tenant_is_skipped(tenant, admin, make_complaint, make_rule):
    make_rule(admin, hours_threshold=2)
    complaint = make_complaint(age_hours=3, now=NOW)
    tenant.is_active = False
    db.session.commit()

    summary = run_auto_escalation(now=NOW)

    assert summary["tenants"] == {}
    assert _reload(complaint.id).escalation_level == 0


def test_system_actor_comes_from_config(app, admin, make_complaint, make_rule):
    make_rule(admin, hours_threshold=2)
    complaint = make_complaint(age_hours=3, now=NOW)
    app.config["ESCALATION_SYSTEM_ACTOR"] = "cron:auto-escalate"
    try:
        run_auto_escalation(now=NOW)
    finally:
        app.config["ESCALATION_SYSTEM_ACTOR"] = "system"

    entry = ComplaintHistory.query.filter_by(complaint_id=complaint.id, action="escalated").one()
    assert entry.performed_by == "cron:auto-escalate"
