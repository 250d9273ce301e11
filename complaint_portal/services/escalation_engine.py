"""
Escalation Engine.

Walks open complaints against the active escalation rules and escalates
every complaint that has outlived its rule's threshold:

    assigned_to       <- rule.escalate_to
    escalation_level  <- escalation_level + 1
    escalated_at      <- now

plus one ``escalated`` history row (same transaction) and a best-effort
notification to the new assignee.

Rule matching:
    exact (category, priority) match among well-formed active rules; when
    several match, the smallest hours_threshold wins, then the lowest id.

Idempotence:
    a complaint is due only if it has not been escalated since the moment
    its rule's threshold was crossed (created_at + hours_threshold). A
    second pass with the same ``now`` is therefore a no-op.

Failure isolation:
    every complaint is escalated in its own transaction. Version conflicts,
    store outages and unexpected errors are recorded on the result and the
    pass moves on.

Escalation never changes ``status``; it does not go through the lifecycle
state machine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select

from complaint_portal.core.exceptions import ConcurrentModification, StoreUnavailable
from complaint_portal.models import db
from complaint_portal.models.auth import Tenant
from complaint_portal.models.complaint import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_PRIORITIES,
    TERMINAL_STATUSES,
)
from complaint_portal.models.escalation import MAX_THRESHOLD_HOURS
from complaint_portal.models.history import EscalatedDetails
from complaint_portal.services.escalation_rules import format_threshold
from complaint_portal.services.stores import (
    ComplaintRecord,
    HistoryEntry,
    NotificationRequest,
    SqlComplaintStore,
    SqlHistoryLog,
    SqlNotificationSink,
    SqlRuleSource,
)
from complaint_portal.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


# ═══════════════════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EscalationFailure:
    complaint_id: str
    error: str
    message: str

    def to_dict(self) -> dict:
        return {"complaint_id": self.complaint_id, "error": self.error, "message": self.message}


@dataclass
class EscalationPassResult:
    escalated_ids: list[str] = field(default_factory=list)
    failures: list[EscalationFailure] = field(default_factory=list)
    skipped_rule_ids: list = field(default_factory=list)

    @property
    def escalated_count(self) -> int:
        return len(self.escalated_ids)

    @property
    def failed_ids(self) -> list[str]:
        return [f.complaint_id for f in self.failures]

    def to_dict(self) -> dict:
        return {
            "escalated_count": self.escalated_count,
            "escalated_ids": list(self.escalated_ids),
            "failed_count": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
            "skipped_rule_ids": list(self.skipped_rule_ids),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Rule matching
# ═══════════════════════════════════════════════════════════════════════════

def is_well_formed(rule) -> bool:
    """A rule the engine can act on. Anything else is treated as no match."""
    hours = getattr(rule, "hours_threshold", None)
    target = getattr(rule, "escalate_to", None)
    return (
        getattr(rule, "id", None) is not None
        and getattr(rule, "category", None) in COMPLAINT_CATEGORIES
        and getattr(rule, "priority", None) in COMPLAINT_PRIORITIES
        and isinstance(hours, int) and not isinstance(hours, bool)
        and 0 < hours <= MAX_THRESHOLD_HOURS
        and target is not None
        and getattr(rule, "is_active", True) is True
    )


def select_rule(rules, category: str, priority: str):
    """Pick the rule governing (category, priority), or None.

    ``rules`` must already be filtered to well-formed rules.
    """
    matching = [r for r in rules if r.category == category and r.priority == priority]
    if not matching:
        return None
    return min(matching, key=lambda r: (r.hours_threshold, str(r.id)))


def age_hours(now: datetime, created_at: datetime) -> float:
    return (as_utc(now) - as_utc(created_at)).total_seconds() / 3600


def is_due(complaint: ComplaintRecord, rule, now: datetime) -> bool:
    """Threshold reached and not yet escalated since it was crossed."""
    if age_hours(now, complaint.created_at) < rule.hours_threshold:
        return False
    crossed_at = as_utc(complaint.created_at) + timedelta(hours=rule.hours_threshold)
    escalated_at = as_utc(complaint.escalated_at)
    return escalated_at is None or escalated_at < crossed_at


# ═══════════════════════════════════════════════════════════════════════════
#  Pass
# ═══════════════════════════════════════════════════════════════════════════

def _escalate(complaint: ComplaintRecord, rule, now: datetime, *, store, history, system_actor: str):
    new_level = complaint.escalation_level + 1
    with store.transaction():
        updated = store.update_complaint(
            complaint.id,
            {"assigned_to": rule.escalate_to, "escalation_level": new_level, "escalated_at": now},
            complaint.version,
        )
        history.append(HistoryEntry(
            complaint_id=complaint.id,
            details=EscalatedDetails(
                escalation_level=new_level,
                rule_id=str(rule.id),
                hours_threshold=rule.hours_threshold,
                auto_escalated=True,
            ),
            performed_by=system_actor,
            old_value=f"Level {complaint.escalation_level}",
            new_value=f"Level {new_level}",
            created_at=now,
        ))
    return updated


def _notify_target(notifier, complaint: ComplaintRecord, rule, level: int) -> None:
    request = NotificationRequest(
        user_id=rule.escalate_to,
        type="complaint_escalated",
        title="Complaint escalated to you",
        message=(
            f'"{complaint.title}" ({complaint.category}, {complaint.priority}) has been open '
            f"for more than {format_threshold(rule.hours_threshold)} and was escalated "
            f"to level {level}."
        ),
        related_id=complaint.id,
    )
    try:
        notifier.enqueue(request)
    except Exception:
        logger.warning(
            "Escalation notification failed for complaint %s", complaint.id, exc_info=True,
            extra={"complaint_id": complaint.id},
        )


def run_escalation_pass(
    now: datetime,
    rules,
    open_complaints,
    *,
    store,
    history,
    notifier,
    system_actor: str = SYSTEM_ACTOR,
) -> EscalationPassResult:
    """Evaluate ``open_complaints`` against ``rules`` once.

    Args:
        now: Evaluation timestamp.
        rules: Active escalation rules (RuleRecord or any object with the
            same attributes). Malformed rules are skipped.
        open_complaints: ComplaintRecord snapshots of non-terminal complaints.
        store: ComplaintStore used for the conditional update.
        history: HistoryLog receiving the ``escalated`` entry.
        notifier: NotificationSink for the escalation target.
        system_actor: Identity recorded as ``performed_by``.

    Returns:
        EscalationPassResult with escalated ids and per-complaint failures.
    """
    now = as_utc(now)
    result = EscalationPassResult()

    usable = []
    for rule in rules:
        if is_well_formed(rule):
            usable.append(rule)
        else:
            result.skipped_rule_ids.append(getattr(rule, "id", None))
            logger.warning("Skipping malformed escalation rule %r", getattr(rule, "id", rule))

    for complaint in open_complaints:
        if complaint.status in TERMINAL_STATUSES:
            continue
        rule = select_rule(usable, complaint.category, complaint.priority)
        if rule is None or not is_due(complaint, rule, now):
            continue

        try:
            updated = _escalate(
                complaint, rule, now, store=store, history=history, system_actor=system_actor,
            )
        except ConcurrentModification as exc:
            logger.info("Complaint %s changed during escalation; left for the next pass", complaint.id)
            result.failures.append(EscalationFailure(complaint.id, "concurrent_modification", str(exc)))
            continue
        except StoreUnavailable as exc:
            logger.error("Store unavailable escalating complaint %s: %s", complaint.id, exc)
            result.failures.append(EscalationFailure(complaint.id, "store_unavailable", str(exc)))
            continue
        except Exception as exc:
            logger.exception("Unexpected error escalating complaint %s", complaint.id)
            result.failures.append(EscalationFailure(complaint.id, type(exc).__name__, str(exc)))
            continue

        result.escalated_ids.append(complaint.id)
        logger.warning(
            "Complaint %s escalated to level %d (rule %s, %dh) -> user %s",
            complaint.id, updated.escalation_level, rule.id, rule.hours_threshold, rule.escalate_to,
            extra={
                "complaint_id": complaint.id,
                "rule_id": str(rule.id),
                "escalation_level": updated.escalation_level,
                "tenant_id": complaint.tenant_id,
            },
        )
        _notify_target(notifier, complaint, rule, updated.escalation_level)

    logger.info(
        "Escalation pass complete: %d escalated, %d failed, %d malformed rules skipped",
        result.escalated_count, len(result.failures), len(result.skipped_rule_ids),
    )
    return result


def run_auto_escalation(*, now: datetime | None = None, tenant_id: int | None = None,
                        system_actor: str | None = None) -> dict:
    """Run one pass per active tenant (or just ``tenant_id``) with the SQL stores.

    Returns:
        {"tenants": {tenant_id: pass dict}, "escalated_count", "failed_count"}
    """
    now = now or utcnow()
    system_actor = system_actor or current_app.config.get("ESCALATION_SYSTEM_ACTOR", SYSTEM_ACTOR)

    stmt = select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
    if tenant_id is not None:
        stmt = stmt.where(Tenant.id == tenant_id)
    tenant_ids = list(db.session.execute(stmt).scalars())

    summary = {"tenants": {}, "escalated_count": 0, "failed_count": 0}
    for tid in tenant_ids:
        store = SqlComplaintStore(tid)
        try:
            rules = SqlRuleSource(tid).list_active_rules()
            open_complaints = store.list_open_complaints() if rules else []
        except StoreUnavailable as exc:
            summary["tenants"][tid] = {"error": str(exc)}
            continue
        if not rules:
            continue
        outcome = run_escalation_pass(
            now,
            rules,
            open_complaints,
            store=store,
            history=SqlHistoryLog(tid),
            notifier=SqlNotificationSink(tid),
            system_actor=system_actor,
        )
        summary["tenants"][tid] = outcome.to_dict()
        summary["escalated_count"] += outcome.escalated_count
        summary["failed_count"] += len(outcome.failures)

    return summary
