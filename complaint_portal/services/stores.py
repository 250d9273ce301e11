"""
Store contracts for the lifecycle and escalation core.

The core never touches ``db.session`` directly: it talks to four narrow
collaborators, each a ``typing.Protocol``.

    ComplaintStore    list_open_complaints / get_complaint / update_complaint
    HistoryLog        append
    NotificationSink  enqueue  (best-effort)
    RuleSource        list_active_rules

The ``Sql*`` classes implement them on top of Flask-SQLAlchemy, scoped to
one tenant. Tests swap in in-memory fakes.

``update_complaint`` is a compare-and-swap on ``version``: the UPDATE only
matches the row when the caller's expected version is still current, and
a miss raises ConcurrentModification.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Protocol, runtime_checkable

from sqlalchemy import select, update
from sqlalchemy.exc import InterfaceError, OperationalError

from complaint_portal.core.exceptions import ConcurrentModification, StoreUnavailable
from complaint_portal.models import db
from complaint_portal.models.complaint import TERMINAL_STATUSES, Complaint
from complaint_portal.models.escalation import EscalationRule
from complaint_portal.models.history import HistoryDetails, write_history
from complaint_portal.services.helpers.scoped_queries import get_scoped
from complaint_portal.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

# Columns the core is allowed to patch. Identity, ownership and the
# version counter are never patched directly.
PATCHABLE_FIELDS = frozenset({
    "status",
    "assigned_to",
    "escalation_level",
    "escalated_at",
    "opened_at",
    "opened_by",
    "resolved_at",
    "closed_at",
})


# ═══════════════════════════════════════════════════════════════════════════
#  Records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ComplaintRecord:
    """Detached snapshot of a complaint row, safe to hand across transactions."""

    id: str
    tenant_id: int
    student_id: int
    title: str
    status: str
    category: str
    priority: str
    created_at: datetime
    assigned_to: int | None
    escalation_level: int
    escalated_at: datetime | None
    version: int

    @classmethod
    def from_model(cls, complaint: Complaint) -> ComplaintRecord:
        return cls(
            id=complaint.id,
            tenant_id=complaint.tenant_id,
            student_id=complaint.student_id,
            title=complaint.title,
            status=complaint.status,
            category=complaint.category,
            priority=complaint.priority,
            created_at=as_utc(complaint.created_at),
            assigned_to=complaint.assigned_to,
            escalation_level=complaint.escalation_level or 0,
            escalated_at=as_utc(complaint.escalated_at),
            version=complaint.version,
        )


@dataclass(frozen=True)
class RuleRecord:
    id: str
    category: str
    priority: str
    hours_threshold: int
    escalate_to: int
    is_active: bool = True

    @classmethod
    def from_model(cls, rule: EscalationRule) -> RuleRecord:
        return cls(
            id=rule.id,
            category=rule.category,
            priority=rule.priority,
            hours_threshold=rule.hours_threshold,
            escalate_to=rule.escalate_to,
            is_active=rule.is_active,
        )


@dataclass(frozen=True)
class HistoryEntry:
    complaint_id: str
    details: HistoryDetails
    performed_by: str
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None

    @property
    def action(self) -> str:
        return self.details.action


@dataclass(frozen=True)
class NotificationRequest:
    user_id: int
    type: str
    title: str
    message: str = ""
    related_id: str | None = None


# ═══════════════════════════════════════════════════════════════════════════
#  Contracts
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class ComplaintStore(Protocol):
    def list_open_complaints(self) -> list[ComplaintRecord]:
        """Every complaint not in a terminal status."""
        ...

    def get_complaint(self, complaint_id: str) -> ComplaintRecord:
        """Raise NotFoundError when the id is unknown in this scope."""
        ...

    def update_complaint(
        self, complaint_id: str, patch: dict[str, Any], expected_version: int,
    ) -> ComplaintRecord:
        """Apply ``patch`` if the row is still at ``expected_version``."""
        ...

    def transaction(self):
        """Context manager: commit on success, roll back on any error."""
        ...


@runtime_checkable
class HistoryLog(Protocol):
    def append(self, entry: HistoryEntry) -> None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    def enqueue(self, request: NotificationRequest) -> None:
        ...


@runtime_checkable
class RuleSource(Protocol):
    def list_active_rules(self) -> list[RuleRecord]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
#  SQLAlchemy implementations
# ═══════════════════════════════════════════════════════════════════════════

@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise connection-level database failures as StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error("Database failure during %s: %s", operation, exc)
        raise StoreUnavailable(operation, str(exc.orig or exc)) from exc


class SqlComplaintStore:
    """ComplaintStore backed by the ``complaints`` table of one tenant."""

    def __init__(self, tenant_id: int, session=None):
        self.tenant_id = tenant_id
        self.session = session or db.session

    def list_open_complaints(self) -> list[ComplaintRecord]:
        stmt = (
            select(Complaint)
            .where(
                Complaint.tenant_id == self.tenant_id,
                Complaint.status.notin_(sorted(TERMINAL_STATUSES)),
            )
            .order_by(Complaint.created_at, Complaint.id)
        )
        with translate_store_errors("list_open_complaints"):
            rows = self.session.execute(stmt).scalars().all()
        return [ComplaintRecord.from_model(c) for c in rows]

    def load(self, complaint_id: str) -> Complaint:
        """Return the live ORM row, refreshed from the database."""
        with translate_store_errors("get_complaint"):
            complaint = get_scoped(Complaint, complaint_id, tenant_id=self.tenant_id)
            self.session.refresh(complaint)
        return complaint

    def get_complaint(self, complaint_id: str) -> ComplaintRecord:
        return ComplaintRecord.from_model(self.load(complaint_id))

    def update_complaint(
        self, complaint_id: str, patch: dict[str, Any], expected_version: int,
    ) -> ComplaintRecord:
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch complaint field(s): {sorted(unknown)}")

        stmt = (
            update(Complaint)
            .where(
                Complaint.id == complaint_id,
                Complaint.tenant_id == self.tenant_id,
                Complaint.version == expected_version,
            )
            .values(**patch, version=expected_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        with translate_store_errors("update_complaint"):
            result = self.session.execute(stmt)

        if result.rowcount != 1:
            # Unknown id surfaces as NotFoundError from load(); otherwise the
            # row exists at a different version.
            self.load(complaint_id)
            raise ConcurrentModification(complaint_id, expected_version)

        return self.get_complaint(complaint_id)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            with translate_store_errors("commit"):
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise


class SqlHistoryLog:
    """HistoryLog writing ``complaint_history`` rows. Flush only; the
    surrounding ``SqlComplaintStore.transaction()`` commits."""

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    def append(self, entry: HistoryEntry) -> None:
        with translate_store_errors("history_append"):
            write_history(
                tenant_id=self.tenant_id,
                complaint_id=entry.complaint_id,
                details=entry.details,
                performed_by=entry.performed_by,
                old_value=entry.old_value,
                new_value=entry.new_value,
                created_at=entry.created_at,
            )


class SqlNotificationSink:
    """NotificationSink persisting in-app notifications for one tenant."""

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    def enqueue(self, request: NotificationRequest) -> None:
        from complaint_portal.services.notification import NotificationService

        NotificationService.enqueue(
            tenant_id=self.tenant_id,
            user_id=request.user_id,
            type=request.type,
            title=request.title,
            message=request.message,
            related_id=request.related_id,
        )


class SqlRuleSource:
    """RuleSource reading active ``escalation_rules`` of one tenant."""

    def __init__(self, tenant_id: int, session=None):
        self.tenant_id = tenant_id
        self.session = session or db.session

    def list_active_rules(self) -> list[RuleRecord]:
        stmt = (
            select(EscalationRule)
            .where(
                EscalationRule.tenant_id == self.tenant_id,
                EscalationRule.is_active.is_(True),
            )
            .order_by(EscalationRule.hours_threshold, EscalationRule.id)
        )
        with translate_store_errors("list_active_rules"):
            rows = self.session.execute(stmt).scalars().all()
        return [RuleRecord.from_model(r) for r in rows]
