"""
Unique-constraint races.

Services check for an existing row before inserting one (a second vote
response, a second rating, a second active rule). Two requests can pass that
check together; the database constraint then rejects the loser and the
rejection must surface as the same ConflictError the check would raise.

Usage:
    with conflict_on_duplicate("VoteResponse", "student_id", str(student.id)):
        db.session.add(response)
        db.session.commit()
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

from complaint_portal.core.exceptions import ConflictError
from complaint_portal.models import db

logger = logging.getLogger(__name__)


@contextmanager
def conflict_on_duplicate(resource: str, field: str, value=None):
    """Roll back and raise ConflictError when the block violates a unique constraint."""
    try:
        yield
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error writing %s (%s=%s): %s", resource, field, value, exc.orig)
        raise ConflictError(resource, field, None if value is None else str(value)) from exc
