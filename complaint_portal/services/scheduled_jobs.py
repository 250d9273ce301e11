"""
Scheduled Jobs.

Jobs:
    - auto_escalate_complaints: one escalation pass per active tenant
"""

from __future__ import annotations

import logging
from typing import Any

from complaint_portal.services.escalation_engine import run_auto_escalation
from complaint_portal.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("auto_escalate_complaints")
def auto_escalate_complaints(app, tenant_id: int | None = None) -> dict[str, Any]:
    """Escalate open complaints that exceeded their rule's threshold."""
    summary = run_auto_escalation(
        tenant_id=tenant_id,
        system_actor=app.config.get("ESCALATION_SYSTEM_ACTOR", "system"),
    )
    logger.info(
        "Auto-escalation: %d escalated, %d failed across %d tenant(s)",
        summary["escalated_count"], summary["failed_count"], len(summary["tenants"]),
    )
    return summary
