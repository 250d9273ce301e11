"""
Escalation rule validation and administration.

Covers:
    - validate_rule: every hard error raises InvalidRule with a field map
    - rule_warnings / format_threshold: advisory output
    - CRUD: admin-only, one active rule per (category, priority), toggling
    - API: status codes for the same cases
"""

import pytest

from complaint_portal.core.exceptions import (
    ConflictError,
    InvalidRule,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from complaint_portal.models import db
from complaint_portal.models.escalation import EscalationRule
from complaint_portal.services import escalation_rules as svc


def _payload(target, **overrides):
    data = {
        "category": "academic",
        "priority": "high",
        "hours_threshold": 48,
        "escalate_to": target.id,
        "is_active": True,
    }
    data.update(overrides)
    return data


# ═════════════════════════════════════════════════════════════════════════════
# validate_rule
# ═════════════════════════════════════════════════════════════════════════════


def test_valid_rule_is_normalised(tenant, admin):
    fields = svc.validate_rule(_payload(admin), tenant_id=tenant.id)
    assert fields == {
        "category": "academic",
        "priority": "high",
        "hours_threshold": 48,
        "escalate_to": admin.id,
        "is_active": True,
    }


def test_is_active_defaults_to_true(tenant, lecturer):
    data = _payload(lecturer)
    del data["is_active"]
    assert svc.validate_rule(data, tenant_id=tenant.id)["is_active"] is True


@pytest.mark.parametrize("hours", [0, -1, 8761, 2.5, "24", True, None])
def test_bad_threshold_raises_invalid_rule(tenant, admin, hours):
    with pytest.raises(InvalidRule) as exc_info:
        svc.validate_rule(_payload(admin, hours_threshold=hours), tenant_id=tenant.id)
    assert set(exc_info.value.details) == {"hours_threshold"}


@pytest.mark.parametrize("hours", [1, 8760])
def test_threshold_bounds_are_inclusive(tenant, admin, hours):
    assert svc.validate_rule(_payload(admin, hours_threshold=hours), tenant_id=tenant.id)


@pytest.mark.parametrize("field,value", [
    ("category", "parking"),
    ("category", None),
    ("priority", "urgent"),
    ("priority", ""),
])
def test_unknown_enumerations_raise_invalid_rule(tenant, admin, field, value):
    with pytest.raises(InvalidRule) as exc_info:
        svc.validate_rule(_payload(admin, **{field: value}), tenant_id=tenant.id)
    assert field in exc_info.value.details


def test_student_target_is_rejected(tenant, student):
    with pytest.raises(InvalidRule) as exc_info:
        svc.validate_rule(_payload(student), tenant_id=tenant.id)
    assert "lecturers or admins" in exc_info.value.details["escalate_to"]


def test_missing_target_is_rejected(tenant, admin):
    with pytest.raises(InvalidRule) as exc_info:
        svc.validate_rule(_payload(admin, escalate_to=987654), tenant_id=tenant.id)
    assert "existing user" in exc_info.value.details["escalate_to"]


def test_inactive_target_is_rejected(tenant, make_user):
    suspended = make_user("lecturer", status="suspended")
    with pytest.raises(InvalidRule):
        svc.validate_rule(_payload(suspended), tenant_id=tenant.id)


def test_target_from_another_tenant_is_rejected(tenant, other_tenant, make_user):
    foreign_admin = make_user("admin", tenant_obj=other_tenant)
    with pytest.raises(InvalidRule) as exc_info:
        svc.validate_rule(_payload(foreign_admin), tenant_id=tenant.id)
    assert "escalate_to" in exc_info.value.details


def test_all_errors_are_reported_together(tenant):
    with pytest.raises(InvalidRule) as exc_info:
        svc.validate_rule({}, tenant_id=tenant.id)
    assert set(exc_info.value.details) == {"category", "priority", "hours_threshold", "escalate_to"}


def test_invalid_rule_is_a_validation_error(tenant):
    with pytest.raises(ValidationError):
        svc.validate_rule({}, tenant_id=tenant.id)


# ═════════════════════════════════════════════════════════════════════════════
# Warnings & formatting
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("priority,hours,expect", [
    ("critical", 25, True),
    ("critical", 24, False),
    ("high", 73, True),
    ("medium", 169, True),
    ("low", 500, False),
])
def test_priority_warnings(priority, hours, expect):
    warnings = svc.rule_warnings({"priority": priority, "hours_threshold": hours, "is_active": True})
    assert any("faster escalation" in w or "within" in w for w in warnings) is expect


def test_short_long_and_inactive_warnings():
    assert any("premature" in w for w in svc.rule_warnings({"priority": "low", "hours_threshold": 1}))
    assert any("30 days" in w for w in svc.rule_warnings({"priority": "medium", "hours_threshold": 800}))
    assert not any("30 days" in w for w in svc.rule_warnings({"priority": "low", "hours_threshold": 800}))
    assert any("inactive" in w for w in svc.rule_warnings({"is_active": False, "hours_threshold": 10}))


@pytest.mark.parametrize("hours,label", [
    (1, "1 hour"),
    (5, "5 hours"),
    (24, "1 day"),
    (48, "2 days"),
    (30, "1 day 6 hours"),
    (49, "2 days 1 hour"),
])
def test_format_threshold(hours, label):
    assert svc.format_threshold(hours) == label


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


def test_admin_creates_rule(tenant, admin, lecturer):
    rule = svc.create_rule(tenant.id, admin, _payload(lecturer))
    assert rule["escalate_to"] == lecturer.id
    assert rule["threshold_label"] == "2 days"
    assert rule["created_by"] == admin.id
    assert EscalationRule.query.count() == 1


def test_lecturer_cannot_create_rule(tenant, lecturer):
    with pytest.raises(PermissionDenied):
        svc.create_rule(tenant.id, lecturer, _payload(lecturer))


def test_invalid_rule_is_not_stored(tenant, admin):
    with pytest.raises(InvalidRule):
        svc.create_rule(tenant.id, admin, _payload(admin, hours_threshold=0))
    assert EscalationRule.query.count() == 0


def test_second_active_rule_for_same_pair_conflicts(tenant, admin):
    svc.create_rule(tenant.id, admin, _payload(admin))
    with pytest.raises(ConflictError):
        svc.create_rule(tenant.id, admin, _payload(admin, hours_threshold=4))


def test_inactive_duplicate_is_allowed(tenant, admin):
    svc.create_rule(tenant.id, admin, _payload(admin))
    rule = svc.create_rule(tenant.id, admin, _payload(admin, is_active=False))
    assert rule["is_active"] is False
    assert any("inactive" in w for w in rule["warnings"])


def test_concurrent_duplicate_active_rule_is_a_conflict(tenant, admin, monkeypatch):
    svc.create_rule(tenant.id, admin, _payload(admin))
    # both writers passed the pre-insert check; the partial unique index decides
    monkeypatch.setattr(svc, "_ensure_unique_active", lambda *a, **kw: None)

    with pytest.raises(ConflictError):
        svc.create_rule(tenant.id, admin, _payload(admin, hours_threshold=4))

    assert EscalationRule.query.filter_by(is_active=True).count() == 1
    dormant = svc.create_rule(tenant.id, admin, _payload(admin, is_active=False))
    with pytest.raises(ConflictError):
        svc.toggle_rule(tenant.id, admin, dormant["id"])


def test_toggle_rule_respects_uniqueness(tenant, admin):
    active = svc.create_rule(tenant.id, admin, _payload(admin))
    dormant = svc.create_rule(tenant.id, admin, _payload(admin, is_active=False))

    with pytest.raises(ConflictError):
        svc.toggle_rule(tenant.id, admin, dormant["id"])

    assert svc.toggle_rule(tenant.id, admin, active["id"])["is_active"] is False
    assert svc.toggle_rule(tenant.id, admin, dormant["id"])["is_active"] is True


def test_update_rule_revalidates_merged_fields(tenant, admin, student):
    rule = svc.create_rule(tenant.id, admin, _payload(admin))

    updated = svc.update_rule(tenant.id, admin, rule["id"], {"hours_threshold": 12})
    assert updated["hours_threshold"] == 12
    assert updated["category"] == "academic"

    with pytest.raises(InvalidRule):
        svc.update_rule(tenant.id, admin, rule["id"], {"escalate_to": student.id})
    db.session.expire_all()
    assert db.session.get(EscalationRule, rule["id"]).escalate_to == admin.id


def test_update_into_occupied_pair_conflicts(tenant, admin):
    svc.create_rule(tenant.id, admin, _payload(admin, priority="high"))
    low = svc.create_rule(tenant.id, admin, _payload(admin, priority="low"))
    with pytest.raises(ConflictError):
        svc.update_rule(tenant.id, admin, low["id"], {"priority": "high"})


def test_list_rules_filters(tenant, admin):
    svc.create_rule(tenant.id, admin, _payload(admin, category="academic"))
    svc.create_rule(tenant.id, admin, _payload(admin, category="facilities", is_active=False))

    assert len(svc.list_rules(tenant.id)) == 2
    assert [r["category"] for r in svc.list_rules(tenant.id, active_only=True)] == ["academic"]
    assert [r["category"] for r in svc.list_rules(tenant.id, category="facilities")] == ["facilities"]


def test_delete_rule(tenant, admin):
    rule = svc.create_rule(tenant.id, admin, _payload(admin))
    svc.delete_rule(tenant.id, admin, rule["id"])
    with pytest.raises(NotFoundError):
        svc.get_rule(tenant.id, rule["id"])


def test_rule_of_other_tenant_is_not_found(tenant, other_tenant, admin, make_user):
    foreign_admin = make_user("admin", tenant_obj=other_tenant)
    foreign = svc.create_rule(other_tenant.id, foreign_admin, _payload(foreign_admin))
    with pytest.raises(NotFoundError):
        svc.get_rule(tenant.id, foreign["id"])
    with pytest.raises(NotFoundError):
        svc.delete_rule(tenant.id, admin, foreign["id"])


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════


def test_api_create_rule(client, admin, lecturer, auth_headers):
    res = client.post("/api/v1/escalation-rules", json=_payload(lecturer), headers=auth_headers(admin))
    assert res.status_code == 201
    assert res.get_json()["threshold_label"] == "2 days"


def test_api_invalid_rule_returns_422_with_details(client, admin, auth_headers):
    res = client.post(
        "/api/v1/escalation-rules",
        json=_payload(admin, hours_threshold=-5, category="parking"),
        headers=auth_headers(admin),
    )
    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_RULE"
    assert set(body["details"]) == {"hours_threshold", "category"}


def test_api_duplicate_rule_returns_409(client, admin, auth_headers):
    headers = auth_headers(admin)
    assert client.post("/api/v1/escalation-rules", json=_payload(admin), headers=headers).status_code == 201
    res = client.post("/api/v1/escalation-rules", json=_payload(admin), headers=headers)
    assert res.status_code == 409


def test_api_lecturer_can_list_but_not_create(client, admin, lecturer, auth_headers):
    client.post("/api/v1/escalation-rules", json=_payload(admin), headers=auth_headers(admin))
    listed = client.get("/api/v1/escalation-rules", headers=auth_headers(lecturer))
    assert listed.status_code == 200
    assert listed.get_json()["total"] == 1
    res = client.post("/api/v1/escalation-rules", json=_payload(lecturer), headers=auth_headers(lecturer))
    assert res.status_code == 403


def test_api_student_cannot_list_rules(client, student, auth_headers):
    res = client.get("/api/v1/escalation-rules", headers=auth_headers(student))
    assert res.status_code == 403


def test_api_toggle_and_patch(client, admin, auth_headers):
    headers = auth_headers(admin)
    rule = client.post("/api/v1/escalation-rules", json=_payload(admin), headers=headers).get_json()

    toggled = client.post(f"/api/v1/escalation-rules/{rule['id']}/toggle", headers=headers)
    assert toggled.status_code == 200
    assert toggled.get_json()["is_active"] is False

    patched = client.patch(
        f"/api/v1/escalation-rules/{rule['id']}", json={"hours_threshold": 6}, headers=headers,
    )
    assert patched.status_code == 200
    assert patched.get_json()["threshold_label"] == "6 hours"

    deleted = client.delete(f"/api/v1/escalation-rules/{rule['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/v1/escalation-rules/{rule['id']}", headers=headers).status_code == 404
