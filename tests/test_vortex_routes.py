"""Integration tests for the /api/v1/vortex/* endpoints.

Covers:
- has-permission: role / userId / session resolution, single-resource rule, 401
- create-violation: permission gate, severity bounds, target user must exist
- list-violations / my-violations: pagination bounds, sorting, moderator-only field stripping
- update-violation: partial update, 404 for unknown ids
- dispute-violation: owner only, one per violation, overturned violations refused
- list-disputes / resolve-dispute / my-disputes: manage gate, single transition, enrichment
- unexpected store errors become a 500 with the endpoint's fixed message
- the full create -> dispute -> approve -> overturned flow
"""

from __future__ import annotations

import pytest

from core.errors import VORTEX_ERROR_CODES

BASE = "/api/v1/vortex"


def _h(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _create(api, **overrides) -> dict:
    body = {
        "userId": api.member_id,
        "content": {"text": "buy cheap watches", "postId": "p1"},
        "severity": 4,
        "applicableRules": ["spam"],
        "publicComment": "Please stop posting ads.",
        "internalNote": "third report this week",
    }
    body.update(overrides)
    resp = api.client.post(f"{BASE}/create-violation", json=body, headers=_h(api.admin_token))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _fetch_violation(api, violation_id: str) -> dict:
    resp = api.client.get(
        f"{BASE}/list-violations",
        params={"userId": api.member_id, "limit": 100},
        headers=_h(api.admin_token),
    )
    assert resp.status_code == 200
    return next(v for v in resp.json()["violations"] if v["id"] == violation_id)


def _dispute(api, violation_id: str, reason: str = "This post was not an advertisement.") -> dict:
    resp = api.client.post(
        f"{BASE}/dispute-violation",
        json={"violationId": violation_id, "reason": reason},
        headers=_h(api.member_token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# has-permission
# ---------------------------------------------------------------------------


class TestHasPermission:
    def test_explicit_role(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/has-permission", json={"permission": {"violation": ["create"]}, "role": "admin"}
        )
        assert resp.status_code == 200
        assert resp.json() == {"error": None, "success": True}

        resp = api_client.client.post(
            f"{BASE}/has-permission", json={"permission": {"violation": ["create"]}, "role": "user"}
        )
        assert resp.json()["success"] is False

    def test_session_user(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/has-permission",
            json={"permission": {"invitation": ["create"]}},
            headers=_h(api_client.member_token),
        )
        assert resp.json()["success"] is True

    def test_explicit_user_id(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/has-permission",
            json={"permission": {"violation": ["manage"]}, "userId": api_client.admin_id},
        )
        assert resp.json()["success"] is True

    def test_unknown_user_id(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/has-permission", json={"permission": {"violation": ["list"]}, "userId": "nobody"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["USER_NOT_FOUND"]

    @pytest.mark.parametrize(
        "permission",
        [{"violation": ["list"], "user": ["ban"]}, {"violation": []}, {}],
    )
    def test_rejects_non_single_resource(self, api_client, permission) -> None:
        resp = api_client.client.post(
            f"{BASE}/has-permission", json={"permission": permission, "role": "admin"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["INVALID_PERMISSION_CHECK"]

    def test_no_identity(self, api_client) -> None:
        resp = api_client.client.post(f"{BASE}/has-permission", json={"permission": {"violation": ["list"]}})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


class TestViolations:
    def test_create_requires_auth(self, api_client) -> None:
        resp = api_client.client.post(f"{BASE}/create-violation", json={"userId": "x", "content": 1, "severity": 1})
        assert resp.status_code == 401

    def test_create_requires_permission(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/create-violation",
            json={"userId": api_client.admin_id, "content": "x", "severity": 1},
            headers=_h(api_client.member_token),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["FORBIDDEN"]

    def test_create_returns_record(self, api_client) -> None:
        data = _create(api_client)
        assert data["userId"] == api_client.member_id
        assert data["moderatorId"] == api_client.admin_id
        assert data["applicableRules"] == ["spam"]
        assert data["content"] == {"text": "buy cheap watches", "postId": "p1"}
        assert data["overturned"] is False
        assert data["expiresAt"]
        assert data["lastUpdatedBy"] == api_client.admin_id

    @pytest.mark.parametrize("severity", [1, 10])
    def test_severity_bounds_accepted(self, api_client, severity) -> None:
        assert _create(api_client, severity=severity)["severity"] == severity

    @pytest.mark.parametrize("severity", [0, 11, "high"])
    def test_severity_out_of_range_rejected(self, api_client, severity) -> None:
        resp = api_client.client.post(
            f"{BASE}/create-violation",
            json={"userId": api_client.member_id, "content": "x", "severity": severity},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_create_unknown_target(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/create-violation",
            json={"userId": "ghost", "content": "x", "severity": 2},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["USER_NOT_FOUND"]

    def test_list_violations_pagination(self, api_client) -> None:
        for _ in range(3):
            _create(api_client)
        resp = api_client.client.get(
            f"{BASE}/list-violations",
            params={"userId": api_client.member_id, "limit": 2, "offset": 1, "sortBy": "severity", "sortDirection": "asc"},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["limit"] == 2
        assert data["offset"] == 1
        assert data["total"] >= 3
        assert len(data["violations"]) == 2
        assert "internalNote" in data["violations"][0]

    @pytest.mark.parametrize(
        "params",
        [{"limit": 0}, {"limit": 101}, {"offset": -1}, {"sortBy": "internalNote"}, {"sortDirection": "up"}],
    )
    def test_list_violations_bad_params(self, api_client, params) -> None:
        resp = api_client.client.get(f"{BASE}/list-violations", params=params, headers=_h(api_client.admin_token))
        assert resp.status_code == 422

    def test_list_violations_forbidden_for_member(self, api_client) -> None:
        resp = api_client.client.get(f"{BASE}/list-violations", headers=_h(api_client.member_token))
        assert resp.status_code == 403

    def test_my_violations_strips_moderator_fields(self, api_client) -> None:
        _create(api_client)
        resp = api_client.client.get(f"{BASE}/my-violations", headers=_h(api_client.member_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] >= 1
        for v in data["violations"]:
            assert v["userId"] == api_client.member_id
            assert "internalNote" not in v
            assert "moderatorId" not in v
            assert "lastUpdatedBy" not in v

    def test_my_violations_hides_unapproved(self, api_client) -> None:
        created = _create(api_client)
        api_client.client.app.state.moderation.set_moderation_status(created["id"], "pending_review")
        resp = api_client.client.get(
            f"{BASE}/my-violations", params={"limit": 100}, headers=_h(api_client.member_token)
        )
        assert created["id"] not in {v["id"] for v in resp.json()["violations"]}

    def test_update_violation_partial(self, api_client) -> None:
        created = _create(api_client)
        resp = api_client.client.post(
            f"{BASE}/update-violation",
            json={"id": created["id"], "severity": 9, "publicComment": "Escalated."},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["severity"] == 9
        assert data["publicComment"] == "Escalated."
        assert data["internalNote"] == "third report this week"
        assert data["applicableRules"] == ["spam"]

    def test_update_violation_not_found(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/update-violation", json={"id": "missing", "severity": 3}, headers=_h(api_client.admin_token)
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["VIOLATION_NOT_FOUND"]

    def test_unexpected_error_is_converted(self, api_client, monkeypatch) -> None:
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(api_client.client.app.state.moderation, "list_violations", boom)
        resp = api_client.client.get(f"{BASE}/list-violations", headers=_h(api_client.admin_token))
        assert resp.status_code == 500
        assert resp.json() == {
            "error": {"code": "internal_server_error", "message": VORTEX_ERROR_CODES["VIOLATION_LIST_FAILED"]}
        }


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class TestDisputes:
    def test_dispute_own_violation(self, api_client) -> None:
        created = _create(api_client)
        dispute = _dispute(api_client, created["id"])
        assert dispute["status"] == "pending"
        assert dispute["violationId"] == created["id"]
        assert dispute["userId"] == api_client.member_id

    def test_second_dispute_conflicts(self, api_client) -> None:
        created = _create(api_client)
        _dispute(api_client, created["id"])
        resp = api_client.client.post(
            f"{BASE}/dispute-violation",
            json={"violationId": created["id"], "reason": "Disputing this one again."},
            headers=_h(api_client.member_token),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["DISPUTE_ALREADY_EXISTS"]

    def test_cannot_dispute_someone_elses_violation(self, api_client) -> None:
        created = _create(api_client)
        resp = api_client.client.post(
            f"{BASE}/dispute-violation",
            json={"violationId": created["id"], "reason": "Not even my violation."},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 404

    def test_reason_too_short(self, api_client) -> None:
        created = _create(api_client)
        resp = api_client.client.post(
            f"{BASE}/dispute-violation",
            json={"violationId": created["id"], "reason": "unfair"},
            headers=_h(api_client.member_token),
        )
        assert resp.status_code == 422

    def test_overturned_violation_cannot_be_disputed(self, api_client) -> None:
        created = _create(api_client)
        api_client.client.post(
            f"{BASE}/update-violation",
            json={"id": created["id"], "overturned": True},
            headers=_h(api_client.admin_token),
        )
        resp = api_client.client.post(
            f"{BASE}/dispute-violation",
            json={"violationId": created["id"], "reason": "Already overturned, still upset."},
            headers=_h(api_client.member_token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["DISPUTE_ALREADY_OVERTURNED"]

    def test_list_disputes_requires_manage(self, api_client) -> None:
        resp = api_client.client.get(f"{BASE}/list-disputes", headers=_h(api_client.member_token))
        assert resp.status_code == 403

    def test_list_disputes_filters_by_status(self, api_client) -> None:
        created = _create(api_client)
        dispute = _dispute(api_client, created["id"])
        resp = api_client.client.get(
            f"{BASE}/list-disputes",
            params={"status": "pending", "violationId": created["id"]},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 200
        assert [d["id"] for d in resp.json()["disputes"]] == [dispute["id"]]

    def test_resolve_twice_conflicts(self, api_client) -> None:
        created = _create(api_client)
        dispute = _dispute(api_client, created["id"])
        body = {"disputeId": dispute["id"], "status": "rejected", "justification": "Clearly an ad."}
        first = api_client.client.post(f"{BASE}/resolve-dispute", json=body, headers=_h(api_client.admin_token))
        assert first.status_code == 200
        assert first.json()["status"] == "rejected"

        body["status"] = "approved"
        second = api_client.client.post(f"{BASE}/resolve-dispute", json=body, headers=_h(api_client.admin_token))
        assert second.status_code == 409
        assert second.json()["error"]["message"] == VORTEX_ERROR_CODES["DISPUTE_STATUS_REJECTED"]
        assert _fetch_violation(api_client, created["id"])["overturned"] is False

    def test_resolve_validation(self, api_client) -> None:
        created = _create(api_client)
        dispute = _dispute(api_client, created["id"])
        for body in (
            {"disputeId": dispute["id"], "status": "pending"},
            {"disputeId": dispute["id"], "status": "approved", "justification": "ok"},
        ):
            resp = api_client.client.post(f"{BASE}/resolve-dispute", json=body, headers=_h(api_client.admin_token))
            assert resp.status_code == 422

    def test_resolve_unknown_dispute(self, api_client) -> None:
        resp = api_client.client.post(
            f"{BASE}/resolve-dispute",
            json={"disputeId": "missing", "status": "approved"},
            headers=_h(api_client.admin_token),
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == VORTEX_ERROR_CODES["DISPUTE_NOT_FOUND"]


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


def test_dispute_approval_overturns_violation(api_client) -> None:
    """Moderator records, user disputes, moderator approves, user sees it overturned."""
    denied = api_client.client.post(
        f"{BASE}/has-permission",
        json={"permission": {"violation": ["create"]}, "userId": api_client.member_id},
    )
    assert denied.json() == {"error": None, "success": False}
    allowed = api_client.client.post(
        f"{BASE}/has-permission",
        json={"permission": {"violation": ["create"]}, "userId": api_client.admin_id},
    )
    assert allowed.json() == {"error": None, "success": True}

    created = _create(api_client, severity=7, applicableRules=["spam", "links"])
    dispute = _dispute(api_client, created["id"])

    resp = api_client.client.post(
        f"{BASE}/resolve-dispute",
        json={"disputeId": dispute["id"], "status": "approved", "justification": "Looked again, not spam."},
        headers=_h(api_client.admin_token),
    )
    assert resp.status_code == 200
    resolved = resp.json()
    assert resolved["status"] == "approved"
    assert resolved["reviewedBy"] == api_client.admin_id
    assert resolved["justification"] == "Looked again, not spam."

    mine = api_client.client.get(f"{BASE}/my-disputes", headers=_h(api_client.member_token)).json()
    row = next(d for d in mine["disputes"] if d["id"] == dispute["id"])
    assert row["violation"]["id"] == created["id"]
    assert row["violation"]["overturned"] is True
    assert row["violation"]["applicableRules"] == ["spam", "links"]
    assert "internalNote" not in row["violation"]

    listed = api_client.client.get(
        f"{BASE}/list-violations",
        params={"userId": api_client.member_id, "overturned": "true", "limit": 100},
        headers=_h(api_client.admin_token),
    ).json()
    assert created["id"] in {v["id"] for v in listed["violations"]}

    again = api_client.client.post(
        f"{BASE}/resolve-dispute",
        json={"disputeId": dispute["id"], "status": "rejected"},
        headers=_h(api_client.admin_token),
    )
    assert again.status_code == 409
    assert again.json()["error"]["message"] == VORTEX_ERROR_CODES["DISPUTE_STATUS_APPROVED"]
    assert _fetch_violation(api_client, created["id"])["overturned"] is True
