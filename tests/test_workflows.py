"""
Workflow definition tests.

Tests cover:
  - Stage payload validation (sequential orders, names, colors)
  - Workflow CRUD over the API, default flag and archiving
  - Edits blocked while assets are mid-workflow
"""

import pytest

from orbit.core.exceptions import ValidationError
from orbit.services import approval_engine
from orbit.services.workflow_service import list_workflows, normalize_stages

from conftest import ORG, OTHER_ORG


def _stages(*names):
    return [{"order": i + 1, "name": n, "color": "blue"} for i, n in enumerate(names)]


def _make_workflow(client, headers, name="Brand review", stages=None, **extra):
    res = client.post("/api/v1/workflows", json={
        "name": name, "stages": stages or _stages("Design", "Legal"), **extra,
    }, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# STAGE VALIDATION
# ═════════════════════════════════════════════════════════════════════════


class TestNormalizeStages:
    def test_sorted_and_defaulted(self):
        stages = normalize_stages([
            {"order": 2, "name": " Legal "},
            {"order": 1, "name": "Design", "color": "Purple"},
        ])
        assert stages == [
            {"order": 1, "name": "Design", "color": "purple"},
            {"order": 2, "name": "Legal", "color": "gray"},
        ]

    @pytest.mark.parametrize("payload", [
        [],
        None,
        [{"order": 1, "name": "A"}, {"order": 3, "name": "B"}],
        [{"order": 0, "name": "A"}],
        [{"order": 1, "name": "A"}, {"order": 1, "name": "B"}],
    ])
    def test_orders_must_be_one_to_n(self, payload):
        with pytest.raises(ValidationError):
            normalize_stages(payload)

    def test_field_errors_are_reported_per_stage(self):
        with pytest.raises(ValidationError) as exc:
            normalize_stages([{"order": "1", "name": "", "color": "pink"}])
        details = exc.value.details
        assert details["stages[0].name"] == "is required"
        assert "stages[0].color" in details
        assert details["stages[0].order"] == "must be an integer"


# ═════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════


class TestWorkflowAPI:
    def test_create_and_get(self, client, auth_headers):
        wf = _make_workflow(client, auth_headers())
        assert wf["stage_count"] == 2
        assert wf["project_count"] == 0
        res = client.get(f"/api/v1/workflows/{wf['id']}", headers=auth_headers())
        assert res.status_code == 200
        assert [s["name"] for s in res.get_json()["stages"]] == ["Design", "Legal"]

    def test_invalid_payload_is_400(self, client, auth_headers):
        res = client.post("/api/v1/workflows", json={"name": "Bad", "stages": []}, headers=auth_headers())
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_list_is_org_scoped(self, client, auth_headers):
        _make_workflow(client, auth_headers())
        _make_workflow(client, auth_headers(org=OTHER_ORG), name="Theirs")
        res = client.get("/api/v1/workflows", headers=auth_headers())
        assert [w["name"] for w in res.get_json()["items"]] == ["Brand review"]

    def test_other_org_cannot_read(self, client, auth_headers):
        wf = _make_workflow(client, auth_headers())
        res = client.get(f"/api/v1/workflows/{wf['id']}", headers=auth_headers(org=OTHER_ORG))
        assert res.status_code == 404

    def test_single_default_per_org(self, client, auth_headers):
        first = _make_workflow(client, auth_headers(), name="First", is_default=True)
        second = _make_workflow(client, auth_headers(), name="Second", is_default=True)
        listed = list_workflows(ORG)
        assert [w["id"] for w in listed if w["is_default"]] == [second["id"]]
        assert listed[0]["id"] == second["id"]
        res = client.get(f"/api/v1/workflows/{first['id']}", headers=auth_headers())
        assert res.get_json()["is_default"] is False

    def test_archive_hides_and_clears_default(self, client, auth_headers):
        wf = _make_workflow(client, auth_headers(), is_default=True)
        res = client.patch(f"/api/v1/workflows/{wf['id']}", json={"is_archived": True}, headers=auth_headers())
        assert res.get_json()["is_default"] is False
        assert client.get("/api/v1/workflows", headers=auth_headers()).get_json()["total"] == 0
        listed = client.get("/api/v1/workflows?include_archived=true", headers=auth_headers()).get_json()
        assert listed["total"] == 1

    def test_delete_unreferenced(self, client, auth_headers):
        wf = _make_workflow(client, auth_headers())
        res = client.delete(f"/api/v1/workflows/{wf['id']}", headers=auth_headers())
        assert res.status_code == 200
        assert client.get(f"/api/v1/workflows/{wf['id']}", headers=auth_headers()).status_code == 404


class TestWorkflowInUse:
    def test_delete_referenced_is_409(self, client, auth_headers, make_pipeline):
        p = make_pipeline(reviewers={1: ["alice"]})
        res = client.delete(f"/api/v1/workflows/{p.workflow_id}", headers=auth_headers())
        assert res.status_code == 409
        assert res.get_json()["details"]["kind"] == "conflict"

    def test_stage_count_locked_while_in_flight(self, client, auth_headers, make_pipeline):
        p = make_pipeline(reviewers={1: ["alice"]})
        res = client.patch(f"/api/v1/workflows/{p.workflow_id}",
                           json={"stages": _stages("Design", "Brand")}, headers=auth_headers())
        assert res.status_code == 409
        assert res.get_json()["details"]["field"] == "stages"

    def test_rename_allowed_while_in_flight(self, client, auth_headers, make_pipeline):
        p = make_pipeline(reviewers={1: ["alice"]})
        res = client.patch(f"/api/v1/workflows/{p.workflow_id}",
                           json={"stages": _stages("Concept", "Brand", "Compliance")}, headers=auth_headers())
        assert res.status_code == 200
        summary = approval_engine.compute_stage_summary(p.asset_id, ORG)
        assert [s["stage_name"] for s in summary["stages"]] == ["Concept", "Brand", "Compliance"]

    def test_stage_count_free_once_assets_are_done(self, client, auth_headers, make_pipeline):
        p = make_pipeline(stages=("Review",), reviewers={1: ["alice"]})
        approval_engine.submit_approval(p.asset_id, "alice", organization_id=ORG)
        approval_engine.final_approve(p.asset_id, p.owner, organization_id=ORG)
        res = client.patch(f"/api/v1/workflows/{p.workflow_id}",
                           json={"stages": _stages("Review", "Legal")}, headers=auth_headers())
        assert res.status_code == 200
        assert res.get_json()["stage_count"] == 2
