"""Tests for approval quorum, veto, eligibility and expiry."""
from __future__ import annotations

from http import HTTPStatus

import pytest

from backend.dataroll.extensions import db
from backend.dataroll.models import ApprovalDecision, ApprovalRequest, AuditLog, Execution
from backend.dataroll.workflows.errors import ApprovalError, NotFoundError, ValidationError


@pytest.fixture()
def gate(services, workflow_factory, linear):
    """Start an execution that is suspended at an approval node."""

    def factory(approvers, *, require_all=True, allow_veto=True, timeout=3600, triggered_by="creator", **data):
        definition = linear(
            {
                "id": "gate",
                "type": "approval",
                "label": "Gate",
                "data": {
                    "approvers": approvers,
                    "timeout": timeout,
                    "requireAll": require_all,
                    "allowVeto": allow_veto,
                    **data,
                },
            },
            {"id": "done", "type": "action", "label": "Done", "data": {"action": "run_tests", "connectionId": "db"}},
            name="Gated",
        )
        workflow = workflow_factory(definition)
        execution = services.engine.create(workflow.id, triggered_by=triggered_by).unwrap()
        execution = services.engine.advance(execution.id).unwrap()
        request = ApprovalRequest.query.filter_by(execution_id=execution.id).first()
        return execution, request

    return factory


def _status(execution_id: int) -> str:
    return db.session.get(Execution, execution_id).status


def test_require_all_veto_is_sticky(services, gate):
    execution, request = gate(["alice", "bob"])

    first = services.coordinator.submit(request.id, "alice", "APPROVED")
    assert first.ok
    assert first.value.status == "PENDING"
    assert _status(execution.id) == "awaiting_approval"

    second = services.coordinator.submit(request.id, "bob", "REJECTED", "too risky")

    assert second.ok
    assert second.value.status == "REJECTED"
    assert second.value.resolved_at is not None
    assert _status(execution.id) == "failed"


def test_require_all_needs_every_approver(services, gate):
    execution, request = gate(["alice", "bob"])

    services.coordinator.submit(request.id, "alice", "APPROVED")
    result = services.coordinator.submit(request.id, "bob", "APPROVED")

    assert result.value.status == "APPROVED"
    assert _status(execution.id) == "success"
    assert ApprovalDecision.query.filter_by(approval_id=request.id).count() == 2


def test_require_all_rejection_short_circuits(services, gate):
    execution, request = gate(["alice", "bob"])

    result = services.coordinator.submit(request.id, "bob", "REJECTED")

    assert result.value.status == "REJECTED"
    assert _status(execution.id) == "failed"


def test_any_approver_first_approval_wins(services, gate):
    execution, request = gate(["alice", "bob"], require_all=False)

    result = services.coordinator.submit(request.id, "bob", "APPROVED")

    assert result.value.status == "APPROVED"
    assert _status(execution.id) == "success"


def test_any_approver_with_veto_rejects_on_first_rejection(services, gate):
    execution, request = gate(["alice", "bob"], require_all=False, allow_veto=True)

    result = services.coordinator.submit(request.id, "alice", "REJECTED")

    assert result.value.status == "REJECTED"
    assert _status(execution.id) == "failed"


def test_any_approver_without_veto_waits_for_others(services, gate):
    execution, request = gate(["alice", "bob"], require_all=False, allow_veto=False)

    rejected = services.coordinator.submit(request.id, "alice", "REJECTED")
    assert rejected.value.status == "PENDING"

    approved = services.coordinator.submit(request.id, "bob", "APPROVED")
    assert approved.value.status == "APPROVED"
    assert _status(execution.id) == "success"


def test_any_approver_without_veto_rejects_when_everyone_rejects(services, gate):
    execution, request = gate(["alice", "bob"], require_all=False, allow_veto=False)

    services.coordinator.submit(request.id, "alice", "REJECTED")
    result = services.coordinator.submit(request.id, "bob", "REJECTED")

    assert result.value.status == "REJECTED"
    assert _status(execution.id) == "failed"


def test_non_approver_is_forbidden(services, gate):
    _, request = gate(["alice"])

    result = services.coordinator.submit(request.id, "mallory", "APPROVED")

    assert isinstance(result.error, ApprovalError)
    assert result.error.reason == ApprovalError.FORBIDDEN
    assert result.error.status == HTTPStatus.FORBIDDEN
    assert ApprovalDecision.query.count() == 0


def test_duplicate_decision_is_refused(services, gate):
    _, request = gate(["alice", "bob"])
    services.coordinator.submit(request.id, "alice", "APPROVED")

    result = services.coordinator.submit(request.id, "alice", "REJECTED")

    assert result.error.reason == ApprovalError.DUPLICATE
    assert db.session.get(ApprovalRequest, request.id).status == "PENDING"


def test_resolved_request_refuses_more_decisions(services, gate):
    _, request = gate(["alice", "bob"], require_all=False)
    services.coordinator.submit(request.id, "alice", "APPROVED")

    result = services.coordinator.submit(request.id, "bob", "APPROVED")

    assert result.error.reason == ApprovalError.RESOLVED


def test_invalid_decision_and_unknown_request(services, gate):
    _, request = gate(["alice"])

    assert isinstance(services.coordinator.submit(request.id, "alice", "MAYBE").error, ValidationError)
    assert isinstance(services.coordinator.submit(999, "alice", "APPROVED").error, NotFoundError)


def test_team_admin_slot(services, gate, member_factory):
    member_factory("boss", role="admin")
    member_factory("worker", role="member")
    execution, request = gate(["team_admin"])

    refused = services.coordinator.submit(request.id, "worker", "APPROVED")
    assert refused.error.reason == ApprovalError.FORBIDDEN

    accepted = services.coordinator.submit(request.id, "boss", "APPROVED")
    assert accepted.value.status == "APPROVED"
    assert _status(execution.id) == "success"


def test_require_all_with_admin_slot_needs_an_admin(services, gate, member_factory):
    member_factory("boss", role="admin")
    execution, request = gate(["alice", "team_admin"])

    assert services.coordinator.submit(request.id, "alice", "APPROVED").value.status == "PENDING"
    assert services.coordinator.submit(request.id, "boss", "APPROVED").value.status == "APPROVED"
    assert _status(execution.id) == "success"


def test_skip_if_creator_removes_the_creator(services, gate):
    _, request = gate(["creator", "alice"], skipIfCreator=True)

    assert request.approvers == ["alice"]
    assert services.coordinator.submit(request.id, "creator", "APPROVED").error.reason == ApprovalError.FORBIDDEN


def test_skip_if_creator_without_other_approvers_fails(services, gate):
    execution, request = gate(["creator"], skipIfCreator=True)

    assert request is None
    assert execution.status == "failed"
    assert execution.error_data["code"] == "validation_error"


def test_expired_request_fails_execution(services, gate, clock):
    execution, request = gate(["alice"], timeout=60)

    assert services.coordinator.expire_overdue() == []
    clock.advance(61)
    expired = services.coordinator.expire_overdue()

    assert expired == [request.id]
    assert db.session.get(ApprovalRequest, request.id).status == "EXPIRED"
    execution = db.session.get(Execution, execution.id)
    assert execution.status == "failed"
    assert execution.error_data["message"] == "approval timed out"
    assert execution.error_data["reason"] == ApprovalError.EXPIRED


def test_decision_after_timeout_expires_request(services, gate, clock):
    execution, request = gate(["alice"], timeout=60)
    clock.advance(120)

    result = services.coordinator.submit(request.id, "alice", "APPROVED")

    assert result.error.reason == ApprovalError.EXPIRED
    assert db.session.get(ApprovalRequest, request.id).status == "EXPIRED"
    assert _status(execution.id) == "failed"


def test_pending_for_lists_open_requests(services, gate, member_factory):
    member_factory("boss", role="admin")
    _, direct = gate(["alice"])
    _, admin_only = gate(["team_admin"])

    assert [item.id for item in services.coordinator.pending_for("alice")] == [direct.id]
    assert [item.id for item in services.coordinator.pending_for("boss")] == [admin_only.id]

    services.coordinator.submit(direct.id, "alice", "APPROVED")
    assert services.coordinator.pending_for("alice") == []


def test_decisions_are_audited(services, gate):
    _, request = gate(["alice"])

    services.coordinator.submit(request.id, "alice", "APPROVED")

    entry = AuditLog.query.filter_by(action="approval.decision").one()
    assert entry.resource_id == str(request.id)
    assert entry.user_id == "alice"
    assert entry.details_data == {"decision": "APPROVED", "status": "APPROVED"}


def test_audit_failures_do_not_fail_decisions(services, gate, monkeypatch):
    from backend.dataroll.workflows import collaborators

    _, request = gate(["alice"])

    def exploding(**kwargs):
        raise RuntimeError("audit database down")

    monkeypatch.setattr(collaborators, "AuditLog", exploding)
    result = services.coordinator.submit(request.id, "alice", "APPROVED")

    assert result.ok
    assert db.session.get(ApprovalRequest, request.id).status == "APPROVED"


def test_rows_from_earlier_tests_are_not_tracked(app):
    assert len(db.session.identity_map) == 0


def test_reused_request_ids_load_fresh_rows(gate):
    gate(["alice"])

    db.session.query(ApprovalDecision).delete()
    db.session.query(ApprovalRequest).delete()
    db.session.commit()
    db.session.expunge_all()

    _, request = gate(["bob"])
    decided = db.session.get(ApprovalRequest, request.id)

    assert decided.approvers == ["bob"]
    assert decided.status == "PENDING"
