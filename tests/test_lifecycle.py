from __future__ import annotations

import pytest

from lifecycle.interpreter import (
    bytes32_to_text,
    check_record,
    direct_offer_fields,
    merge,
    normalize_address,
    profile_fields,
)
from lifecycle.models import Delivery, EntityKind, Escrow, EscrowPhase, Job, JobStatus
from lifecycle.state_machine import (
    InconsistentTransition,
    actionable_delivery,
    check_delivery_history,
    check_job_transition,
    escrow_phase,
    reachable_statuses,
)

from tests.fakes import CLIENT, ESCROW, FREELANCER, ZERO, escrow_snapshot, job_snapshot


def test_reachable_statuses_from_open():
    assert reachable_statuses(JobStatus.OPEN) == {
        JobStatus.HIRED, JobStatus.CANCELLED, JobStatus.EXPIRED, JobStatus.COMPLETED,
    }
    assert reachable_statuses(JobStatus.COMPLETED) == set()


def test_several_steps_need_witnessing_fields():
    check_job_transition("job:1", JobStatus.OPEN, JobStatus.COMPLETED, FREELANCER, ESCROW)
    with pytest.raises(InconsistentTransition, match="skips HIRED"):
        check_job_transition("job:1", JobStatus.OPEN, JobStatus.COMPLETED)
    with pytest.raises(InconsistentTransition, match="not allowed"):
        check_job_transition("job:1", JobStatus.COMPLETED, JobStatus.OPEN, FREELANCER, ESCROW)
    check_job_transition("job:1", JobStatus.OPEN, JobStatus.CANCELLED)


def test_hired_job_requires_escrow():
    fields = job_snapshot(1, JobStatus.HIRED, freelancer=FREELANCER)
    with pytest.raises(InconsistentTransition, match="no escrow"):
        merge(EntityKind.JOB, "1", None, fields)


def test_cancelled_job_drops_escrow_address():
    previous = merge(EntityKind.JOB, "1", None, job_snapshot(
        1, JobStatus.HIRED, escrow=ESCROW, freelancer=FREELANCER))
    cancelled = merge(EntityKind.JOB, "1", previous, job_snapshot(
        1, JobStatus.CANCELLED, escrow=ESCROW, freelancer=FREELANCER, updated_block=110))
    assert cancelled.escrow_address is None
    assert cancelled.hired_freelancer == FREELANCER


def test_delivery_history_grows_by_appending():
    escrow = merge(EntityKind.ESCROW, ESCROW, None, escrow_snapshot())
    seen = []
    for i in (1, 2):
        seen.append((f"ipfs://v{i}", i, i))
        escrow = merge(EntityKind.ESCROW, ESCROW, escrow, escrow_snapshot(delivered=True, deliveries=seen))
    assert [d.version for d in escrow.delivery_history] == [1, 2]
    assert actionable_delivery(escrow.delivery_history).uri == "ipfs://v2"
    assert escrow.latest_delivery.version == 2


def test_delivery_history_cannot_be_rewritten():
    prev = [Delivery("ipfs://a", 1, 1)]
    with pytest.raises(InconsistentTransition, match="rewritten"):
        check_delivery_history("escrow", prev, [Delivery("ipfs://b", 1, 1)])
    with pytest.raises(InconsistentTransition, match="shrank"):
        check_delivery_history("escrow", prev, [])
    with pytest.raises(InconsistentTransition, match="strictly increasing"):
        check_delivery_history("escrow", [], [Delivery("ipfs://a", 1, 2), Delivery("ipfs://b", 2, 2)])


def test_delivered_escrow_needs_history():
    with pytest.raises(InconsistentTransition, match="empty delivery history"):
        merge(EntityKind.ESCROW, ESCROW, None, escrow_snapshot(delivered=True))


def test_terminal_escrow_is_frozen():
    final = merge(EntityKind.ESCROW, ESCROW, None, escrow_snapshot(
        delivered=True, terminal=True, deliveries=[("ipfs://d", 1, 1)]))
    with pytest.raises(InconsistentTransition, match="terminal"):
        merge(EntityKind.ESCROW, ESCROW, final, {"disputed": True})


@pytest.mark.parametrize("flags,phase", [
    ({}, EscrowPhase.FUNDED),
    ({"delivered": True}, EscrowPhase.DELIVERED),
    ({"delivered": True, "disputed": True}, EscrowPhase.DISPUTED),
    ({"cancel_requested_by": CLIENT}, EscrowPhase.CANCEL_REQUESTED),
    ({"delivered": True, "terminal": True}, EscrowPhase.APPROVED),
    ({"delivered": True, "disputed": True, "terminal": True}, EscrowPhase.RESOLVED),
    ({"cancel_requested_by": CLIENT, "terminal": True}, EscrowPhase.CANCEL_ACCEPTED),
])
def test_escrow_phase(flags, phase):
    assert escrow_phase(Escrow(address=ESCROW, **flags)) is phase


def test_direct_offer_decision_is_final():
    raw = (3, CLIENT, FREELANCER, "Audit", "ipfs://o", 100, 5, 10, 20, True, False, False)
    accepted = merge(EntityKind.DIRECT_OFFER, "3", None, direct_offer_fields(raw))
    assert accepted.decision == "accepted"
    with pytest.raises(InconsistentTransition, match="already accepted"):
        merge(EntityKind.DIRECT_OFFER, "3", accepted, {"accepted": False, "cancelled": True})


def test_empty_offer_slot_decodes_to_none():
    raw = (0, ZERO, ZERO, "", "", 0, 0, 0, 0, False, False, False)
    assert direct_offer_fields(raw) is None


def test_check_record_flags_inconsistent_cache_payload():
    bad = Job(job_id=1, status=JobStatus.OPEN, escrow_address=ESCROW)
    with pytest.raises(InconsistentTransition):
        check_record(EntityKind.JOB, bad)
    check_record(EntityKind.JOB, Job(job_id=1, status=JobStatus.HIRED, escrow_address=ESCROW))


def test_decoding_helpers():
    assert normalize_address(ZERO) is None
    assert normalize_address(CLIENT.upper().replace("0X", "0x")) == CLIENT
    assert bytes32_to_text(b"design" + b"\x00" * 26) == "design"
    profile = profile_fields(CLIENT, {"average_rating": 450, "skills": ["solidity"], "is_active": True})
    assert profile["average_rating"] == 4.5
    assert profile["profile_address"] == CLIENT
