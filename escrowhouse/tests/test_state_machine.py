import pytest

from escrowhouse.common.enums import MilestoneStatus as S
from escrowhouse.common.exceptions import IllegalTransition
from escrowhouse.core.milestones.state_machine import (
    DISPUTABLE,
    TERMINAL,
    can_transition,
    ensure_transition,
    is_valid_path,
)


def test_happy_path_is_valid():
    assert is_valid_path([S.DRAFT, S.FUNDED, S.PENDING_VERIFICATION, S.VERIFIED, S.COMPLETED])


def test_dispute_paths_are_valid():
    assert is_valid_path([S.DRAFT, S.FUNDED, S.PENDING_VERIFICATION, S.DISPUTED, S.MEDIATION, S.COMPLETED])
    assert is_valid_path([S.DRAFT, S.FUNDED, S.DISPUTED, S.COMPLETED])


def test_payout_failure_paths_are_valid():
    assert is_valid_path([S.DRAFT, S.FUNDED, S.PENDING_VERIFICATION, S.VERIFIED, S.PAYOUT_FAILED, S.COMPLETED])
    assert is_valid_path([S.DRAFT, S.FUNDED, S.PAYOUT_FAILED, S.CANCELLED])


def test_paths_must_start_at_draft():
    assert not is_valid_path([S.FUNDED, S.PENDING_VERIFICATION])
    assert not is_valid_path([])


def test_skipping_states_is_rejected():
    assert not can_transition(S.DRAFT, S.PENDING_VERIFICATION)
    assert not can_transition(S.FUNDED, S.VERIFIED)
    assert not can_transition(S.PENDING_VERIFICATION, S.COMPLETED)


def test_terminal_states_have_no_exits():
    assert TERMINAL == {S.COMPLETED, S.CANCELLED}
    for target in S:
        assert not can_transition(S.COMPLETED, target)
        assert not can_transition(S.CANCELLED, target)


def test_submitted_milestone_cannot_be_cancelled():
    assert not can_transition(S.PENDING_VERIFICATION, S.CANCELLED)
    assert can_transition(S.FUNDED, S.CANCELLED)


def test_only_funded_or_submitted_milestones_are_disputable():
    assert DISPUTABLE == {S.FUNDED, S.PENDING_VERIFICATION}


def test_ensure_transition_accepts_plain_strings():
    ensure_transition("funded", "pending_verification")
    with pytest.raises(IllegalTransition) as exc_info:
        ensure_transition("completed", "draft")
    assert exc_info.value.code == "illegal_transition"
    assert "completed" in exc_info.value.message
