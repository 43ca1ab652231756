"""Tests for gate resolution rules."""

import pytest

from phasegate.core.orchestrator_spec import DEFAULT_GATES
from phasegate.domain.gates import GateStatus, first_blocking_gate, is_gate_satisfied

pytestmark = pytest.mark.unit

STACK_GATE = next(g for g in DEFAULT_GATES if g.name == "stack")
PRD_GATE = next(g for g in DEFAULT_GATES if g.name == "prd")


def test_non_blocking_gate_never_holds():
    assert is_gate_satisfied(PRD_GATE, None) is True
    assert is_gate_satisfied(PRD_GATE, GateStatus.REJECTED) is True


def test_blocking_gate_needs_approval_or_flag():
    assert is_gate_satisfied(STACK_GATE, None) is False
    assert is_gate_satisfied(STACK_GATE, GateStatus.PENDING) is False
    assert is_gate_satisfied(STACK_GATE, GateStatus.APPROVED) is True
    assert is_gate_satisfied(STACK_GATE, GateStatus.PENDING, project_flag=True) is True


def test_rejection_overrides_project_flag():
    assert is_gate_satisfied(STACK_GATE, GateStatus.REJECTED, project_flag=True) is False


def test_first_blocking_gate_uses_project_flags():
    assert first_blocking_gate([STACK_GATE], {}, {"stack_approved": False}) == "stack"
    assert first_blocking_gate([STACK_GATE], {}, {"stack_approved": True}) is None
    assert first_blocking_gate([PRD_GATE], {}, {}) is None
