import pytest

from omni_agent.models import ActionKind, RiskLevel
from omni_agent.risk import AutonomyMode, should_block


def test_manual_blocks_everything():
    assert should_block("CLICK", "HIGH", "manual") is True
    assert should_block("CLICK", "LOW", "manual") is True


def test_semi_blocks_only_high():
    assert should_block("CLICK", "HIGH", "semi") is True
    assert should_block("CLICK", "LOW", "semi") is False
    assert should_block("CLICK", "MEDIUM", "semi") is False


def test_auto_never_blocks():
    assert should_block("CLICK", "HIGH", "auto") is False


@pytest.mark.parametrize("risk", [None, "LOW", "MEDIUM", "HIGH", "garbage"])
@pytest.mark.parametrize("kind", ["DONE", "SAVE_MEMORY", "WAIT"])
def test_inert_kinds_never_block(kind, risk):
    assert should_block(kind, risk, "manual") is False


def test_missing_risk_fails_closed_in_semi():
    assert should_block("TYPE", None, "semi") is True
    assert should_block(ActionKind.TYPE, "", AutonomyMode.SEMI) is True


def test_accepts_enums():
    assert should_block(ActionKind.NAVIGATE, RiskLevel.LOW, AutonomyMode.SEMI) is False
    assert should_block(ActionKind.DONE, RiskLevel.HIGH, AutonomyMode.MANUAL) is False


def test_unknown_mode_blocks():
    assert should_block("CLICK", "LOW", "yolo") is True
