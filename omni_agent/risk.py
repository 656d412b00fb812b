"""风险闸门：根据动作类型、风险标签与自主模式决定是否需要人工审批"""

from enum import Enum
from typing import Any, Union

from .models import ActionKind, RiskLevel


class AutonomyMode(str, Enum):
    MANUAL = "manual"
    SEMI = "semi"
    AUTO = "auto"


# 内部或无副作用的动作，永不阻塞
NEVER_BLOCK = frozenset({ActionKind.SAVE_MEMORY, ActionKind.DONE, ActionKind.WAIT})


def should_block(kind: Union[ActionKind, str], risk: Any,
                 mode: Union[AutonomyMode, str]) -> bool:
    """
    纯函数，无状态。规则按顺序：
    1. SAVE_MEMORY / DONE / WAIT 永不阻塞（类型覆盖优先于风险标签）
    2. manual 总是阻塞；semi 仅 HIGH 阻塞；auto 从不阻塞
    缺失的风险标签视为 HIGH；无法识别的模式按 manual 处理。
    """
    try:
        kind = ActionKind(str(getattr(kind, "value", kind)).upper())
    except ValueError:
        kind = None
    if kind in NEVER_BLOCK:
        return False

    level = RiskLevel.parse(risk)
    try:
        mode = AutonomyMode(str(getattr(mode, "value", mode)).lower())
    except ValueError:
        return True

    if mode == AutonomyMode.MANUAL:
        return True
    if mode == AutonomyMode.SEMI:
        return level == RiskLevel.HIGH
    return False
