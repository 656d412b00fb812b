"""数据模型定义"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ActionDecodeError

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    CLICK = "CLICK"
    TYPE = "TYPE"
    SCROLL = "SCROLL"
    NAVIGATE = "NAVIGATE"
    OPEN_TAB = "OPEN_TAB"
    EXTRACT = "EXTRACT"
    DONE = "DONE"
    SAVE_MEMORY = "SAVE_MEMORY"
    WAIT = "WAIT"
    CREATE_PLAN = "CREATE_PLAN"
    TOOL_CALL = "TOOL_CALL"


# 需要通过元素 ID 定位目标的动作
ELEMENT_KINDS = frozenset({ActionKind.CLICK, ActionKind.TYPE})
# value 必须是非空 URL 的动作
URL_KINDS = frozenset({ActionKind.NAVIGATE, ActionKind.OPEN_TAB})


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def parse(cls, label: Any) -> "RiskLevel":
        """缺失或无法识别的风险标签一律按 HIGH 处理"""
        if isinstance(label, RiskLevel):
            return label
        if isinstance(label, str):
            try:
                return cls(label.strip().upper())
            except ValueError:
                pass
        return cls.HIGH


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class Message:
    """会话中的单条消息，追加后不可修改"""
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class MemoryPayload:
    key: str
    value: Any


@dataclass(frozen=True)
class ToolCallPayload:
    source: str
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Action:
    """
    决策步骤输出的结构化动作。

    kind 决定其余字段的含义：target_id 只对 CLICK/TYPE 有意义，
    SAVE_MEMORY 的载荷在 memory 中，TOOL_CALL 的载荷在 tool_call 中。
    """
    kind: ActionKind
    risk: RiskLevel = RiskLevel.HIGH
    target_id: Optional[int] = None
    value: Optional[str] = None
    thought: str = ""
    message: Optional[str] = None
    new_title: Optional[str] = None
    memory: Optional[MemoryPayload] = None
    tool_call: Optional[ToolCallPayload] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Action":
        """在边界处解码并校验，缺少该类型必需字段时抛出 ActionDecodeError"""
        if not isinstance(data, dict):
            raise ActionDecodeError("Decision must be a JSON object.")

        raw_kind = data.get("action")
        try:
            kind = ActionKind(str(raw_kind).strip().upper())
        except ValueError:
            raise ActionDecodeError(f"Unknown action type: {raw_kind!r}")

        value = _as_text(data.get("value"))
        target_id = None
        memory = None
        tool_call = None

        if kind in ELEMENT_KINDS:
            target_id = _as_element_id(data.get("target_id"))
            if target_id is None:
                raise ActionDecodeError(f"{kind.value} requires an integer target_id.")
            if kind == ActionKind.TYPE and value is None:
                raise ActionDecodeError("TYPE requires a value.")
        elif kind in URL_KINDS:
            if not value or not value.strip():
                raise ActionDecodeError(f"{kind.value} requires a URL value.")
            value = value.strip()
        elif kind == ActionKind.SAVE_MEMORY:
            memory = _decode_memory(data.get("value"))
        elif kind == ActionKind.TOOL_CALL:
            tool_call = _decode_tool_call(data.get("value"))

        return cls(
            kind=kind,
            risk=RiskLevel.parse(data.get("risk_score")),
            target_id=target_id,
            value=value,
            thought=_as_text(data.get("thought")) or "",
            message=_as_text(data.get("message")),
            new_title=_as_text(data.get("new_title")),
            memory=memory,
            tool_call=tool_call,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.kind.value,
            "target_id": self.target_id,
            "value": self.value,
            "risk_score": self.risk.value,
            "thought": self.thought,
            "message": self.message,
            "new_title": self.new_title,
        }


@dataclass
class ActionResult:
    """动作执行结果"""
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    navigated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        if self.message is not None:
            result["message"] = self.message
        if self.navigated:
            result["navigated"] = True
        return result


@dataclass
class ElementSnapshot:
    """单个被标注元素的快照"""
    id: int
    tag: str
    label: str
    href: Optional[str] = None
    value: Optional[str] = None
    input_type: Optional[str] = None

    def describe(self) -> str:
        extra = ""
        if self.tag == "a" and self.href:
            extra = f' href="{self.href}"'
        elif self.tag == "input":
            extra = f' value="{self.value or ""}"'
        return f'[ID: {self.id}] <{self.tag}{extra}> "{self.label}"'


@dataclass
class ToolDescriptor:
    """外部工具服务器提供的工具，source 为来源服务器名"""
    name: str
    description: str
    input_schema: Dict[str, Any]
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "source": self.source,
        }


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _as_element_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _load_json_value(raw: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, str):
        raise ValueError("payload is not JSON text")
    return json.loads(raw)


def _decode_memory(raw: Any) -> Optional[MemoryPayload]:
    # 载荷损坏只记录日志，不影响该动作的其他效果
    try:
        data = _load_json_value(raw)
    except ValueError as exc:
        logger.warning("SAVE_MEMORY 载荷无法解析，已忽略: %s (%r)", exc, raw)
        return None
    if not isinstance(data, dict):
        logger.warning("SAVE_MEMORY 载荷不是对象，已忽略: %r", raw)
        return None
    key = data.get("key") or "general"
    value = data.get("value")
    if value is None:
        value = data
    return MemoryPayload(key=str(key), value=value)


def _decode_tool_call(raw: Any) -> ToolCallPayload:
    try:
        data = _load_json_value(raw)
    except ValueError as exc:
        raise ActionDecodeError(f"TOOL_CALL value is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise ActionDecodeError("TOOL_CALL value must be a JSON object.")
    tool = data.get("tool")
    source = data.get("source")
    if not tool or not source:
        raise ActionDecodeError("TOOL_CALL requires both 'tool' and 'source'.")
    args = data.get("args") or {}
    if not isinstance(args, dict):
        raise ActionDecodeError("TOOL_CALL 'args' must be an object.")
    return ToolCallPayload(source=str(source), tool=str(tool), args=args)


def history_as_dicts(messages: List[Message]) -> List[Dict[str, str]]:
    return [m.to_dict() for m in messages]
