"""OmniAgent 包

包含各个模块：
- models: 数据模型
- perception: 感知模块（页面扫描与元素注册表）
- controller: 执行模块
- surface: 页面侧桥接
- planner: 规划模块（LLM 决策）
- memory: 记忆模块
- conversation: 会话历史
- risk: 风险闸门
- mcp: 外部工具协议客户端
- background: 决策与工具的后台上下文
- core: 核心 Agent 主循环
"""

from .background import Background
from .config import AgentConfig, ConfigStore, McpServerConfig
from .controller import Controller
from .conversation import Conversation, ConversationStore
from .core import AgentListener, AgentState, OmniAgent, RunOutcome
from .mcp import McpClient, McpManager
from .memory import AgentMemory
from .models import Action, ActionKind, ActionResult, ElementSnapshot, Message, RiskLevel, Role
from .perception import ElementRegistry, Perception
from .planner import Planner
from .risk import AutonomyMode, should_block
from .surface import BrowserSurface

__all__ = [
    "Action",
    "ActionKind",
    "ActionResult",
    "AgentConfig",
    "AgentListener",
    "AgentMemory",
    "AgentState",
    "AutonomyMode",
    "Background",
    "BrowserSurface",
    "ConfigStore",
    "Controller",
    "Conversation",
    "ConversationStore",
    "ElementRegistry",
    "ElementSnapshot",
    "McpClient",
    "McpManager",
    "McpServerConfig",
    "Message",
    "OmniAgent",
    "Perception",
    "Planner",
    "RiskLevel",
    "Role",
    "RunOutcome",
    "should_block",
]
