"""异常定义"""

from typing import Any, Optional


class OmniAgentError(Exception):
    """所有 Agent 异常的基类"""


class ActionDecodeError(OmniAgentError):
    """决策输出无法解码为合法的 Action"""


class DecisionError(OmniAgentError):
    """决策步骤失败（网络、鉴权、解析），本轮终止"""


class ElementNotFoundError(OmniAgentError):
    """元素 ID 不在当前扫描的注册表中（过期或不存在）"""

    def __init__(self, element_id: Any):
        super().__init__(f"Element [ID: {element_id}] not found.")
        self.element_id = element_id


class CollaboratorUnavailableError(OmniAgentError):
    """页面侧脚本不存在或无响应"""


class InjectionError(OmniAgentError):
    """页面侧脚本注入失败"""


class McpError(OmniAgentError):
    """工具协议相关错误"""


class McpTimeoutError(McpError):
    """远程调用在超时窗口内没有收到响应"""


class McpServerNotFoundError(McpError):
    """指定的工具服务器不存在"""

    def __init__(self, name: str):
        super().__init__(f"MCP Server '{name}' not found.")
        self.name = name


class McpRpcError(McpError):
    """服务器返回的 JSON-RPC 错误"""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data
