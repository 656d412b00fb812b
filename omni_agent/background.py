"""后台上下文：决策步骤、工具调用与记忆写入（run-command / execute-tool / update-memory）"""

import logging
from typing import Any, Dict, List, Optional

from .config import ConfigStore
from .errors import DecisionError, McpError
from .mcp import McpManager
from .memory import AgentMemory
from .models import Action, Message, Role, ToolDescriptor
from .planner import Planner, PromptInputs

logger = logging.getLogger(__name__)


class Background:
    """
    持有配置、记忆与工具管理器。
    主循环通过这里的方法（或 handle() 消息）访问决策步骤与工具。
    """

    def __init__(self, planner: Planner, config: ConfigStore,
                 memory: Optional[AgentMemory] = None, tools: Optional[McpManager] = None):
        self.planner = planner
        self.config = config
        self.memory = memory if memory is not None else AgentMemory()
        self.tools = tools if tools is not None else McpManager()

    def available_tools(self) -> List[ToolDescriptor]:
        return self.tools.get_all_tools()

    async def run_command(self, instruction: str, context: str,
                          history: List[Message]) -> Action:
        """取当前配置快照，组装输入并获得一个动作；失败抛出 DecisionError"""
        snapshot = self.config.current
        inputs = PromptInputs(
            instruction=instruction,
            context=context,
            history=list(history),
            memory_snapshot=self.memory.snapshot(),
            tools=self.available_tools(),
        )
        return await self.planner.decide(inputs, snapshot)

    async def execute_tool(self, source: str, tool: str,
                           args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """工具错误与超时作为结果返回，不向上抛出"""
        try:
            result = await self.tools.call_tool(source, tool, args or {})
        except McpError as exc:
            logger.warning("工具 %s/%s 调用失败: %s", source, tool, exc)
            return {"success": False, "error": str(exc)}
        return {"success": True, "result": result}

    def update_memory(self, key: str, value: Any) -> Dict[str, Any]:
        count = self.memory.save(key, value)
        return {"success": True, "saved": count}

    async def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """按消息类型分发：run-command / execute-tool / update-memory"""
        kind = message.get("type")
        payload = message.get("payload") or {}
        if kind == "run-command":
            history = [
                m if isinstance(m, Message) else Message(Role(m["role"]), m["content"])
                for m in payload.get("history", [])
            ]
            try:
                action = await self.run_command(
                    payload.get("instruction", ""), payload.get("context", ""), history
                )
            except DecisionError as exc:
                return {"error": str(exc)}
            return {"action": action}
        if kind == "execute-tool":
            return await self.execute_tool(
                payload.get("source", ""), payload.get("tool", ""), payload.get("args")
            )
        if kind == "update-memory":
            if "key" not in payload:
                return {"success": False, "error": "update-memory requires a key"}
            return self.update_memory(payload["key"], payload.get("value"))
        return {"success": False, "error": f"Unknown message type: {kind}"}
