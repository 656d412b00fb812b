"""规划模块：组装 prompt，调用 LLM，解析出唯一的结构化动作"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from openai import AsyncOpenAI, OpenAIError

from .config import PROVIDER_LABELS, AgentConfig
from .errors import ActionDecodeError, DecisionError
from .models import Action, Message, ToolDescriptor

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)

SYSTEM_PROMPT = """You are OmniAgent, a browser automation assistant.
You will receive a list of elements visible on the screen, each with a numeric ID (e.g., [ID: 42]).
Your goal is to interpret the user's natural language command and decide the single next action.

GUIDELINES:
1. **Goal Achievement**: Break down the user's goal into logical steps (Research, Action, Verification).
2. **Efficiency**: Before clicking into details, check if the necessary information is already visible on the current page (e.g. list views). If so, use "SAVE_MEMORY".
3. **Batch Saving**: If multiple relevant items are visible (e.g. in a search list), save them ALL in ONE single "SAVE_MEMORY" action as an array. Do NOT save them one by one.
4. **Internal Memory**: "SAVE_MEMORY" is automatic and internal. Do NOT announce it as a step to the user.
5. **Workflow**: Scan/Research -> Save Relevant Data -> Analyze/Decide -> Execute Action.
6. **Tools**: If an external tool fits the task better than the page, use "TOOL_CALL".
7. **Risk Assessment**:
   - **HIGH**: Buying (Checkout), Deleting data, Posting content, Auth/Login, Configuring Settings.
   - **MEDIUM**: Navigating to new domains, Clicking ads/unknown links.
   - **LOW**: Searching, Scrolling, Reading, Extracting, Tab Management.
8. **Chat Titles**: If this is the START of a conversation, generate a short `new_title` (3-5 words) summarizing the goal.
9. When the goal is achieved, answer with "DONE".

RESPONSE FORMAT:
Strictly output ONE JSON object with this schema (no markdown, no code blocks):
{
  "thought": "Internal reasoning (e.g. 'I see 5 prices in the list, will save them all in one go')",
  "message": "Public message to the user (or null)",
  "action": "CLICK" | "TYPE" | "SCROLL" | "NAVIGATE" | "OPEN_TAB" | "EXTRACT" | "DONE" | "SAVE_MEMORY" | "WAIT" | "CREATE_PLAN" | "TOOL_CALL",
  "target_id": 12,
  "value": "Text to type, URL, milliseconds to WAIT, or plan text. For SAVE_MEMORY: '{\\"key\\": \\"variable_name\\", \\"value\\": [item1, item2]}'. For TOOL_CALL: '{\\"tool\\": \\"name\\", \\"source\\": \\"server\\", \\"args\\": {}}'",
  "risk_score": "LOW" | "MEDIUM" | "HIGH",
  "new_title": "Conversation title (or null if not new)"
}
target_id is an integer for CLICK and TYPE, otherwise null.
"""


@dataclass
class PromptInputs:
    """一次决策所需的全部输入"""
    instruction: str
    context: str
    history: List[Message] = field(default_factory=list)
    memory_snapshot: str = "{}"
    tools: List[ToolDescriptor] = field(default_factory=list)


def build_prompt(inputs: PromptInputs) -> Tuple[str, str]:
    """返回 (system_prompt, user_prompt)"""
    history = "\n".join(f"{m.role.value.upper()}: {m.content}" for m in inputs.history) or "(empty)"
    if inputs.tools:
        tools = "\n".join(
            f"- {t.name} (source: {t.source}): {t.description} "
            f"input schema: {json.dumps(t.input_schema, ensure_ascii=False)}"
            for t in inputs.tools
        )
    else:
        tools = "(no external tools connected)"

    user_prompt = (
        f"CONVERSATION HISTORY:\n{history}\n\n"
        f"AGENT MEMORY (What you have saved so far):\n{inputs.memory_snapshot}\n\n"
        f"AVAILABLE TOOLS:\n{tools}\n\n"
        f"CURRENT COMMAND: \"{inputs.instruction}\"\n\n"
        f"VISIBLE ELEMENTS (Visual Grounding):\n{inputs.context}"
    )
    return SYSTEM_PROMPT, user_prompt


def strip_fences(raw: str) -> str:
    return FENCE_PATTERN.sub("", raw).strip()


def parse_decision(raw: Any) -> Action:
    """剥离代码块标记后解析 JSON；格式错误抛出 DecisionError（不重试）"""
    if isinstance(raw, dict):
        data = raw
    else:
        if not isinstance(raw, str) or not raw.strip():
            raise DecisionError("Empty response from the model.")
        text = strip_fences(raw)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecisionError(f"Could not parse model response as JSON: {exc}")
    try:
        return Action.from_dict(data)
    except ActionDecodeError as exc:
        raise DecisionError(str(exc))


ClientFactory = Callable[[AgentConfig], Any]


def default_client_factory(config: AgentConfig) -> AsyncOpenAI:
    # ollama 不需要密钥，但 SDK 要求非空
    api_key = config.api_key or ("ollama" if config.provider == "ollama" else None)
    return AsyncOpenAI(api_key=api_key, base_url=config.resolved_base_url)


class Planner:
    """规划模块：每次调用都使用传入的配置快照，按快照版本缓存客户端"""

    def __init__(self, client_factory: ClientFactory = default_client_factory,
                 temperature: float = 0):
        self.client_factory = client_factory
        self.temperature = temperature
        self._clients: Dict[Tuple[int, str], Any] = {}

    def _client_for(self, config: AgentConfig):
        key = (config.version, config.provider)
        if key not in self._clients:
            self._clients = {key: self.client_factory(config)}
        return self._clients[key]

    async def decide(self, inputs: PromptInputs, config: AgentConfig) -> Action:
        if config.provider != "ollama" and not config.api_key:
            label = PROVIDER_LABELS.get(config.provider, config.provider)
            raise DecisionError(f"{label} API Key is missing.")

        system_prompt, user_prompt = build_prompt(inputs)
        raw = await self._complete(system_prompt, user_prompt, config)
        logger.debug("LLM 原始响应: %s", raw)
        action = parse_decision(raw)
        logger.info("决策: %s target=%s risk=%s", action.kind.value, action.target_id, action.risk.value)
        return action

    async def _complete(self, system_prompt: str, user_prompt: str, config: AgentConfig) -> str:
        client = self._client_for(config)
        request: Dict[str, Any] = {
            "model": config.resolved_model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if config.provider in ("openai", "ollama", "gemini"):
            request["response_format"] = {"type": "json_object"}
        try:
            response = await client.chat.completions.create(**request)
        except OpenAIError as exc:
            logger.error("调用 LLM 失败: %s", exc)
            raise DecisionError(str(exc))
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise DecisionError(f"Malformed model response: {exc}")
        return content or ""
