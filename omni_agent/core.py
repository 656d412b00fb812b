"""Agent 核心类：扫描 -> 决策 -> 风险检查 ->（人工审批）-> 执行 的主循环"""

import asyncio
import json
import logging
import math
from enum import Enum
from typing import Any, Optional

from playwright.async_api import Error as PlaywrightError

from .background import Background
from .conversation import Conversation, ConversationStore
from .errors import CollaboratorUnavailableError, DecisionError, InjectionError
from .models import Action, ActionKind, ActionResult, Message, RiskLevel, Role
from .perception import ElementRegistry
from .risk import should_block
from .signals import ApprovalSignal
from .surface import RESTRICTED_CONTEXT

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue achieving the goal."
REJECTION_MESSAGE = "I rejected that action"
STOP_MESSAGE = "🛑 Stopped by user."
EXTRACT_LIMIT = 4000
WAIT_DEFAULT_MS = 2000
WAIT_MAX_MS = 30000
MEMORY_STEP_DELAY = 0.1
REINJECT_DELAY = 0.5

# 交给页面侧执行器的动作
PAGE_KINDS = frozenset({ActionKind.CLICK, ActionKind.TYPE, ActionKind.SCROLL, ActionKind.EXTRACT})


class AgentState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    THINKING = "thinking"
    RISK_CHECK = "risk_check"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    DONE = "done"
    ERROR = "error"
    STOPPED = "stopped"


class RunOutcome(str, Enum):
    DONE = "done"
    ERROR = "error"
    STOPPED = "stopped"
    STEP_LIMIT = "step_limit"


class AgentListener:
    """界面回调，默认实现什么都不做"""

    def on_message(self, message: Message):
        pass

    def on_status(self, text: str):
        pass

    def on_state(self, state: AgentState):
        pass

    def on_approval_requested(self, action: Action, description: str):
        pass


def describe_action(action: Action, registry: Optional[ElementRegistry] = None) -> str:
    """给用户看的动作描述，点击时尽量带上元素 label"""
    if action.kind == ActionKind.TYPE:
        return f'Typing "{action.value}"...'
    if action.kind == ActionKind.NAVIGATE:
        return f"Navigating to {action.value}..."
    if action.kind == ActionKind.CLICK:
        label = registry.label_of(action.target_id) if registry is not None else None
        if label:
            return f'Clicking "{label}"...'
        return f"Clicking element [{action.target_id}]..."
    return f"Executing {action.kind.value}..."


def approval_text(action: Action) -> str:
    desc = action.kind.value
    if action.target_id is not None:
        desc += f" element [{action.target_id}]"
    if action.value:
        desc += f' input "{action.value}"'
    if action.risk == RiskLevel.HIGH:
        desc = f"⚠️ [HIGH RISK] {desc}"
    return desc


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


class OmniAgent:
    """
    主循环是单个顺序执行的协程，任意时刻只有一轮在运行。
    停止请求只在每轮开始时检查；正在进行的执行不会被强行中断。
    """

    def __init__(self, surface, background: Background,
                 conversations: Optional[ConversationStore] = None,
                 listener: Optional[AgentListener] = None):
        self.surface = surface
        self.background = background
        self.conversations = conversations or ConversationStore()
        self.listener = listener or AgentListener()
        self.state = AgentState.IDLE
        self._stop_requested = False
        self._approval: Optional[ApprovalSignal] = None

    @property
    def conversation(self) -> Conversation:
        return self.conversations.active

    @property
    def config(self):
        return self.background.config.current

    @property
    def awaiting_approval(self) -> bool:
        return self._approval is not None and not self._approval.resolved

    # --- 外部控制 ---

    def stop(self):
        self._stop_requested = True
        if self._approval is not None:
            self._approval.cancel()

    def approve(self) -> bool:
        return self._approval is not None and self._approval.approve()

    def reject(self) -> bool:
        return self._approval is not None and self._approval.reject()

    # --- 消息 ---

    def add_message(self, role: Role, text: str) -> bool:
        appended = self.conversation.append(role, text)
        if appended:
            self.listener.on_message(Message(Role(role), text))
        return appended

    def _status(self, text: str):
        # 临时状态，不写入会话历史
        self.listener.on_status(text)

    def _set_state(self, state: AgentState):
        self.state = state
        self.listener.on_state(state)

    # --- 主循环 ---

    async def run(self, instruction: Optional[str] = None) -> RunOutcome:
        """
        执行任务直到 DONE、致命错误、停止请求或达到步数上限。
        instruction 为空时视为继续上一次的目标。
        """
        self._stop_requested = False
        if instruction:
            self.add_message(Role.USER, instruction)
        prompt = instruction or CONTINUE_PROMPT
        interacted = False
        steps = 0

        while True:
            if self._stop_requested:
                self.add_message(Role.AGENT, STOP_MESSAGE)
                self._set_state(AgentState.STOPPED)
                return RunOutcome.STOPPED

            config = self.config
            if steps >= config.max_steps:
                self.add_message(Role.AGENT, f"Reached the step limit ({config.max_steps}). Stopping.")
                self._set_state(AgentState.STOPPED)
                return RunOutcome.STEP_LIMIT
            steps += 1
            logger.info("===== Step %d =====", steps)

            self._set_state(AgentState.SCANNING)
            context = await self._obtain_context()
            if context is None:
                logger.info("页面上下文为空，可能正在导航，稍后重试")
                await asyncio.sleep(config.rescan_delay)
                continue

            self._set_state(AgentState.THINKING)
            self._status("Thinking...")
            try:
                action = await self.background.run_command(prompt, context, self.conversation.messages)
            except DecisionError as exc:
                logger.error("决策失败: %s", exc)
                self.add_message(Role.AGENT, f"Error: {exc}")
                self._set_state(AgentState.ERROR)
                return RunOutcome.ERROR
            prompt = CONTINUE_PROMPT

            if self.conversation.assign_title(action.new_title):
                logger.info("会话标题: %s", self.conversation.title)
            if action.thought:
                self.add_message(Role.AGENT, f"Thought: {action.thought}")
            if action.message:
                self.add_message(Role.AGENT, action.message)

            self._set_state(AgentState.RISK_CHECK)
            if should_block(action.kind, action.risk, config.autonomy_mode):
                approved = await self._await_approval(action)
                if approved is None:
                    continue
                if not approved:
                    self.add_message(Role.USER, REJECTION_MESSAGE)
                    continue
                self.add_message(Role.AGENT, "Action Approved. Executing...")

            if action.kind == ActionKind.DONE:
                await self.surface.clear_overlays()
                if interacted:
                    self.add_message(Role.AGENT, "Task completed.")
                self._set_state(AgentState.DONE)
                return RunOutcome.DONE

            self._set_state(AgentState.EXECUTING)
            if await self._execute(action):
                interacted = True

    async def _await_approval(self, action: Action) -> Optional[bool]:
        # 先布置信号，再把选择展示出去
        signal = ApprovalSignal()
        self._approval = signal
        self._set_state(AgentState.AWAITING_APPROVAL)
        self.listener.on_approval_requested(action, approval_text(action))
        try:
            return await signal.wait()
        finally:
            self._approval = None

    async def _obtain_context(self) -> Optional[str]:
        """受限页面返回固定说明；脚本缺失时注入一次并重试一次，仍失败返回 None"""
        self._status("Scanning page...")
        if self.surface.is_restricted():
            logger.info("受限页面，跳过扫描: %s", self.surface.url)
            return RESTRICTED_CONTEXT

        for attempt in range(2):
            try:
                return await self.surface.get_context()
            except CollaboratorUnavailableError as exc:
                if attempt > 0:
                    logger.error("重试后扫描仍失败: %s", exc)
                    break
                logger.info("页面脚本不可用（%s），重新注入...", exc)
                try:
                    await self.surface.inject()
                except InjectionError as inject_exc:
                    logger.warning("注入失败: %s", inject_exc)
                    break
                await asyncio.sleep(self.config.inject_delay)
        return None

    async def _execute(self, action: Action) -> bool:
        """执行动作，返回是否发生了外部可见的交互"""
        kind = action.kind
        config = self.config

        if kind == ActionKind.SAVE_MEMORY:
            self._save_memory(action)
            await asyncio.sleep(MEMORY_STEP_DELAY)
            return False

        if kind == ActionKind.WAIT:
            wait_ms = self._wait_ms(action.value)
            self._status(f"Waiting {wait_ms}ms...")
            await asyncio.sleep(wait_ms / 1000)
            return False

        if kind == ActionKind.CREATE_PLAN:
            plan = action.value or ""
            self.add_message(Role.AGENT, f"Plan:\n{plan}")
            self.background.update_memory("plan", plan)
            return False

        if kind == ActionKind.TOOL_CALL:
            await self._call_tool(action)
            return True

        if kind in (ActionKind.NAVIGATE, ActionKind.OPEN_TAB):
            try:
                if kind == ActionKind.NAVIGATE:
                    self.add_message(Role.AGENT, f"Navigating to {action.value}...")
                    await self.surface.navigate(action.value)
                else:
                    self.add_message(Role.AGENT, f"Opening new tab: {action.value}")
                    await self.surface.open_tab(action.value)
            except PlaywrightError as exc:
                logger.warning("❌ %s 失败: %s", kind.value, exc)
                self.add_message(Role.AGENT, f"Error executing action: {exc}.")
                return False
            await asyncio.sleep(config.step_delay)
            return True

        if kind in PAGE_KINDS:
            self.add_message(Role.AGENT, describe_action(action, self.surface.registry))
            result = await self._execute_on_page(action)
            if result.success:
                self._status("Action executed.")
                if result.data:
                    self.add_message(Role.SYSTEM, f"Extracted page text:\n{result.data[:EXTRACT_LIMIT]}")
            else:
                self.add_message(Role.AGENT, f"Error executing action: {result.error}")
            await asyncio.sleep(config.step_delay)
            return result.success

        self.add_message(Role.AGENT, f"Error executing action: Unknown action type {kind.value}")
        return False

    async def _execute_on_page(self, action: Action) -> ActionResult:
        for attempt in range(2):
            try:
                result = await self.surface.execute_action(action)
            except CollaboratorUnavailableError as exc:
                if attempt > 0:
                    logger.error("重新注入后执行仍失败: %s", exc)
                    break
                logger.info("连接丢失，重新注入页面脚本...")
                try:
                    await self.surface.inject()
                except InjectionError as inject_exc:
                    logger.error("重新注入失败: %s", inject_exc)
                    break
                await asyncio.sleep(REINJECT_DELAY)
                continue
            if result.navigated:
                logger.info("动作导致页面导航，按成功处理")
            return result
        return ActionResult(
            success=False,
            error="Could not execute action on page. Tab might be closed or busy.",
        )

    def _save_memory(self, action: Action):
        payload = action.memory
        if payload is None:
            logger.warning("SAVE_MEMORY 载荷无效，已忽略")
            return
        saved = self.background.update_memory(payload.key, payload.value)["saved"]
        if isinstance(payload.value, (list, tuple)):
            text = f"Batch saved {saved} items to memory:\n```json\n{_pretty(payload.value)}\n```"
        else:
            text = f"Saved to memory:\n```json\n{_pretty(payload.value)}\n```"
        self.add_message(Role.AGENT, text)

    async def _call_tool(self, action: Action):
        call = action.tool_call
        self._status(f"Calling tool {call.tool} ({call.source})...")
        outcome = await self.background.execute_tool(call.source, call.tool, call.args)
        if outcome.get("success"):
            self.add_message(
                Role.AGENT,
                f"Tool result ({call.source}/{call.tool}):\n```json\n{_pretty(outcome.get('result'))}\n```",
            )
        else:
            self.add_message(Role.AGENT, f"Tool error ({call.source}/{call.tool}): {outcome.get('error')}")

    @staticmethod
    def _wait_ms(value: Optional[str]) -> int:
        try:
            wait_ms = float(value) if value else WAIT_DEFAULT_MS
        except (ValueError, OverflowError):
            wait_ms = WAIT_DEFAULT_MS
        if math.isnan(wait_ms):
            wait_ms = WAIT_DEFAULT_MS
        # 先在浮点域截断，inf 也能落在区间内
        return int(max(0, min(wait_ms, WAIT_MAX_MS)))
