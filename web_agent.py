"""
OmniAgent - 基于 Playwright + OpenAI 的网页自动化智能体（命令行入口）

运行流程：
  1. 启动 Chromium，打开起始页面并注入页面脚本
  2. 连接配置中的外部工具服务器
  3. 循环执行 "扫描 → 决策 → 风险检查 →（审批）→ 执行"，直到任务完成

依赖安装：
    pip install -e .
    playwright install chromium

运行示例：
    python web_agent.py "搜索 Playwright 并打开官网" --url https://www.bing.com --autonomy semi
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading

from playwright.async_api import async_playwright

from omni_agent import (
    AgentConfig,
    AgentListener,
    AgentMemory,
    Background,
    BrowserSurface,
    ConfigStore,
    McpManager,
    OmniAgent,
    Planner,
)
from omni_agent.core import AgentState
from omni_agent.models import Action, Message

ROLE_PREFIX = {"user": "🧑", "agent": "🤖", "system": "📄"}


class ConsoleListener(AgentListener):
    """把消息打印到终端，需要审批时在终端询问"""

    def __init__(self):
        self.agent = None
        self._prompt_thread = None

    def on_message(self, message: Message):
        print(f"{ROLE_PREFIX.get(message.role.value, '')} {message.content}")

    def on_status(self, text: str):
        print(f"   … {text}")

    def on_state(self, state: AgentState):
        logging.getLogger("web_agent").debug("状态: %s", state.value)

    def on_approval_requested(self, action: Action, description: str):
        # 守护线程阻塞在 input 上，Ctrl+C 停止后进程不必等它返回
        loop = asyncio.get_running_loop()
        self._prompt_thread = threading.Thread(
            target=self._ask, args=(loop, description), name="approval-prompt", daemon=True
        )
        self._prompt_thread.start()

    def _ask(self, loop: asyncio.AbstractEventLoop, description: str):
        try:
            answer = input(f"\n需要审批: {description}\n批准执行? [y/N] ")
        except EOFError:
            answer = ""
        approved = answer.strip().lower() in {"y", "yes"}
        try:
            loop.call_soon_threadsafe(self._answer, approved)
        except RuntimeError:
            # 事件循环已关闭，审批早已随运行结束
            logging.getLogger("web_agent").debug("审批输入到达时事件循环已关闭")

    def _answer(self, approved: bool):
        if approved:
            self.agent.approve()
        else:
            self.agent.reject()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="OmniAgent browser automation")
    parser.add_argument("instruction", help="自然语言任务指令")
    parser.add_argument("--url", default="https://www.bing.com", help="起始网址")
    parser.add_argument("--autonomy", choices=["manual", "semi", "auto"], help="自主模式")
    parser.add_argument("--provider", choices=["openai", "gemini", "anthropic", "ollama"])
    parser.add_argument("--model", help="模型名称")
    parser.add_argument("--headless", action="store_true", help="无头模式运行浏览器")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    return parser.parse_args(argv)


async def run_agent(args) -> int:
    config = AgentConfig.from_env()
    overrides = {}
    if args.autonomy:
        overrides["autonomy_mode"] = args.autonomy
    if args.provider:
        overrides["provider"] = args.provider
    if args.model:
        overrides["model"] = args.model
    if args.headless:
        overrides["headless"] = True
    store = ConfigStore(config.updated(**overrides) if overrides else config)
    config = store.current

    tools = McpManager(rpc_timeout=config.rpc_timeout)
    await tools.sync_servers(config.mcp_servers)

    listener = ConsoleListener()
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=config.headless)
        context = await browser.new_context()
        page = await context.new_page()
        surface = BrowserSurface(page, call_timeout=config.call_timeout,
                                 settle_delay=config.settle_delay)
        await surface.attach()
        await page.goto(args.url)

        background = Background(Planner(), store, AgentMemory(), tools)
        agent = OmniAgent(surface, background, listener=listener)
        listener.agent = agent

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, agent.stop)
        except NotImplementedError:
            pass

        try:
            outcome = await agent.run(args.instruction)
        finally:
            await tools.close()
            await browser.close()

    print(f"\n[Agent] 结束: {outcome.value}（会话: {agent.conversation.title}）")
    return 0 if outcome.value == "done" else 1


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run_agent(args))


if __name__ == "__main__":
    sys.exit(main())
