"""页面侧桥接：脚本注入、受限页面判断，以及 get-context / execute-action / clear-overlays 消息"""

import asyncio
import logging
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .controller import EXECUTOR_JS, Controller
from .errors import ActionDecodeError, CollaboratorUnavailableError, InjectionError
from .models import Action, ActionResult
from .perception import HELPER_PRESENT_JS, SCANNER_JS, ElementRegistry, Perception

logger = logging.getLogger(__name__)

RESTRICTED_PREFIXES = ("chrome://", "chrome-extension://", "edge://", "about:")

RESTRICTED_CONTEXT = (
    "SYSTEM: Current page is a browser system page (New Tab/Settings). "
    "Visual elements are unavailable. If you need to search or browse, use 'NAVIGATE' "
    "or 'OPEN_TAB' to go to a website such as https://www.google.com."
)
EMPTY_CONTEXT = "SYSTEM: No visible elements were detected on this page."


def is_restricted_url(url: Optional[str]) -> bool:
    return not url or url.startswith(RESTRICTED_PREFIXES)


class BrowserSurface:
    """
    包装一个 Playwright Page，代表可交互的文档表面。
    跨上下文调用都带超时；页面脚本缺失时抛出 CollaboratorUnavailableError。
    """

    def __init__(self, page: Page, perception: Optional[Perception] = None,
                 controller: Optional[Controller] = None, call_timeout: float = 30.0,
                 settle_delay: float = 1.0):
        self.page = page
        self.perception = perception or Perception()
        self.controller = controller or Controller(page, settle_delay=settle_delay)
        self.call_timeout = call_timeout

    @property
    def url(self) -> str:
        return self.page.url

    @property
    def registry(self) -> ElementRegistry:
        return self.perception.registry

    def is_restricted(self) -> bool:
        return is_restricted_url(self.url)

    async def attach(self):
        """注册初始化脚本，之后每次导航都会自动注入，并立即注入当前页面"""
        await self.page.add_init_script(script=SCANNER_JS + EXECUTOR_JS)
        try:
            await self.inject()
        except InjectionError as exc:
            logger.info("当前页面暂不可注入: %s", exc)

    async def inject(self):
        try:
            await self._call(self.page.evaluate(SCANNER_JS + EXECUTOR_JS))
        except (PlaywrightError, CollaboratorUnavailableError) as exc:
            raise InjectionError(str(exc))
        logger.info("页面脚本已注入: %s", self.url)

    async def get_context(self) -> str:
        if self.page.is_closed():
            raise CollaboratorUnavailableError("page is closed")
        try:
            present = await self._call(self.page.evaluate(HELPER_PRESENT_JS))
            if not present:
                raise CollaboratorUnavailableError("scanner script is not present in the page")
            _, text = await self._call(self.perception.scan(self.page))
        except PlaywrightError as exc:
            raise CollaboratorUnavailableError(str(exc))
        return text or EMPTY_CONTEXT

    async def execute_action(self, action: Action) -> ActionResult:
        if self.page.is_closed():
            raise CollaboratorUnavailableError("page is closed")
        return await self._call(self.controller.execute(action, self.perception.registry))

    async def clear_overlays(self):
        try:
            await self._call(self.perception.clear(self.page))
        except (PlaywrightError, CollaboratorUnavailableError) as exc:
            logger.debug("清除标记失败（页面可能已离开）: %s", exc)

    async def navigate(self, url: str):
        self.perception.registry.invalidate()
        await self.page.goto(url, wait_until="domcontentloaded")

    async def open_tab(self, url: str) -> Page:
        """在同一浏览器上下文中后台打开新页面，当前表面不变"""
        page = await self.page.context.new_page()
        await page.goto(url, wait_until="domcontentloaded")
        await self.page.bring_to_front()
        return page

    async def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """按消息类型分发：get-context / execute-action / clear-overlays"""
        kind = message.get("type")
        try:
            if kind == "get-context":
                return {"context": await self.get_context()}
            if kind == "execute-action":
                action = message["action"]
                if not isinstance(action, Action):
                    action = Action.from_dict(action)
                result = await self.execute_action(action)
                return result.to_dict()
            if kind == "clear-overlays":
                await self.clear_overlays()
                return {"success": True}
        except CollaboratorUnavailableError as exc:
            return {"success": False, "error": str(exc), "unavailable": True}
        except ActionDecodeError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": False, "error": f"Unknown message type: {kind}"}

    async def _call(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise CollaboratorUnavailableError(f"page call timed out after {self.call_timeout}s")
