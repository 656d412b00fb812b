"""执行模块：在页面上执行决策产生的动作"""

import asyncio
import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Page

from .errors import CollaboratorUnavailableError, ElementNotFoundError
from .models import Action, ActionKind, ActionResult
from .perception import ElementRegistry

logger = logging.getLogger(__name__)

SCROLL_STEP = 500
TYPE_COMMIT_DELAY_MS = 100
MUTATING_KINDS = frozenset({
    ActionKind.CLICK, ActionKind.TYPE, ActionKind.SCROLL, ActionKind.NAVIGATE,
})

EXECUTOR_JS = r"""
(() => {
    const root = window.__omniAgent = window.__omniAgent || {};

    const highlight = (el) => {
        const original = el.style.border;
        el.style.border = '3px solid #f44336';
        setTimeout(() => { el.style.border = original; }, 1000);
    };

    const read = (el) => el.isContentEditable ? el.textContent : el.value;

    const selectContents = (el) => {
        if (el.isContentEditable) {
            const range = document.createRange();
            range.selectNodeContents(el);
            const selection = window.getSelection();
            selection.removeAllRanges();
            selection.addRange(range);
        } else if (typeof el.select === 'function') {
            el.select();
        }
    };

    const assignValue = (el, text) => {
        if (el.isContentEditable) {
            el.textContent = text;
            return;
        }
        // 绕过框架在实例上拦截的 value setter，直接走原型上的描述符
        let proto = HTMLInputElement.prototype;
        if (el instanceof HTMLTextAreaElement) proto = HTMLTextAreaElement.prototype;
        else if (el instanceof HTMLSelectElement) proto = HTMLSelectElement.prototype;
        const descriptor = Object.getOwnPropertyDescriptor(proto, 'value');
        if (descriptor && descriptor.set) descriptor.set.call(el, text);
        else el.value = text;
    };

    root.executor = {
        click(el) {
            highlight(el);
            el.click();
            el.focus();
            return true;
        },

        typeText(el, text) {
            highlight(el);
            el.focus();
            el.dispatchEvent(new InputEvent('beforeinput', {
                bubbles: true, cancelable: true, inputType: 'insertText', data: text
            }));

            let strategy = null;
            try {
                selectContents(el);
                if (document.execCommand('insertText', false, text) && read(el) === text) {
                    strategy = 'execCommand';
                }
            } catch (e) {
                strategy = null;
            }
            if (!strategy) {
                assignValue(el, text);
                strategy = 'assign';
            }

            el.dispatchEvent(new InputEvent('input', {
                bubbles: true, inputType: 'insertText', data: text
            }));
            try {
                const legacy = document.createEvent('TextEvent');
                legacy.initTextEvent('textInput', true, true, window, text);
                el.dispatchEvent(legacy);
            } catch (e) {
                // 旧式 TextEvent 不受支持
            }
            el.dispatchEvent(new Event('change', { bubbles: true }));
            return { strategy, value: read(el) };
        },

        pressEnter(el) {
            for (const type of ['keydown', 'keypress', 'keyup']) {
                el.dispatchEvent(new KeyboardEvent(type, {
                    bubbles: true, cancelable: true,
                    key: 'Enter', code: 'Enter', keyCode: 13, which: 13, charCode: 13
                }));
            }
            return true;
        },

        submitForm(el) {
            const form = el.form;
            if (!form) return 'none';
            if (form.isConnected && typeof form.requestSubmit === 'function') {
                try {
                    form.requestSubmit();
                    return 'requestSubmit';
                } catch (e) {
                    return 'failed';
                }
            }
            try {
                form.dispatchEvent(new Event('submit', { bubbles: true, cancelable: true }));
                return 'event';
            } catch (e) {
                return 'failed';
            }
        },

        async typeAndCommit(el, text, delayMs) {
            const outcome = this.typeText(el, text);
            await new Promise(resolve => setTimeout(resolve, delayMs));
            this.pressEnter(el);
            // 回车可能已经触发导航或移除了元素
            outcome.submitted = el.isConnected ? this.submitForm(el) : 'detached';
            return outcome;
        }
    };
})();
"""

EXECUTOR_PRESENT_JS = "() => Boolean(window.__omniAgent && window.__omniAgent.executor)"


class NavigationWatch:
    """动作执行期间监听主 frame 导航，作为“导航导致断开”的显式信号"""

    def __init__(self, page: Page):
        self.page = page
        self.navigated = False

    def _on_navigated(self, frame: Frame):
        if frame == self.page.main_frame:
            self.navigated = True

    def __enter__(self) -> "NavigationWatch":
        self.page.on("framenavigated", self._on_navigated)
        return self

    def __exit__(self, *exc_info):
        self.page.remove_listener("framenavigated", self._on_navigated)
        return False


class Controller:
    """执行模块：execute(action, registry) -> ActionResult"""

    def __init__(self, page: Page, settle_delay: float = 1.0):
        self.page = page
        self.settle_delay = settle_delay

    async def execute(self, action: Action, registry: Optional[ElementRegistry]) -> ActionResult:
        """
        执行动作并返回结果。

        元素 ID 解析失败是本次调用的终止错误（不重试），由主循环重新扫描。
        执行中若页面发生导航而报错，视为成功（navigated=True）。
        """
        registry = registry or ElementRegistry.empty(self.page)
        kind = action.kind

        if kind == ActionKind.DONE:
            registry.invalidate()
            await self._clear_overlays()
            return ActionResult(success=True, message="Task completed.")

        if kind not in MUTATING_KINDS and kind != ActionKind.EXTRACT:
            return ActionResult(success=False, error="Unknown action type")

        await self._ensure_helper()

        with NavigationWatch(self.page) as watch:
            try:
                if kind == ActionKind.CLICK:
                    locator = await self._resolve(registry, action.target_id)
                    await locator.evaluate("(el) => window.__omniAgent.executor.click(el)")
                    logger.info("✓ 点击 [%s] %s", action.target_id, registry.label_of(action.target_id))
                elif kind == ActionKind.TYPE:
                    locator = await self._resolve(registry, action.target_id)
                    await self._type(locator, action.value or "")
                elif kind == ActionKind.SCROLL:
                    await self.page.evaluate("(dy) => window.scrollBy(0, dy)", SCROLL_STEP)
                elif kind == ActionKind.NAVIGATE:
                    await self.page.evaluate("(url) => { window.location.href = url; }", action.value)
                elif kind == ActionKind.EXTRACT:
                    text = await self.page.evaluate("() => document.body ? document.body.innerText : ''")
                    return ActionResult(success=True, data=text)
            except ElementNotFoundError as exc:
                logger.warning("❌ %s", exc)
                return ActionResult(success=False, error=str(exc))
            except PlaywrightError as exc:
                if watch.navigated:
                    logger.info("动作触发了页面导航，按成功处理: %s", exc)
                    return ActionResult(success=True, navigated=True)
                logger.warning("❌ 执行 %s 失败: %s", kind.value, exc)
                return ActionResult(success=False, error=str(exc))

        # 粗粒度的等待，给页面时间响应后再进行下一次扫描
        await asyncio.sleep(self.settle_delay)
        return ActionResult(success=True, navigated=watch.navigated)

    async def _ensure_helper(self):
        try:
            present = await self.page.evaluate(EXECUTOR_PRESENT_JS)
        except PlaywrightError as exc:
            raise CollaboratorUnavailableError(str(exc))
        if not present:
            raise CollaboratorUnavailableError("executor script is not present in the page")

    async def _resolve(self, registry: ElementRegistry, element_id: Optional[int]):
        locator = registry.resolve(element_id)
        if await locator.count() == 0:
            # 元素已经从 DOM 中移除
            raise ElementNotFoundError(element_id)
        return locator

    async def _type(self, locator, text: str):
        """
        文本注入：editing command 优先，失败后直接赋值，
        随后依次派发 input / textInput / change 事件，再模拟回车并尝试提交表单。
        整个过程在一次页面调用内完成，回车导致的导航由 NavigationWatch 处理。
        """
        outcome = await locator.evaluate(
            "(el, args) => window.__omniAgent.executor.typeAndCommit(el, args.text, args.delayMs)",
            {"text": text, "delayMs": TYPE_COMMIT_DELAY_MS},
        )
        logger.info("✓ 输入 %r（策略: %s，提交: %s）", text, outcome.get("strategy"), outcome.get("submitted"))
        if outcome.get("submitted") == "failed":
            logger.warning("表单提交失败（表单可能已脱离文档），忽略")

    async def _clear_overlays(self):
        if self.page.is_closed():
            return
        await self.page.evaluate(
            "() => { if (window.__omniAgent && window.__omniAgent.scanner) "
            "window.__omniAgent.scanner.clear(); }"
        )
