"""感知模块：扫描页面，为可见元素编号并生成给 LLM 的文本描述"""

import itertools
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from playwright.async_api import Locator, Page

from .errors import ElementNotFoundError
from .models import ElementSnapshot

logger = logging.getLogger(__name__)

ID_ATTRIBUTE = "data-omni-id"
LABEL_MAX_LENGTH = 100
TEXT_MIN_LENGTH = 2
TEXT_MAX_LENGTH = 300
CURRENCY_PATTERN = re.compile(r"(\$|R\$|€|£)\s*\d")

INTERACTIVE_TAGS = frozenset({"a", "button", "input", "select", "textarea"})
HEADING_TAGS = frozenset({"h1", "h2", "h3", "h4"})
GENERIC_TAGS = frozenset({"span", "div"})
INTERACTIVE_ROLES = frozenset({
    "button", "link", "checkbox", "tab", "menuitem", "option", "textbox", "combobox",
})

# 注入页面的扫描脚本：只负责可见性判断、收集原始字段与绘制编号标记，
# 选择策略与 label 推导在 Python 侧完成。
SCANNER_JS = r"""
(() => {
    const root = window.__omniAgent = window.__omniAgent || {};
    const CANDIDATE = 'data-omni-candidate';
    const ID_ATTR = 'data-omni-id';
    const CONTAINER_ID = 'omni-agent-overlay-container';
    const SELECTORS = [
        "a[href]", "button", "input:not([type='hidden'])", "textarea", "select",
        "[role='button']", "[role='link']", "[role='checkbox']", "[role='tab']",
        "[role='menuitem']", "[role='option']", "[role='textbox']", "[role='combobox']",
        "[onclick]", "[contenteditable='']", "[contenteditable='true']",
        "h1", "h2", "h3", "h4", "p", "span",
        "div[class*='price']", "div[class*='valor']"
    ].join(',');

    const isVisible = (el) => {
        const rect = el.getBoundingClientRect();
        if (rect.width === 0 || rect.height === 0) return false;
        for (let node = el; node && node.nodeType === 1; node = node.parentElement) {
            const style = getComputedStyle(node);
            if (style.display === 'none' || style.visibility === 'hidden') return false;
        }
        return true;
    };

    const clear = () => {
        const container = document.getElementById(CONTAINER_ID);
        if (container) container.remove();
        document.querySelectorAll('[' + ID_ATTR + ']').forEach(el => el.removeAttribute(ID_ATTR));
        document.querySelectorAll('[' + CANDIDATE + ']').forEach(el => el.removeAttribute(CANDIDATE));
    };

    root.scanner = {
        collect() {
            clear();
            if (!document.body) return [];
            const out = [];
            let index = 0;
            for (const el of document.body.querySelectorAll(SELECTORS)) {
                if (!isVisible(el)) continue;
                const img = el.querySelector('img');
                el.setAttribute(CANDIDATE, String(index));
                out.push({
                    index,
                    tag: el.tagName.toLowerCase(),
                    text: el.innerText || '',
                    aria_label: el.getAttribute('aria-label') || '',
                    placeholder: el.getAttribute('placeholder') || '',
                    name: el.getAttribute('name') || '',
                    value: typeof el.value === 'string' ? el.value : '',
                    title: el.getAttribute('title') || '',
                    img_alt: img ? (img.alt || '') : '',
                    href: el.tagName === 'A' && el.href ? el.href : '',
                    role: el.getAttribute('role') || '',
                    has_onclick: el.hasAttribute('onclick'),
                    editable: !!el.isContentEditable,
                    input_type: el.getAttribute('type') || ''
                });
                index += 1;
            }
            return out;
        },

        mark(pairs) {
            const container = document.createElement('div');
            container.id = CONTAINER_ID;
            Object.assign(container.style, {
                position: 'absolute', top: '0', left: '0', width: '100%', height: '100%',
                pointerEvents: 'none', zIndex: '2147483647'
            });
            for (const [index, handle, label] of pairs) {
                const el = document.querySelector('[' + CANDIDATE + '="' + index + '"]');
                if (!el) continue;
                el.setAttribute(ID_ATTR, handle);
                const rect = el.getBoundingClientRect();
                const badge = document.createElement('div');
                badge.textContent = label;
                Object.assign(badge.style, {
                    position: 'absolute',
                    left: (rect.left + window.scrollX - 10) + 'px',
                    top: (rect.top + window.scrollY) + 'px',
                    background: '#ffeb3b', color: 'black', border: '1px solid black',
                    fontSize: '10px', fontWeight: 'bold', padding: '1px 3px',
                    borderRadius: '3px', zIndex: '2147483647', opacity: '0.8'
                });
                container.appendChild(badge);
            }
            document.querySelectorAll('[' + CANDIDATE + ']').forEach(el => el.removeAttribute(CANDIDATE));
            if (document.body) document.body.appendChild(container);
            return pairs.length;
        },

        clear
    };
})();
"""

HELPER_PRESENT_JS = "() => Boolean(window.__omniAgent && window.__omniAgent.scanner)"


@dataclass
class Candidate:
    """页面侧收集到的原始元素信息"""
    index: int
    tag: str
    text: str = ""
    aria_label: str = ""
    placeholder: str = ""
    name: str = ""
    value: str = ""
    title: str = ""
    img_alt: str = ""
    href: str = ""
    role: str = ""
    has_onclick: bool = False
    editable: bool = False
    input_type: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def clean_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.strip())[:LABEL_MAX_LENGTH]


def derive_label(candidate: Candidate) -> str:
    """
    按优先级推导 label：
    可见文本 > aria-label > placeholder > name > value > title > 内嵌图片 alt > 可编辑区域
    """
    for source in (
        candidate.text,
        candidate.aria_label,
        candidate.placeholder,
        candidate.name,
        candidate.value,
        candidate.title,
    ):
        label = clean_text(source)
        if label:
            return label
    alt = clean_text(candidate.img_alt)
    if alt:
        return f"Img: {alt}"
    if candidate.editable:
        return "Editable Region"
    return "Unlabeled Element"


def is_selected(candidate: Candidate) -> bool:
    """
    交互元素无条件保留；标题与段落只保留长度在窗口内的；
    span/div 这类通用容器只在看起来像价格时保留（列表页的价格、标题往往不可点击）。
    """
    tag = candidate.tag
    if (tag in INTERACTIVE_TAGS or candidate.role in INTERACTIVE_ROLES or candidate.has_onclick
            or candidate.editable):
        return True

    text = candidate.text.strip()
    within_window = TEXT_MIN_LENGTH <= len(text) <= TEXT_MAX_LENGTH
    priced = bool(CURRENCY_PATTERN.search(text)) and len(text) <= TEXT_MAX_LENGTH
    if tag in HEADING_TAGS or tag == "p":
        return within_window or priced
    if tag in GENERIC_TAGS:
        return priced
    return False


class ElementRegistry:
    """
    一次扫描产生的 id -> 元素 映射。
    下一次扫描（或 clear）之后整个注册表失效，任何 id 都解析为“找不到”。
    """

    def __init__(self, page: Optional[Page], scan_number: int,
                 elements: Optional[List[ElementSnapshot]] = None):
        self.page = page
        self.scan_number = scan_number
        self._elements: Dict[int, ElementSnapshot] = {e.id: e for e in elements or []}
        self._valid = True

    @classmethod
    def empty(cls, page: Optional[Page] = None) -> "ElementRegistry":
        registry = cls(page, 0)
        registry.invalidate()
        return registry

    @property
    def is_valid(self) -> bool:
        return self._valid

    def invalidate(self):
        self._valid = False
        self._elements = {}

    def handle_for(self, element_id: int) -> str:
        return f"{self.scan_number}-{element_id}"

    def get(self, element_id: Any) -> ElementSnapshot:
        if not self._valid or element_id not in self._elements:
            raise ElementNotFoundError(element_id)
        return self._elements[element_id]

    def resolve(self, element_id: Any) -> Locator:
        """返回元素的 Locator；过期或不存在时抛出 ElementNotFoundError"""
        self.get(element_id)
        if self.page is None:
            raise ElementNotFoundError(element_id)
        return self.page.locator(f'[{ID_ATTRIBUTE}="{self.handle_for(element_id)}"]')

    def label_of(self, element_id: Any) -> Optional[str]:
        try:
            return self.get(element_id).label
        except ElementNotFoundError:
            return None

    def elements(self) -> List[ElementSnapshot]:
        return list(self._elements.values())

    def describe(self) -> str:
        return "\n".join(e.describe() for e in self._elements.values())

    def __contains__(self, element_id: Any) -> bool:
        return self._valid and element_id in self._elements

    def __len__(self) -> int:
        return len(self._elements)


class Perception:
    """
    感知模块：持有当前扫描的注册表（arena），每次扫描从 1 开始重新编号。
    """

    def __init__(self):
        self._scan_counter = itertools.count(1)
        self.registry: ElementRegistry = ElementRegistry.empty()

    async def scan(self, page: Page) -> Tuple[ElementRegistry, str]:
        """扫描页面，返回新的注册表和文本描述；旧注册表立即失效"""
        self.registry.invalidate()
        raw = await page.evaluate("() => window.__omniAgent.scanner.collect()")
        candidates = [Candidate.from_dict(item) for item in raw or []]
        scan_number = next(self._scan_counter)

        snapshots: List[ElementSnapshot] = []
        pairs = []
        for candidate in candidates:
            if not is_selected(candidate):
                continue
            element_id = len(snapshots) + 1
            snapshots.append(ElementSnapshot(
                id=element_id,
                tag=candidate.tag,
                label=derive_label(candidate),
                href=candidate.href or None,
                value=candidate.value if candidate.tag == "input" else None,
                input_type=candidate.input_type or None,
            ))
            pairs.append([candidate.index, f"{scan_number}-{element_id}", str(element_id)])

        await page.evaluate("(pairs) => window.__omniAgent.scanner.mark(pairs)", pairs)
        registry = ElementRegistry(page, scan_number, snapshots)
        self.registry = registry
        logger.info("✓ 扫描 #%d: %d 个候选，标注 %d 个元素", scan_number, len(candidates), len(snapshots))
        return registry, registry.describe()

    async def clear(self, page: Optional[Page] = None):
        """移除所有标记并使注册表失效；可重复调用"""
        self.registry.invalidate()
        if page is None or page.is_closed():
            return
        await page.evaluate(
            "() => { if (window.__omniAgent && window.__omniAgent.scanner) "
            "window.__omniAgent.scanner.clear(); }"
        )
