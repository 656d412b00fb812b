"""Shared pytest fixtures and fakes."""

from typing import Any, Callable, Dict, List, Optional

import pytest

from omni_agent.background import Background
from omni_agent.config import AgentConfig, ConfigStore
from omni_agent.errors import CollaboratorUnavailableError, DecisionError
from omni_agent.memory import AgentMemory
from omni_agent.models import Action, ActionResult
from omni_agent.perception import ElementRegistry, Perception
from omni_agent.planner import Planner


class FakeFrame:
    pass


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    async def count(self) -> int:
        handle = self.selector.split('"')[1]
        return 1 if handle in self.page.marked_handles else 0

    async def evaluate(self, expression: str, arg: Any = None):
        self.page.locator_calls.append((self.selector, expression, arg))
        hook = self.page.locator_hook
        if hook is not None:
            return hook(expression, arg)
        if "typeAndCommit" in expression:
            return {"strategy": "execCommand", "value": arg["text"], "submitted": "none"}
        return True


class FakePage:
    """Minimal stand-in for playwright Page used by perception and controller."""

    def __init__(self, candidates: Optional[List[Dict[str, Any]]] = None,
                 url: str = "https://example.com/", body_text: str = "hello world"):
        self.candidates = candidates or []
        self.url = url
        self.body_text = body_text
        self.helper_present = True
        self.marked_handles: List[str] = []
        self.evaluations: List[Any] = []
        self.locator_calls: List[Any] = []
        self.locator_hook: Optional[Callable[[str, Any], Any]] = None
        self.main_frame = FakeFrame()
        self.listeners: Dict[str, List[Callable]] = {}
        self.closed = False
        self.evaluate_error: Optional[Exception] = None

    def is_closed(self) -> bool:
        return self.closed

    def on(self, event: str, handler: Callable):
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable):
        self.listeners.get(event, []).remove(handler)

    def emit_navigation(self):
        for handler in list(self.listeners.get("framenavigated", [])):
            handler(self.main_frame)

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def evaluate(self, expression: str, arg: Any = None):
        self.evaluations.append((expression, arg))
        if self.evaluate_error is not None:
            raise self.evaluate_error
        if "scanner.collect()" in expression:
            self.marked_handles = []
            return [dict(c) for c in self.candidates]
        if "scanner.mark(pairs)" in expression:
            self.marked_handles = [handle for _, handle, _ in arg]
            return len(arg)
        if "scanner.clear()" in expression:
            self.marked_handles = []
            return None
        if "window.__omniAgent.executor)" in expression:
            return self.helper_present
        if "window.__omniAgent.scanner)" in expression:
            return self.helper_present
        if "innerText" in expression:
            return self.body_text
        return None


def candidate(index: int, tag: str, **fields) -> Dict[str, Any]:
    data = {"index": index, "tag": tag}
    data.update(fields)
    return data


class FakeSurface:
    """Page-side stand-in for the orchestration loop."""

    def __init__(self, context: str = '[ID: 1] <button> "Search"', url: str = "https://example.com/"):
        self.url = url
        self.context = context
        self.registry = ElementRegistry.empty()
        self.context_failures = 0
        self.execute_failures = 0
        self.inject_fails = False
        self.injections = 0
        self.scans = 0
        self.executed: List[Action] = []
        self.results: List[ActionResult] = []
        self.navigations: List[str] = []
        self.opened_tabs: List[str] = []
        self.cleared = 0

    def is_restricted(self) -> bool:
        return not self.url or self.url.startswith(("about:", "chrome://"))

    async def inject(self):
        from omni_agent.errors import InjectionError

        self.injections += 1
        if self.inject_fails:
            raise InjectionError("cannot inject")

    async def get_context(self) -> str:
        self.scans += 1
        if self.context_failures:
            self.context_failures -= 1
            raise CollaboratorUnavailableError("no receiver")
        return self.context

    async def execute_action(self, action: Action) -> ActionResult:
        if self.execute_failures:
            self.execute_failures -= 1
            raise CollaboratorUnavailableError("connection lost")
        self.executed.append(action)
        if self.results:
            return self.results.pop(0)
        return ActionResult(success=True)

    async def clear_overlays(self):
        self.cleared += 1

    async def navigate(self, url: str):
        self.navigations.append(url)

    async def open_tab(self, url: str):
        self.opened_tabs.append(url)


class ScriptedPlanner(Planner):
    """Returns pre-built decisions in order; raises DecisionError when exhausted."""

    def __init__(self, decisions: List[Any]):
        super().__init__(client_factory=lambda config: None)
        self.decisions = list(decisions)
        self.inputs = []
        self.configs = []

    async def decide(self, inputs, config):
        self.inputs.append(inputs)
        self.configs.append(config)
        if not self.decisions:
            raise DecisionError("no more scripted decisions")
        decision = self.decisions.pop(0)
        if isinstance(decision, Exception):
            raise decision
        if isinstance(decision, dict):
            return Action.from_dict(decision)
        return decision


@pytest.fixture
def fast_config() -> AgentConfig:
    return AgentConfig(
        api_keys={"openai": "sk-test"},
        autonomy_mode="auto",
        step_delay=0,
        settle_delay=0,
        rescan_delay=0,
        inject_delay=0,
        max_steps=10,
    )


@pytest.fixture
def make_background(fast_config):
    def factory(decisions, config: Optional[AgentConfig] = None, tools=None):
        planner = ScriptedPlanner(decisions)
        store = ConfigStore(config or fast_config)
        return Background(planner, store, AgentMemory(), tools)

    return factory


@pytest.fixture
def perception() -> Perception:
    return Perception()
