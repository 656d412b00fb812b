import asyncio
import json

import pytest

from omni_agent.core import (
    REJECTION_MESSAGE,
    STOP_MESSAGE,
    AgentListener,
    AgentState,
    OmniAgent,
    RunOutcome,
    approval_text,
    describe_action,
)
from omni_agent.errors import DecisionError, McpRpcError
from omni_agent.models import Action, ActionKind, ActionResult, RiskLevel, Role
from omni_agent.surface import RESTRICTED_CONTEXT

from .conftest import FakeSurface


class RecordingListener(AgentListener):
    """Answers approval prompts from a script: 'approve', 'reject' or 'stop'."""

    def __init__(self, answers=()):
        self.agent = None
        self.answers = list(answers)
        self.prompts = []
        self.states = []

    def on_state(self, state):
        self.states.append(state)

    def on_approval_requested(self, action, description):
        self.prompts.append(description)
        answer = self.answers.pop(0)
        if answer == "approve":
            self.agent.approve()
        elif answer == "reject":
            self.agent.reject()
        elif answer == "stop":
            self.agent.stop()


class FakeTools:
    def get_all_tools(self):
        return []

    async def call_tool(self, source, tool, args=None):
        if tool == "broken":
            raise McpRpcError("Unknown tool", -32601)
        return {"content": [{"type": "text", "text": "42"}]}


def build(make_background, decisions, surface=None, config=None, answers=()):
    background = make_background(decisions, config=config, tools=FakeTools())
    surface = surface or FakeSurface()
    listener = RecordingListener(answers)
    agent = OmniAgent(surface, background, listener=listener)
    listener.agent = agent
    return agent, surface, background, listener


def texts(agent, role=None):
    return [m.content for m in agent.conversation.messages if role is None or m.role == role]


def click(target=1, risk="LOW", **extra):
    decision = {"action": "CLICK", "target_id": target, "risk_score": risk}
    decision.update(extra)
    return decision


DONE = {"action": "DONE", "risk_score": "LOW"}


@pytest.mark.asyncio
async def test_click_then_done(make_background):
    agent, surface, _, _ = build(make_background, [
        click(thought="press search", new_title="Search shoes"), DONE,
    ])

    outcome = await agent.run("find shoes")

    assert outcome == RunOutcome.DONE
    assert [a.kind for a in surface.executed] == [ActionKind.CLICK]
    assert agent.conversation.title == "Search shoes"
    assert texts(agent)[0] == "find shoes"
    assert "Thought: press search" in texts(agent)
    assert texts(agent)[-1] == "Task completed."
    assert surface.cleared == 1
    assert agent.state == AgentState.DONE


@pytest.mark.asyncio
async def test_done_without_interaction_adds_no_completion_message(make_background):
    agent, surface, _, _ = build(make_background, [dict(DONE, message="Already visible.")])

    assert await agent.run("what is the price?") == RunOutcome.DONE
    assert "Task completed." not in texts(agent)
    assert texts(agent)[-1] == "Already visible."
    assert surface.executed == []


@pytest.mark.asyncio
async def test_prompt_switches_to_continue_after_first_step(make_background):
    agent, _, background, _ = build(make_background, [click(), DONE])
    await agent.run("find shoes")
    instructions = [i.instruction for i in background.planner.inputs]
    assert instructions == ["find shoes", "Continue achieving the goal."]


@pytest.mark.asyncio
async def test_batch_save_appends_every_item_with_one_message(make_background):
    items = [{"title": "A", "price": "$1"}, {"title": "B", "price": "$2"}, {"title": "C", "price": "$3"}]
    save = {
        "action": "SAVE_MEMORY",
        "value": json.dumps({"key": "products", "value": items}),
        "risk_score": "HIGH",
    }
    agent, _, background, _ = build(make_background, [save, DONE])
    agent.background.config.update(autonomy_mode="manual")

    assert await agent.run("collect prices") == RunOutcome.DONE
    assert background.memory.items("products") == tuple(items)
    saved = [t for t in texts(agent) if "saved" in t.lower()]
    assert len(saved) == 1
    assert saved[0].startswith("Batch saved 3 items to memory:")


@pytest.mark.asyncio
async def test_malformed_memory_payload_is_ignored(make_background):
    save = {"action": "SAVE_MEMORY", "value": "{not json", "message": "Saving."}
    agent, _, background, _ = build(make_background, [save, DONE])

    assert await agent.run("collect") == RunOutcome.DONE
    assert len(background.memory) == 0
    assert "Saving." in texts(agent)


@pytest.mark.asyncio
async def test_manual_mode_approval_executes(make_background, fast_config):
    config = fast_config.updated(autonomy_mode="manual")
    agent, surface, _, listener = build(
        make_background, [click(risk="HIGH"), DONE], config=config, answers=["approve"],
    )

    assert await agent.run("buy") == RunOutcome.DONE
    assert listener.prompts == ["⚠️ [HIGH RISK] CLICK element [1]"]
    assert "Action Approved. Executing..." in texts(agent)
    assert len(surface.executed) == 1
    assert not agent.awaiting_approval


@pytest.mark.asyncio
async def test_rejection_records_user_message_and_rescans(make_background, fast_config):
    config = fast_config.updated(autonomy_mode="semi")
    agent, surface, _, listener = build(
        make_background, [click(risk="HIGH"), click(risk="LOW"), DONE],
        config=config, answers=["reject"],
    )

    assert await agent.run("buy") == RunOutcome.DONE
    assert REJECTION_MESSAGE in texts(agent, Role.USER)
    assert len(surface.executed) == 1
    assert surface.scans == 3
    assert len(listener.prompts) == 1


@pytest.mark.asyncio
async def test_stop_during_approval_ends_run(make_background, fast_config):
    config = fast_config.updated(autonomy_mode="manual")
    agent, surface, _, _ = build(make_background, [click(risk="HIGH")], config=config, answers=["stop"])

    assert await agent.run("buy") == RunOutcome.STOPPED
    assert surface.executed == []
    assert texts(agent)[-1] == STOP_MESSAGE
    assert agent.state == AgentState.STOPPED


@pytest.mark.asyncio
async def test_stop_from_another_task_while_waiting(make_background, fast_config):
    config = fast_config.updated(autonomy_mode="manual")
    agent, surface, _, listener = build(make_background, [click(risk="LOW")], config=config)
    listener.on_approval_requested = lambda action, description: None

    task = asyncio.ensure_future(agent.run("click"))
    for _ in range(50):
        if agent.awaiting_approval:
            break
        await asyncio.sleep(0)
    assert agent.awaiting_approval

    agent.stop()
    assert await task == RunOutcome.STOPPED
    assert surface.executed == []


@pytest.mark.asyncio
async def test_decision_error_ends_run_with_message(make_background):
    agent, _, _, _ = build(make_background, [DecisionError("OpenAI API Key is missing.")])

    assert await agent.run("anything") == RunOutcome.ERROR
    assert texts(agent)[-1] == "Error: OpenAI API Key is missing."
    assert agent.state == AgentState.ERROR


@pytest.mark.asyncio
async def test_restricted_page_uses_fixed_context(make_background):
    surface = FakeSurface(url="chrome://newtab/")
    navigate = {"action": "NAVIGATE", "value": "https://www.google.com", "risk_score": "LOW"}
    agent, _, background, _ = build(make_background, [navigate, DONE], surface=surface)

    assert await agent.run("search") == RunOutcome.DONE
    assert background.planner.inputs[0].context == RESTRICTED_CONTEXT
    assert surface.scans == 0
    assert surface.navigations == ["https://www.google.com"]
    assert "Navigating to https://www.google.com..." in texts(agent)


@pytest.mark.asyncio
async def test_missing_script_is_reinjected_once(make_background):
    surface = FakeSurface()
    surface.context_failures = 1
    agent, _, background, _ = build(make_background, [DONE], surface=surface)

    assert await agent.run("look") == RunOutcome.DONE
    assert surface.injections == 1
    assert surface.scans == 2
    assert background.planner.inputs[0].context == surface.context


@pytest.mark.asyncio
async def test_persistent_scan_failure_hits_step_limit(make_background, fast_config):
    surface = FakeSurface()
    surface.context_failures = 10_000
    config = fast_config.updated(max_steps=3)
    agent, _, background, _ = build(make_background, [DONE], surface=surface, config=config)

    assert await agent.run("look") == RunOutcome.STEP_LIMIT
    assert background.planner.inputs == []
    assert surface.injections == 3


@pytest.mark.asyncio
async def test_execution_reinjects_after_lost_connection(make_background):
    surface = FakeSurface()
    surface.execute_failures = 1
    agent, _, _, _ = build(make_background, [click(), DONE], surface=surface)

    assert await agent.run("click") == RunOutcome.DONE
    assert surface.injections == 1
    assert len(surface.executed) == 1


@pytest.mark.asyncio
async def test_execution_gives_up_after_second_failure(make_background):
    surface = FakeSurface()
    surface.execute_failures = 2
    agent, _, _, _ = build(make_background, [click(), DONE], surface=surface)

    assert await agent.run("click") == RunOutcome.DONE
    assert (
        "Error executing action: Could not execute action on page. Tab might be closed or busy."
        in texts(agent)
    )
    assert "Task completed." not in texts(agent)


@pytest.mark.asyncio
async def test_element_not_found_is_reported_and_loop_continues(make_background):
    surface = FakeSurface()
    surface.results = [ActionResult(success=False, error="Element [ID: 9] not found.")]
    agent, _, _, _ = build(make_background, [click(target=9), DONE], surface=surface)

    assert await agent.run("click") == RunOutcome.DONE
    assert "Error executing action: Element [ID: 9] not found." in texts(agent)
    assert surface.scans == 2


@pytest.mark.asyncio
async def test_extracted_text_becomes_system_message(make_background):
    surface = FakeSurface()
    surface.results = [ActionResult(success=True, data="x" * 5000)]
    extract = {"action": "EXTRACT", "risk_score": "LOW"}
    agent, _, _, _ = build(make_background, [extract, DONE], surface=surface)

    await agent.run("read")
    system = texts(agent, Role.SYSTEM)
    assert len(system) == 1
    assert system[0].startswith("Extracted page text:\n")
    assert len(system[0]) == len("Extracted page text:\n") + 4000


@pytest.mark.asyncio
async def test_tool_call_result_and_error(make_background):
    ok = {"action": "TOOL_CALL", "risk_score": "LOW",
          "value": json.dumps({"tool": "answer", "source": "utils", "args": {}})}
    bad = {"action": "TOOL_CALL", "risk_score": "LOW",
           "value": json.dumps({"tool": "broken", "source": "utils", "args": {}})}
    agent, _, _, _ = build(make_background, [ok, bad, DONE])

    assert await agent.run("ask") == RunOutcome.DONE
    messages = texts(agent)
    assert any(m.startswith("Tool result (utils/answer):") and "42" in m for m in messages)
    assert "Tool error (utils/broken): Unknown tool" in messages


@pytest.mark.asyncio
async def test_open_tab_and_plan(make_background):
    open_tab = {"action": "OPEN_TAB", "value": "https://example.org", "risk_score": "LOW"}
    plan = {"action": "CREATE_PLAN", "value": "1. search\n2. compare", "risk_score": "LOW"}
    agent, surface, background, _ = build(make_background, [plan, open_tab, DONE])

    assert await agent.run("plan it") == RunOutcome.DONE
    assert surface.opened_tabs == ["https://example.org"]
    assert background.memory.items("plan") == ("1. search\n2. compare",)
    assert "Plan:\n1. search\n2. compare" in texts(agent)


@pytest.mark.parametrize("value", ["999999", "inf", "1e400"])
@pytest.mark.asyncio
async def test_wait_is_clamped(make_background, monkeypatch, value):
    slept = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds):
        slept.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr("omni_agent.core.asyncio.sleep", fake_sleep)
    wait = {"action": "WAIT", "value": value, "risk_score": "LOW"}
    agent, _, _, _ = build(make_background, [wait, DONE])

    assert await agent.run("wait") == RunOutcome.DONE
    assert 30.0 in slept


@pytest.mark.parametrize(
    "value, expected",
    [(None, 2000), ("500", 500), ("nan", 2000), ("soon", 2000), ("-inf", 0), ("-20", 0), ("inf", 30000)],
)
def test_wait_duration_parsing(value, expected):
    assert OmniAgent._wait_ms(value) == expected


def test_action_descriptions():
    assert describe_action(Action(ActionKind.TYPE, target_id=1, value="shoes")) == 'Typing "shoes"...'
    assert describe_action(Action(ActionKind.CLICK, target_id=4)) == "Clicking element [4]..."
    assert describe_action(Action(ActionKind.SCROLL)) == "Executing SCROLL..."
    assert approval_text(Action(ActionKind.TYPE, risk=RiskLevel.LOW, target_id=2, value="x")) == (
        'TYPE element [2] input "x"'
    )
