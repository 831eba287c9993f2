import pytest

from kalina.models import Attachment, Plan, ThoughtStep, Tool
from kalina.planner import enforce_exclusivity, fallback_plan, plan_turn, resolve_plan

IMAGE = Attachment(base64="aW1n", mime_type="image/png")
THOUGHTS = [ThoughtStep(phase="Analysis", step="Think it through", concise_step="Thinking it through")]


def test_fallback_plan_guesses_image_generation_from_keywords():
    plan = fallback_plan("Please generate a logo", None)
    assert plan.needs_web_search is True
    assert plan.needs_thinking is False
    assert plan.needs_code_context is True
    assert plan.is_image_generation_request is True
    assert plan.is_image_edit_request is False


def test_fallback_plan_with_image_is_edit():
    plan = fallback_plan("Create a brighter version", IMAGE)
    assert plan.is_image_generation_request is False
    assert plan.is_image_edit_request is True


def test_web_search_suppresses_thinking():
    plan = enforce_exclusivity(Plan(needs_web_search=True, needs_thinking=True, thoughts=THOUGHTS))
    assert plan.needs_thinking is False
    assert plan.thoughts == []


def test_thinking_alone_is_untouched():
    plan = Plan(needs_thinking=True, thoughts=THOUGHTS)
    assert enforce_exclusivity(plan) == plan


class _Planner:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def plan(self, prompt, image=None, file=None, model=None):
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_plan_turn_never_raises():
    plan = await plan_turn(_Planner(error=ValueError("bad json")), "What's new today?")
    assert plan.needs_web_search is True
    assert plan.thoughts == []


@pytest.mark.asyncio
async def test_plan_turn_enforces_exclusivity_on_model_output():
    raw = Plan(needs_web_search=True, needs_thinking=True, thoughts=THOUGHTS)
    plan = await plan_turn(_Planner(result=raw), "Latest news, explained")
    assert plan.needs_web_search is True
    assert plan.needs_thinking is False


@pytest.mark.asyncio
async def test_plan_turn_accepts_dict_output():
    plan = await plan_turn(_Planner(result={"needs_code_context": True}), "fix the loop")
    assert plan.needs_code_context is True


def test_pinned_tools_override_planner():
    plan = Plan(needs_web_search=False, needs_thinking=True, needs_code_context=True, thoughts=THOUGHTS)

    web = resolve_plan(plan, Tool.web_search, has_image=False)
    assert (web.web_search, web.thinking, web.thoughts) == (True, False, [])
    assert web.code_context is True

    thinking = resolve_plan(Plan(needs_web_search=True), Tool.thinking, has_image=False)
    assert (thinking.thinking, thinking.web_search) == (True, False)

    image = resolve_plan(plan, Tool.image_generation, has_image=False)
    assert (image.image_generation, image.image_edit, image.web_search, image.thinking) == (True, False, False, False)

    edit = resolve_plan(plan, Tool.image_generation, has_image=True)
    assert (edit.image_generation, edit.image_edit) == (False, True)


def test_smart_tool_follows_plan_and_checks_attachment():
    plan = Plan(is_image_generation_request=True, is_image_edit_request=True)
    without_image = resolve_plan(plan, Tool.smart, has_image=False)
    assert (without_image.image_generation, without_image.image_edit) == (True, False)
    with_image = resolve_plan(plan, Tool.smart, has_image=True)
    assert (with_image.image_generation, with_image.image_edit) == (False, True)
