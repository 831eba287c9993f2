# kalina: Planner adapter. Turns the planning capability into a Plan that is always well-formed, and applies the user's pinned tool on top of it.

import logging
from typing import Optional

from .models import Attachment, FileAttachment, Plan, ResolvedPlan, Tool

logger = logging.getLogger("kalina.planner")


def fallback_plan(prompt: str, image: Optional[Attachment]) -> Plan:
    """
    Conservative plan used when the planner fails: search the web, skip the
    thinking narrative, pull code context, and guess the image path from the
    attachment and prompt keywords.
    """
    lower = prompt.lower()
    return Plan(
        needs_web_search=True,
        needs_thinking=False,
        needs_code_context=True,
        is_image_generation_request=image is None and ("generate" in lower or "create" in lower),
        is_image_edit_request=image is not None,
        thoughts=[],
    )


def enforce_exclusivity(plan: Plan) -> Plan:
    """Web search suppresses the simulated reasoning: thinking off, thoughts cleared."""
    if plan.needs_web_search:
        return plan.model_copy(update={"needs_thinking": False, "thoughts": []})
    return plan


async def plan_turn(
    capabilities,
    prompt: str,
    image: Optional[Attachment] = None,
    file: Optional[FileAttachment] = None,
    model: Optional[str] = None,
) -> Plan:
    """Plan a turn. Never raises: any planner failure yields fallback_plan()."""
    try:
        plan = await capabilities.plan(prompt, image, file, model)
        if not isinstance(plan, Plan):
            plan = Plan.model_validate(plan)
    except Exception as e:
        logger.warning("Planner failed (%s); using fallback plan.", e)
        plan = fallback_plan(prompt, image)
    return enforce_exclusivity(plan)


def resolve_plan(plan: Plan, tool: Tool, has_image: bool) -> ResolvedPlan:
    """
    Apply the pinned tool. A pinned tool overrides the planner's booleans
    entirely; image generation vs edit is chosen from whether this turn
    carries an image.
    """
    if tool == Tool.image_generation:
        return ResolvedPlan(
            image_generation=not has_image,
            image_edit=has_image,
            code_context=plan.needs_code_context,
        )
    if tool == Tool.thinking:
        return ResolvedPlan(
            thinking=True,
            code_context=plan.needs_code_context,
            thoughts=list(plan.thoughts),
        )
    if tool == Tool.web_search:
        return ResolvedPlan(web_search=True, code_context=plan.needs_code_context)
    return ResolvedPlan(
        web_search=plan.needs_web_search,
        thinking=plan.needs_thinking,
        code_context=plan.needs_code_context,
        image_generation=not has_image and plan.is_image_generation_request,
        image_edit=has_image and plan.is_image_edit_request,
        thoughts=list(plan.thoughts),
    )
