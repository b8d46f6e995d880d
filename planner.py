"""
Execution planning.

The Planner asks the language model for an ExecutionPlan. Whatever happens
to that request (model unreachable, prose instead of JSON, half a schema),
a usable plan comes out: either the parsed one, with defaults filled in, or
the deterministic fallback built from the target entities alone.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from contracts import parse_plan_document
from operations import FALLBACK_CATEGORIES, operation_for_category
from prompts import PLANNER_SYSTEM, render_plan_prompt
from providers import ModelProvider
from schemas import ExecutionPlan, ExecutionStep, OperationDescriptor

logger = logging.getLogger(__name__)


def build_fallback_plan(entities: list[str]) -> ExecutionPlan:
    """
    Build a plan without the model.

    For every entity, one step per fallback category (price, market detail,
    related news). No entities gives an empty plan.
    """
    steps = []
    for index, entity in enumerate(entities):
        for category in FALLBACK_CATEGORIES:
            spec = operation_for_category(category)
            steps.append(ExecutionStep(
                id=f"{category.value}_{entity}_{index}",
                provider=spec.provider,
                operation=spec.name,
                parameters=spec.default_parameters(entity),
                target_entity=entity,
                description=f"{spec.description} ({entity})",
            ))

    return ExecutionPlan(steps=tuple(steps), analysis_kind="comprehensive", priority=3)


@dataclass
class PlanDecision:
    """The plan to run and how it was obtained."""
    plan: ExecutionPlan
    used_fallback: bool
    reason: Optional[str] = None
    defaulted_fields: Optional[list[str]] = None


class Planner:
    """
    LLM-backed planner with a deterministic fallback.

    Args:
        provider: Model provider, or None to always use the fallback plan
        temperature: Sampling temperature for the planning call
    """

    def __init__(self, provider: Optional[ModelProvider], temperature: float = 0.1):
        self.provider = provider
        self.temperature = temperature

    async def create_plan(
        self,
        query: str,
        entities: list[str],
        available_operations: dict[str, list[OperationDescriptor]],
        market_context: str = "",
    ) -> PlanDecision:
        if not entities:
            return PlanDecision(build_fallback_plan([]), used_fallback=True, reason="no target entities")
        if self.provider is None:
            return PlanDecision(build_fallback_plan(entities), used_fallback=True, reason="no model configured")

        prompt = render_plan_prompt(
            query,
            entities,
            {
                provider: [{"name": op.name, "description": op.description} for op in ops]
                for provider, ops in available_operations.items()
            },
            market_context,
        )

        try:
            response = await self.provider.complete(
                messages=[{"role": "user", "content": prompt}],
                system=PLANNER_SYSTEM,
                temperature=self.temperature,
                json_mode=True,
            )
        except Exception as e:
            logger.warning("Planner call failed, using fallback plan: %s", e)
            return PlanDecision(build_fallback_plan(entities), used_fallback=True, reason=f"planner unavailable: {e}")

        outcome = parse_plan_document(response.get("content"))
        if not outcome.ok:
            logger.warning("Planner output unusable, using fallback plan: %s", outcome.error)
            return PlanDecision(build_fallback_plan(entities), used_fallback=True, reason=outcome.error)

        if not outcome.value.steps:
            return PlanDecision(build_fallback_plan(entities), used_fallback=True, reason="planner returned no steps")

        if outcome.defaulted_fields:
            logger.info("Planner document defaulted: %s", ", ".join(outcome.defaulted_fields))
        return PlanDecision(outcome.value, used_fallback=False, defaulted_fields=outcome.defaulted_fields)
