"""
Parse-with-defaults for language model documents.

WHY THIS FILE EXISTS:
--------------------
The planner, analyzer and synthesizer each return a JSON document that is
SUPPOSED to match a schema. In practice models:
- wrap JSON in prose or code fences
- use camelCase ("keyFindings") or older names ("reasoning")
- leave fields out, or fill them with the wrong type

None of that should crash a session. Every function here returns a
ParseOutcome: either a validated model (with the list of fields that had to
fall back to their defaults) or an error string. Nothing raises.

HOW FIELD-BY-FIELD DEFAULTS WORK:
--------------------------------
    {"recommendation": "strong buy", "confidence": 0.8}
        -> recommendation is invalid, confidence is fine
        -> drop recommendation, validate again
        -> AnalysisResult(recommendation="hold", confidence=0.8, ...)
           defaulted_fields=["recommendation", "rationale", ...]

Only optional fields can be defaulted. A missing required field (e.g. a
step without an operation) makes the document unusable.
"""

import json
import re
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from operations import get_operation
from providers import extract_json_from_text
from schemas import (
    AnalysisResult,
    ExecutionPlan,
    ExecutionStep,
    FinalSummary,
    ParseOutcome,
)

M = TypeVar("M", bound=BaseModel)

# Names models tend to use instead of ours
FIELD_SYNONYMS = {
    "tool_name": "operation",
    "tool": "operation",
    "mcp_server": "provider",
    "server": "provider",
    "target_symbol": "target_entity",
    "symbol": "target_entity",
    "analysis_type": "analysis_kind",
    "reasoning": "rationale",
    "confidence_score": "confidence",
    "sentiment": "overall_sentiment",
    "findings": "key_findings",
    "params": "parameters",
    "arguments": "parameters",
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def normalize_keys(data: dict, allowed: set[str]) -> dict:
    """Rename camelCase and synonym keys onto field names. Unknown keys are dropped."""
    normalized = {}
    for key, value in data.items():
        name = _snake(str(key))
        name = name if name in allowed else FIELD_SYNONYMS.get(name, name)
        if name in allowed and name not in normalized:
            normalized[name] = value
    return normalized


def load_document(raw: Union[str, dict, None]) -> tuple[Optional[Any], Optional[str]]:
    """
    Turn model output into a Python object.

    Returns:
        Tuple of (data, error). Exactly one of them is None.
    """
    if isinstance(raw, dict):
        return raw, None
    if not raw or not str(raw).strip():
        return None, "empty response"
    try:
        return json.loads(extract_json_from_text(str(raw))), None
    except json.JSONDecodeError as e:
        return None, f"invalid JSON: {e}"


def validate_with_defaults(
    model: type[M],
    data: Any,
    fixed: Optional[dict] = None,
) -> ParseOutcome[M]:
    """
    Validate a dict against a model, replacing bad optional fields with defaults.

    Args:
        model: Pydantic model to build
        data: Candidate field values (keys are normalized first)
        fixed: Values that override whatever the document says

    Returns:
        ParseOutcome with the model, or with an error if a required field
        is missing or invalid
    """
    if not isinstance(data, dict):
        return ParseOutcome(error=f"{model.__name__}: expected an object, got {type(data).__name__}")

    fields = model.model_fields
    candidate = normalize_keys(data, set(fields))
    if fixed:
        candidate.update(fixed)

    defaulted = [name for name, info in fields.items() if name not in candidate and not info.is_required()]

    # Each pass drops at least one field, so this loop is bounded
    for _ in range(len(fields) + 1):
        try:
            return ParseOutcome(value=model.model_validate(candidate), defaulted_fields=defaulted)
        except ValidationError as e:
            bad = {err["loc"][0] for err in e.errors() if err.get("loc")}
            droppable = [
                name for name in bad
                if name in candidate and name in fields
                and not fields[name].is_required()
                and not (fixed and name in fixed)
            ]
            if not droppable:
                return ParseOutcome(error=f"{model.__name__} failed validation: {_summarize(e)}")
            for name in droppable:
                candidate.pop(name)
                defaulted.append(name)

    return ParseOutcome(error=f"{model.__name__} failed validation")


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors()[:3]:
        location = ".".join(str(part) for part in err.get("loc", ())) or "document"
        parts.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


# =============================================================================
# PLANNER DOCUMENT
# =============================================================================

def parse_plan_document(raw: Union[str, dict, None]) -> ParseOutcome[ExecutionPlan]:
    """
    Build an ExecutionPlan from planner output.

    Steps are validated one by one. A step missing its provider gets the
    provider the operation is registered for; a step missing its id gets a
    positional one. Steps that are still invalid are dropped. If the
    document has steps but none survive, the whole plan is rejected.

    Planner documents never carry results: every step starts not completed.
    """
    data, error = load_document(raw)
    if error:
        return ParseOutcome(error=error)
    if isinstance(data, list):
        data = {"steps": data}
    if not isinstance(data, dict):
        return ParseOutcome(error=f"plan must be an object, got {type(data).__name__}")

    top = normalize_keys(data, set(ExecutionPlan.model_fields))
    raw_steps = top.pop("steps", None)
    if not isinstance(raw_steps, list):
        return ParseOutcome(error="plan has no 'steps' list")

    steps = []
    defaulted = []
    seen_ids = set()
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, dict):
            defaulted.append(f"steps[{index}]")
            continue

        step_data = normalize_keys(raw_step, set(ExecutionStep.model_fields))
        spec = get_operation(str(step_data.get("operation", "")))
        if not step_data.get("provider") and spec is not None:
            step_data["provider"] = spec.provider
        if not step_data.get("id"):
            step_data["id"] = f"step_{index}"
        if step_data["id"] in seen_ids:
            step_data["id"] = f"{step_data['id']}_{index}"

        outcome = validate_with_defaults(
            ExecutionStep,
            step_data,
            fixed={"completed": False, "result": None},
        )
        if not outcome.ok:
            defaulted.append(f"steps[{index}]")
            continue

        seen_ids.add(outcome.value.id)
        steps.append(outcome.value)

    if raw_steps and not steps:
        return ParseOutcome(error="no valid steps in plan")

    outcome = validate_with_defaults(ExecutionPlan, top, fixed={"steps": tuple(steps)})
    if outcome.ok:
        outcome.defaulted_fields = defaulted + outcome.defaulted_fields
    return outcome


# =============================================================================
# ANALYZER / SYNTHESIZER DOCUMENTS
# =============================================================================

def parse_analysis_document(
    raw: Union[str, dict, None],
    target_entity: str,
    operation: str,
    metrics: Optional[dict] = None,
) -> ParseOutcome[AnalysisResult]:
    """Build an AnalysisResult, pinning the fields the engine already knows."""
    data, error = load_document(raw)
    if error:
        return ParseOutcome(error=error)
    return validate_with_defaults(
        AnalysisResult,
        data,
        fixed={
            "target_entity": target_entity,
            "operation": operation,
            "metrics": metrics or {},
            "is_default": False,
        },
    )


def parse_summary_document(raw: Union[str, dict, None]) -> ParseOutcome[FinalSummary]:
    """Build a FinalSummary from synthesizer output."""
    data, error = load_document(raw)
    if error:
        return ParseOutcome(error=error)
    return validate_with_defaults(FinalSummary, data, fixed={"is_fallback": False})
