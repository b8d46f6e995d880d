"""
Pydantic schemas for Market Analyst.

WHY THIS FILE EXISTS:
--------------------
Three very different parties produce data the engine has to trust:

1. Tool providers (subprocesses) answer operation calls
2. The language model writes execution plans, judgments and summaries
3. The orchestrator itself records step outcomes and session state

Every one of those documents has a model here, so the rest of the code works
with typed objects instead of loose dicts, and so the language model can be
shown EXACTLY which JSON shape we expect (via model_json_schema()).

HOW DEFAULTS ARE USED:
---------------------
Language-model documents are allowed to be incomplete. Every optional field
has a documented default, and contracts.py substitutes that default when the
field is missing or invalid instead of rejecting the whole document.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator


def _clamp_unit(value: Any) -> float:
    """Coerce a confidence-like value into [0, 1]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"confidence must be a number, got {value!r}")
    if math.isnan(number):
        raise ValueError("confidence must not be NaN")
    return min(1.0, max(0.0, number))


# =============================================================================
# PROVIDER SCHEMAS
# =============================================================================
# What a tool provider advertises at discovery time and what it returns.

class OperationDescriptor(BaseModel):
    """One operation advertised by a tool provider during discovery."""
    name: str = Field(description="Operation name, e.g. 'get_crypto_price'")
    description: str = Field(default="", description="What the operation does")
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON schema of the operation's parameters"
    )


class ContentBlock(BaseModel):
    """A single piece of content in an operation response."""
    type: str = Field(description="Content type; only 'text' carries a payload")
    text: Optional[str] = Field(default=None, description="Text payload")


class OperationResponse(BaseModel):
    """Raw response to an operation call, before it is interpreted."""
    is_error: bool = Field(default=False, description="Remote reported a failure")
    content: list[ContentBlock] = Field(default_factory=list)

    def text(self) -> Optional[str]:
        """Join all text blocks, or None if there are none."""
        parts = [block.text for block in self.content if block.type == "text" and block.text is not None]
        if not parts:
            return None
        return "\n".join(parts)


# =============================================================================
# EXECUTION PLAN SCHEMAS
# =============================================================================

class StepOutcome(BaseModel):
    """
    The result stored on a step: either a payload or an error, never both.

    Failures are data here. A step that timed out is still completed, its
    outcome just says so.
    """
    success: bool
    payload: Optional[str] = Field(default=None, description="Provider text payload")
    error_kind: Optional[str] = Field(
        default=None,
        description="transport, protocol, provider, timeout or internal"
    )
    error: Optional[str] = Field(default=None, description="Error message")
    duration_ms: int = 0

    @classmethod
    def succeeded(cls, payload: str, duration_ms: int = 0) -> "StepOutcome":
        return cls(success=True, payload=payload, duration_ms=duration_ms)

    @classmethod
    def failed(cls, error_kind: str, error: str, duration_ms: int = 0) -> "StepOutcome":
        return cls(success=False, error_kind=error_kind, error=error, duration_ms=duration_ms)


class ExecutionStep(BaseModel):
    """
    One call to one provider operation for one target entity.

    Example:
        ExecutionStep(
            id="price_BTC_0",
            provider="crypto",
            operation="get_crypto_price",
            parameters={"symbol": "bitcoin"},
            target_entity="BTC",
            description="Get current BTC price",
        )
    """
    id: str = Field(description="Unique step identifier")
    provider: str = Field(description="Tool provider that serves the operation")
    operation: str = Field(description="Operation name")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Operation parameters")
    target_entity: str = Field(default="", description="Entity alias this step is about")
    description: str = Field(default="", description="What the step does")
    completed: bool = Field(default=False, description="Whether the step has run")
    result: Optional[StepOutcome] = Field(default=None, description="Outcome once run")

    def record_result(self, outcome: StepOutcome) -> None:
        """Store the outcome and mark the step completed. Only allowed once."""
        if self.result is not None:
            raise RuntimeError(f"Step '{self.id}' already has a result")
        self.result = outcome
        self.completed = True


AnalysisKind = Literal["technical", "fundamental", "sentiment", "comprehensive"]


class ExecutionPlan(BaseModel):
    """
    Ordered steps plus the kind of analysis requested.

    Steps are a tuple: once a plan exists, nothing can be inserted,
    removed or reordered.
    """
    steps: tuple[ExecutionStep, ...] = Field(default=(), description="Ordered steps")
    analysis_kind: AnalysisKind = Field(
        default="comprehensive",
        description="Kind of analysis to perform"
    )
    priority: int = Field(default=3, ge=1, le=5, description="Priority from 1 (low) to 5 (high)")

    def to_planner_document(self) -> dict:
        """Serialize to the shape the planner is asked to produce (no results)."""
        return self.model_dump(mode="json", exclude={"steps": {"__all__": {"result"}}})

    @property
    def completed_count(self) -> int:
        return sum(1 for step in self.steps if step.completed)


class PlannedStep(BaseModel):
    """A step as the planner writes it."""
    id: str
    provider: str
    operation: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    target_entity: str = ""
    description: str = ""


class PlannerDocument(BaseModel):
    """Schema shown to the planner. Mirrors ExecutionPlan without results."""
    steps: list[PlannedStep] = Field(default_factory=list)
    analysis_kind: AnalysisKind = "comprehensive"
    priority: int = Field(default=3, ge=1, le=5)


# =============================================================================
# ANALYSIS SCHEMAS
# =============================================================================

Recommendation = Literal["buy", "sell", "hold"]


class AnalysisResult(BaseModel):
    """
    The analyzer's judgment about one entity, from one step's data.

    is_default marks judgments the analyzer fell back to because the model
    output was unusable. Those carry low confidence and say so in the rationale.
    """
    target_entity: str = Field(description="Entity alias the judgment is about")
    operation: str = Field(default="", description="Operation whose data was analyzed")
    recommendation: Recommendation = Field(default="hold", description="buy, sell or hold")
    confidence: float = Field(default=0.5, description="Confidence between 0 and 1")
    rationale: str = Field(default="", description="Why this recommendation")
    metrics: dict[str, Optional[float]] = Field(
        default_factory=dict,
        description="Numbers extracted from the provider payload"
    )
    is_default: bool = Field(default=False, description="True for fallback judgments")

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        return _clamp_unit(v)


class FinalSummary(BaseModel):
    """The synthesized report over all judgments of a session."""
    overall_sentiment: Literal["bullish", "bearish", "neutral"] = "neutral"
    key_findings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    summary: str = ""
    confidence: float = Field(default=0.5, description="Confidence between 0 and 1")
    risk_level: Literal["low", "medium", "high"] = "medium"
    is_fallback: bool = Field(default=False, description="Built without the model")

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        return _clamp_unit(v)

    @field_validator("key_findings", "recommendations", mode="before")
    @classmethod
    def coerce_string_list(cls, v):
        if isinstance(v, str):
            return [v] if v.strip() else []
        return v


# =============================================================================
# PARSE RESULTS
# =============================================================================

T = TypeVar("T")


@dataclass
class ParseOutcome(Generic[T]):
    """
    Tagged result of parsing a model document.

    Either value is set (possibly with some fields defaulted) or error says
    why nothing usable could be recovered. Parsing never raises.
    """
    value: Optional[T] = None
    error: Optional[str] = None
    defaulted_fields: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None


class SessionStatus(str, Enum):
    """How a session ended."""
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def get_json_schema(model: type[BaseModel]) -> dict:
    """
    Get JSON schema for a Pydantic model.

    Used to tell the language model what structure we expect.
    """
    return model.model_json_schema()


ALL_SCHEMAS = [
    OperationDescriptor,
    ContentBlock,
    OperationResponse,
    StepOutcome,
    ExecutionStep,
    ExecutionPlan,
    PlannedStep,
    PlannerDocument,
    AnalysisResult,
    FinalSummary,
]
