"""
The orchestration engine: one session from query to persisted report.

WHAT THIS FILE DOES:
-------------------
    query
      -> extract target entities
      -> connect providers (fatal only if none connects)
      -> gather news context
      -> Planner builds the ExecutionPlan (or the fallback plan)
      -> loop: execute step i -> analyze step i -> execute step i+1 ...
      -> Synthesizer builds the final summary
      -> SessionStore.put(session)

STATE MACHINE:
-------------
    PLANNING -> EXECUTING(0) -> ANALYZING(0) -> EXECUTING(1) -> ...
             -> SYNTHESIZING -> DONE

The loop is driven by should_continue(), a pure function of the plan, the
step index and whether a step was just executed. The index only moves
forward, one step per execution, so a plan with N steps is executed exactly
N times (fewer if the session is cancelled) and the loop always ends.

FAILURES ARE DATA:
-----------------
execute_step() never raises. Transport, protocol, provider and timeout
errors become the step's result and a line in the session's error log, and
the loop moves on. A session report is produced under any partial failure.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from analyzer import (
    AnalysisContext,
    Analyzer,
    Synthesizer,
    aggregate_summary,
    extract_articles,
    generate_market_context,
)
from config import Config
from connections import ConnectionManager
from errors import NoProvidersAvailableError, OperationTimeoutError, OrchestrationError
from operations import TICKER_CATEGORIES, OperationCategory, get_operation
from planner import Planner
from providers import ModelProvider
from schemas import AnalysisResult, ExecutionPlan, ExecutionStep, FinalSummary, SessionStatus, StepOutcome
from session import Session, SessionStore
from symbols import extract_entities, normalize_entity

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    ANALYZING = "analyzing"
    SYNTHESIZING = "synthesizing"
    DONE = "done"


def should_continue(plan: ExecutionPlan, current_index: int, just_completed: bool) -> OrchestratorState:
    """
    Decide the next state of the step loop.

    Args:
        plan: The plan being executed
        current_index: Index of the next step to execute
        just_completed: True right after a step was executed

    Returns:
        ANALYZING if the previous step just finished and is completed,
        DONE if every step has been executed, EXECUTING otherwise
    """
    if just_completed and 0 < current_index <= len(plan.steps) and plan.steps[current_index - 1].completed:
        return OrchestratorState.ANALYZING
    if current_index >= len(plan.steps):
        return OrchestratorState.DONE
    return OrchestratorState.EXECUTING


@dataclass
class SessionRun:
    """Mutable state of one session, owned by the task running it."""
    session: Session
    plan: ExecutionPlan = field(default_factory=ExecutionPlan)
    context: AnalysisContext = field(default_factory=AnalysisContext)
    results: list[AnalysisResult] = field(default_factory=list)
    executed_steps: int = 0
    cancelled: bool = False


class Orchestrator:
    """
    Runs analysis sessions against an explicit ConnectionManager.

    Args:
        connections: Provider connections (owned by the caller)
        planner: Builds execution plans
        analyzer: Judges individual step results
        synthesizer: Builds the final summary
        store: Where finished sessions are persisted (optional)
        step_timeout: Upper bound in seconds for one provider call
        context_news_limit: Max articles per entity kept as context
    """

    def __init__(
        self,
        connections: ConnectionManager,
        planner: Planner,
        analyzer: Analyzer,
        synthesizer: Synthesizer,
        store: Optional[SessionStore] = None,
        step_timeout: float = 30.0,
        context_news_limit: int = 10,
    ):
        self.connections = connections
        self.planner = planner
        self.analyzer = analyzer
        self.synthesizer = synthesizer
        self.store = store
        self.step_timeout = step_timeout
        self.context_news_limit = context_news_limit

    @classmethod
    def from_config(
        cls,
        config: Config,
        connections: ConnectionManager,
        model_provider: Optional[ModelProvider],
        store: Optional[SessionStore] = None,
    ) -> "Orchestrator":
        return cls(
            connections,
            Planner(model_provider, temperature=config.llm.planning_temperature),
            Analyzer(model_provider, temperature=config.llm.analysis_temperature),
            Synthesizer(model_provider, temperature=config.llm.synthesis_temperature),
            store=store,
            step_timeout=config.orchestrator.step_timeout,
            context_news_limit=config.orchestrator.context_news_limit,
        )

    # =========================================================================
    # SESSION
    # =========================================================================

    async def run(
        self,
        query: str,
        entities: Optional[list[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Session:
        """
        Run one complete session.

        Args:
            query: Free-text question
            entities: Explicit target entities; extracted from the query if None
            cancel_event: When set, no further steps are started

        Returns:
            The finished session, always with a summary

        Raises:
            NoProvidersAvailableError: Not a single provider could be connected
        """
        session = Session.new(query)

        connect_results = await self.connections.connect_all()
        if not any(result.success for result in connect_results.values()):
            raise NoProvidersAvailableError({
                name: result.error or "unknown error"
                for name, result in connect_results.items()
            })

        run = SessionRun(session=session)
        run.context.query = query
        session.target_entities = list(entities) if entities is not None else extract_entities(query)
        logger.info("Session %s: entities %s", session.session_id, session.target_entities or "none")

        await self.gather_context(run)

        decision = await self.planner.create_plan(
            query,
            session.target_entities,
            self.connections.available_operations(),
            run.context.market_context,
        )
        run.plan = decision.plan
        session.set_plan(decision.plan, fallback=decision.used_fallback)
        if decision.used_fallback:
            session.add_transcript_entry("plan_fallback", {"reason": decision.reason})

        await self.run_plan(run, cancel_event)

        session.set_state(OrchestratorState.SYNTHESIZING.value)
        summary = await self.synthesize(run)
        session.plan = run.plan.model_dump(mode="json")
        session.set_summary(summary)
        session.set_state(OrchestratorState.DONE.value)

        if run.cancelled:
            session.finish(SessionStatus.CANCELLED)
        elif session.step_errors:
            session.finish(SessionStatus.PARTIAL)
        else:
            session.finish(SessionStatus.COMPLETED)

        self._persist(session)
        return session

    async def run_plan(self, run: SessionRun, cancel_event: Optional[asyncio.Event] = None) -> None:
        """Drive the execute/analyze loop until DONE or cancellation."""
        index = 0
        just_completed = False

        while True:
            state = should_continue(run.plan, index, just_completed)

            if state is OrchestratorState.DONE:
                break

            if state is OrchestratorState.ANALYZING:
                run.session.set_state(state.value)
                await self.analyze_step(run, index - 1)
                just_completed = False
                continue

            if cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                run.session.add_transcript_entry("cancelled", {
                    "executed_steps": index,
                    "skipped_steps": len(run.plan.steps) - index,
                })
                logger.info("Session %s cancelled after %d steps", run.session.session_id, index)
                break

            run.session.set_state(state.value)
            await self.execute_step(run, index)
            index += 1
            just_completed = True

    # =========================================================================
    # STEPS
    # =========================================================================

    @staticmethod
    def normalize_arguments(step: ExecutionStep) -> dict:
        """Provider-facing arguments for a step, with the entity alias resolved."""
        alias = step.target_entity
        spec = get_operation(step.operation)
        if spec is not None and spec.category in TICKER_CATEGORIES:
            return spec.build_arguments(step.parameters, alias, alias.upper())

        canonical = normalize_entity(alias) if alias else ""
        if spec is not None:
            return spec.build_arguments(step.parameters, alias, canonical)

        arguments = dict(step.parameters)
        if alias:
            arguments["symbol"] = canonical
        return arguments

    async def execute_step(self, run: SessionRun, index: int) -> StepOutcome:
        """Execute one step. Never raises; failures become the step's result."""
        step = run.plan.steps[index]
        started = time.monotonic()

        try:
            arguments = self.normalize_arguments(step)
            await self.connections.connect(step.provider)
            payload = await asyncio.wait_for(
                self.connections.execute_operation(step.provider, step.operation, arguments),
                timeout=self.step_timeout,
            )
            outcome = StepOutcome.succeeded(payload, _elapsed_ms(started))
        except asyncio.TimeoutError:
            error = OperationTimeoutError(
                f"{step.operation} timed out after {self.step_timeout:g}s",
                provider=step.provider,
            )
            outcome = StepOutcome.failed(error.kind, str(error), _elapsed_ms(started))
        except OrchestrationError as e:
            outcome = StepOutcome.failed(e.kind, str(e), _elapsed_ms(started))
        except Exception as e:
            logger.exception("Unexpected error in step %s", step.id)
            outcome = StepOutcome.failed("internal", f"{type(e).__name__}: {e}", _elapsed_ms(started))

        step.record_result(outcome)
        run.executed_steps += 1

        if not outcome.success:
            run.session.record_step_error(step.id, outcome.error_kind, outcome.error)
            logger.warning("Step %s failed (%s): %s", step.id, outcome.error_kind, outcome.error)

        run.session.add_transcript_entry("step_executed", {
            "index": index,
            "step_id": step.id,
            "operation": step.operation,
            "success": outcome.success,
            "duration_ms": outcome.duration_ms,
        })
        return outcome

    async def analyze_step(self, run: SessionRun, index: int) -> Optional[AnalysisResult]:
        """
        Analyze a completed step. Single attempt.

        News payloads extend the shared news context instead of producing a
        judgment. Failed steps and undecodable payloads are skipped.
        """
        step = run.plan.steps[index]
        outcome = step.result
        if outcome is None or not outcome.success:
            return None

        spec = get_operation(step.operation)
        if spec is not None and spec.category in (OperationCategory.NEWS, OperationCategory.CONTEXT):
            articles = extract_articles(outcome.payload)
            run.context.news.extend(articles)
            return None

        try:
            result = await self.analyzer.analyze(outcome.payload, step.operation, step.target_entity, run.context)
        except Exception as e:
            logger.warning("Analyzer failed on step %s: %s", step.id, e)
            return None

        if result is not None:
            run.results.append(result)
            run.session.add_result(result)
        return result

    # =========================================================================
    # CONTEXT AND SYNTHESIS
    # =========================================================================

    async def gather_context(self, run: SessionRun) -> None:
        """Fetch recent news per entity. Failures are logged, never fatal."""
        entities = run.session.target_entities
        spec = get_operation("get_financial_news")

        if spec is not None and self.connections.supports(spec.provider, spec.name):
            for entity in entities:
                arguments = spec.build_arguments(
                    {"pageSize": self.context_news_limit},
                    entity,
                    normalize_entity(entity),
                )
                try:
                    payload = await asyncio.wait_for(
                        self.connections.execute_operation(spec.provider, spec.name, arguments),
                        timeout=self.step_timeout,
                    )
                except (OrchestrationError, asyncio.TimeoutError) as e:
                    message = f"{entity}: {str(e) or 'timed out'}"
                    run.session.context_errors.append(message)
                    logger.warning("News context for %s unavailable: %s", entity, e)
                    continue
                run.context.news.extend(extract_articles(payload)[:self.context_news_limit])

        run.context.market_context = generate_market_context(entities, run.context.news)
        run.session.market_context = run.context.market_context

    async def synthesize(self, run: SessionRun) -> FinalSummary:
        """Build the final summary. Always returns one."""
        try:
            return await self.synthesizer.synthesize(run.results, run.session.query, run.context)
        except Exception as e:
            logger.warning("Synthesizer failed, aggregating judgments: %s", e)
            return aggregate_summary(run.results, note="Synthesis failed.")

    def _persist(self, session: Session) -> None:
        if self.store is None:
            return
        try:
            self.store.put(session)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to persist session %s: %s", session.session_id, e)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
