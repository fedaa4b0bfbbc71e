# src/autoloop/core/orchestrator.py
"""
Closed-Loop Orchestrator.

Build (workflow engine) -> observe (telemetry) -> translate (feedback) ->
regenerate / re-optimize -> measure, repeated at a fixed interval.

The orchestrator touches the engines only through their public operations.
"""
import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from autoloop.api.client import GenerationOracle
from autoloop.core.errors import IterationFailure, NotInitialized
from autoloop.core.feedback_translator import FeedbackTranslator
from autoloop.core.models import (
    DeploymentStatus, EvolutionRecord, GenerationRequest, IssueType, LoopState,
    OptimizerMetaprompt, ProductMetrics, TelemetryEvent
)
from autoloop.core.retry import RetryPolicy
from autoloop.core.telemetry import SyntheticTelemetryGenerator, TelemetrySource
from autoloop.core.ui_optimizer import FitnessOptimizer
from autoloop.core.workflow_engine import MAX_HEALING_ITERATIONS, TestDrivenWorkflowEngine

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0
DEFAULT_PERFORMANCE_SCORE = 0.85

UI_ISSUE_TYPES = (IssueType.USER_FRICTION, IssueType.COGNITIVE_OVERLOAD)


class ClosedLoopOrchestrator:
    """Owns the loop state; drives the workflow engine, optimizer and translator."""

    def __init__(self, oracle: GenerationOracle,
                 config: Optional[Dict[str, Any]] = None,
                 telemetry_source: Optional[TelemetrySource] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 workflow_engine: Optional[TestDrivenWorkflowEngine] = None,
                 optimizer: Optional[FitnessOptimizer] = None,
                 translator: Optional[FeedbackTranslator] = None):
        config = config or {}
        loop_config = config.get('loop', {})
        workflow_config = config.get('workflow', {})

        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.workflow_engine = workflow_engine or TestDrivenWorkflowEngine(
            oracle, retry_policy=self.retry_policy,
            max_healing_iterations=workflow_config.get('max_healing_iterations', MAX_HEALING_ITERATIONS)
        )
        self.optimizer = optimizer or FitnessOptimizer(oracle, self.retry_policy)
        self.translator = translator or FeedbackTranslator(oracle, self.retry_policy)
        self.telemetry_source = telemetry_source

        self.loop_interval = float(loop_config.get('interval_seconds', DEFAULT_INTERVAL_SECONDS))
        self.performance_score = float(loop_config.get('performance_score', DEFAULT_PERFORMANCE_SCORE))
        self.simulation_delay = float(loop_config.get('simulation_delay', 0.0))

        self._state: Optional[LoopState] = None
        self._stop: Optional[asyncio.Event] = None
        self._running = False
        self._iteration_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Initialization & metrics
    # ------------------------------------------------------------------

    async def initialize(self, request: GenerationRequest, metaprompt: OptimizerMetaprompt) -> LoopState:
        """Build the backend and the initial UI once, then measure."""
        logger.info("Initializing closed loop")
        state = LoopState()

        logger.info("Phase 1: generating backend")
        state.workflow_state = await self.workflow_engine.execute_workflow(request)

        logger.info("Phase 2: generating UI")
        await self.optimizer.initialize(metaprompt)
        state.optimizer_state = self.optimizer.get_state()

        if request.technical_constraints and self.translator.default_constraints is None:
            self.translator.default_constraints = request.technical_constraints

        self._state = state
        state.product_metrics = self.compute_metrics()
        logger.info(f"Initial metrics: {state.product_metrics.to_dict()}")
        return self.get_state()

    def compute_metrics(self) -> ProductMetrics:
        state = self._require_state()

        analysis = state.optimizer_state.telemetry_analysis if state.optimizer_state else None
        conversions = analysis.behavioral_patterns.successful_conversions if analysis else []
        conversion_rate = (sum(c['completionRate'] for c in conversions) / len(conversions)
                           if conversions else 0.0)

        return ProductMetrics(
            user_delight=self.optimizer.get_fitness_score(),
            conversion_rate=conversion_rate,
            error_rate=state.workflow_state.error_rate if state.workflow_state else 1.0,
            performance_score=self.performance_score
        )

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    async def run_iteration(self, events: Optional[List[TelemetryEvent]] = None) -> Optional[EvolutionRecord]:
        """One observe-translate-act cycle.

        Returns the appended EvolutionRecord, or None when the iteration had
        nothing to act on (no telemetry, or no issues and no request).
        """
        state = self._require_state()
        async with self._iteration_lock:
            state.loop_iteration += 1
            iteration = state.loop_iteration
            logger.info(f"Loop iteration {iteration}")

            if events is None:
                events = await self.telemetry_source.collect() if self.telemetry_source else []
            if not events or self.optimizer.ingest_telemetry(events) == 0:
                logger.info(f"Iteration {iteration}: no telemetry, skipping")
                return None

            metrics_before = state.product_metrics
            analysis = await self.optimizer.analyze_telemetry()
            feedback = await self.translator.translate(analysis)
            state.feedback_analysis = feedback
            state.optimizer_state = self.optimizer.get_state()

            if not feedback.issues and feedback.generated_request is None:
                logger.info(f"Iteration {iteration}: no actionable issues")
                return None

            changes = [f"Identified {len(feedback.issues)} issue(s)"]
            if feedback.generated_request is not None:
                changes.append(await self._regenerate_backend(feedback.generated_request))

            if any(issue.type in UI_ISSUE_TYPES for issue in feedback.issues):
                record = await self.optimizer.optimize_ui()
                outcome = "accepted" if record.accepted else "rejected"
                changes.append(f"UI optimization {outcome} "
                               f"(fitness {record.fitness_before:.3f} -> {record.fitness_after:.3f})")
                state.optimizer_state = self.optimizer.get_state()

            state.product_metrics = self.compute_metrics()
            record = EvolutionRecord(
                iteration=iteration,
                changes_made=tuple(changes),
                metrics_before=metrics_before,
                metrics_after=state.product_metrics
            )
            state.evolution_history.append(record)
            logger.info(f"Iteration {iteration} complete: {'; '.join(changes)}")
            return record

    async def _regenerate_backend(self, request: GenerationRequest) -> str:
        """Re-run the workflow; keep the previous build if the error rate gets worse."""
        state = self._state
        previous = state.workflow_state
        result = await self.workflow_engine.execute_workflow(request)

        if previous is not None and result.error_rate > previous.error_rate:
            state.deployment_status = DeploymentStatus.ROLLBACK
            logger.warning(f"Rolling back '{request.title}': error rate "
                           f"{previous.error_rate:.2f} -> {result.error_rate:.2f}")
            return (f"Rolled back regeneration '{request.title}' "
                    f"(error rate {result.error_rate:.2f} > {previous.error_rate:.2f})")

        state.workflow_state = result
        if state.deployment_status == DeploymentStatus.ROLLBACK:
            state.deployment_status = DeploymentStatus.PRODUCTION if self._running else DeploymentStatus.DEVELOPMENT
        return f"Regenerated backend '{request.title}' ({result.final_status.value})"

    async def _run_guarded(self, events: Optional[List[TelemetryEvent]] = None):
        try:
            await self.run_iteration(events)
        except NotInitialized:
            raise
        except Exception as e:
            failure = IterationFailure(self._state.loop_iteration, e)
            self._state.failed_iterations.append(str(failure))
            logger.error(str(failure), exc_info=True)

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    async def start_loop(self):
        """Run iterations until stop_loop(). In-flight Oracle calls finish first."""
        if self._running:
            logger.warning("Loop already running")
            return
        state = self._require_state()

        self._stop = asyncio.Event()
        self._running = True
        state.deployment_status = DeploymentStatus.PRODUCTION
        logger.info(f"Starting optimization loop (interval {self.loop_interval}s)")

        try:
            while not self._stop.is_set():
                await self._run_guarded()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.loop_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Optimization loop stopped")

    def stop_loop(self):
        """Takes effect at the next iteration boundary."""
        if self._stop is not None:
            logger.info("Stopping optimization loop")
            self._stop.set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_simulation(self, iterations: int,
                             generator: Optional[SyntheticTelemetryGenerator] = None) -> LoopState:
        """Run iterations fed by synthetic telemetry instead of the live source."""
        self._require_state()
        generator = generator or SyntheticTelemetryGenerator()
        logger.info(f"Running simulation for {iterations} iterations")

        for i in range(iterations):
            logger.info(f"Simulation iteration {i + 1}/{iterations}")
            await self._run_guarded(generator.generate())
            if self.simulation_delay > 0 and i < iterations - 1:
                await asyncio.sleep(self.simulation_delay)

        logger.info("Simulation complete")
        return self.get_state()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _require_state(self) -> LoopState:
        if self._state is None:
            raise NotInitialized("Closed loop not initialized. Call initialize() first.")
        return self._state

    def get_state(self) -> Optional[LoopState]:
        return copy.deepcopy(self._state)

    def get_evolution_history(self) -> Tuple[EvolutionRecord, ...]:
        return tuple(self._state.evolution_history) if self._state else ()

    def get_current_metrics(self) -> ProductMetrics:
        return self._state.product_metrics if self._state else ProductMetrics()

    def set_loop_interval(self, seconds: float):
        if seconds < 0:
            raise ValueError("Loop interval must be non-negative")
        self.loop_interval = seconds

    def reset(self):
        self.stop_loop()
        self._state = None
        self.workflow_engine.reset()
        self.optimizer.reset()
        self.translator.reset()
