# src/autoloop/core/ui_optimizer.py
"""
Fitness-Driven UI Optimizer.

Generates a UI hypothesis for a persona, scores it against a weighted set of
cognitive principles, and revises it from behavioral telemetry. A revision is
kept only when it scores strictly higher than the current UI.
"""
import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml

from autoloop.api.client import GenerationOracle, GenerationOptions, OracleError
from autoloop.core.errors import (
    EvaluationFailure, GenerationFailure, NoAnalysisAvailable, NoTelemetryData, NotInitialized
)
from autoloop.core.models import (
    ABTestResult, ABWinner, CognitivePrinciple, FitnessFunction, FitnessPrinciple,
    OptimizationRecord, OptimizerMetaprompt, OptimizerState, OptimizerStatus, Persona,
    PrincipleViolation, Recommendation, TelemetryAnalysis, TelemetryEvent, UIComponentTree,
    clamp_unit
)
from autoloop.core.retry import RetryPolicy
from autoloop.core.schemas import (
    ComponentPayload, EvaluationPayload, RecommendationsPayload, ViolationsPayload
)
from autoloop.core.structured import request_structured
from autoloop.core.telemetry import filter_in_sequence, summarize_behavior

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
MAX_RECOMMENDATIONS_APPLIED = 3

PRINCIPLE_CRITERIA: Dict[CognitivePrinciple, str] = {
    CognitivePrinciple.COGNITIVE_LOAD:
        "Minimize working memory burden. At most 7±2 items per group. Progressive disclosure for complex flows.",
    CognitivePrinciple.HICKS_LAW:
        "Minimize decision time. Reduce the number of choices. Critical actions offer fewer than 5 options.",
    CognitivePrinciple.FITTS_LAW:
        "Primary actions are large (at least 44x44px) and close to frequent interaction points.",
    CognitivePrinciple.MILLER_LAW:
        "Related items are grouped into chunks of 5-9 items at most.",
    CognitivePrinciple.GESTALT_PROXIMITY:
        "Related elements are visually grouped with clear whitespace boundaries.",
    CognitivePrinciple.PEAK_END_RULE:
        "The most intense moment and the final moment of the journey are optimized for delight.",
    CognitivePrinciple.SERIAL_POSITION:
        "Critical items are placed first or last in lists and menus.",
    CognitivePrinciple.RECOGNITION_VS_RECALL:
        "Minimize recall. Visible options and labelled icons instead of hidden menus.",
}


def default_persona() -> Persona:
    return Persona(
        name="Default User",
        demographics={'age_range': '25-45', 'occupation': 'Knowledge Worker', 'tech_savviness': 'medium'},
        pain_points=['Too many steps', 'Unclear navigation'],
        motivations=['Efficiency', 'Simplicity'],
        goals=['Complete task quickly', 'Understand the system']
    )


def load_persona(reference: Union[Persona, str, None]) -> Persona:
    """Resolve a persona reference: a Persona, a YAML file path, or the default."""
    if isinstance(reference, Persona):
        return reference
    if reference and reference != "default":
        path = Path(reference)
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Loaded persona from {path}")
            return Persona.from_dict(data)
        logger.warning(f"Persona file not found: {reference}; using default persona")
    return default_persona()


def compare_fitness(fitness_a: float, fitness_b: float) -> Tuple[ABWinner, float]:
    """Winner by strict comparison and relative-difference confidence."""
    if fitness_b > fitness_a:
        winner = ABWinner.B
    elif fitness_a > fitness_b:
        winner = ABWinner.A
    else:
        winner = ABWinner.INCONCLUSIVE

    top = max(fitness_a, fitness_b)
    confidence = clamp_unit(abs(fitness_b - fitness_a) / top) if top > 0 else 0.0
    return winner, confidence


class FitnessOptimizer:
    """Owns one OptimizerState; one optimization cycle at a time."""

    def __init__(self, oracle: GenerationOracle, retry_policy: Optional[RetryPolicy] = None):
        self.oracle = oracle
        self.retry_policy = retry_policy or RetryPolicy()
        self._state: Optional[OptimizerState] = None
        self._buffer: List[TelemetryEvent] = []
        self._last_sequence: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self, metaprompt: OptimizerMetaprompt) -> OptimizerState:
        """Generate the initial UI and score it. Raises GenerationFailure."""
        async with self._lock:
            persona = load_persona(metaprompt.target_persona)
            logger.info(f"Initializing optimizer for persona '{persona.name}'")

            ui = await self._generate_ui(metaprompt, persona)
            fitness = await self.calculate_fitness(ui, metaprompt.fitness_function)

            self._buffer = []
            self._last_sequence = {}
            self._state = OptimizerState(
                metaprompt=metaprompt,
                current_ui=ui,
                current_fitness_score=fitness,
                status=OptimizerStatus.DEPLOYED
            )
            logger.info(f"Initial UI: {ui.node_count()} components, fitness {fitness:.3f}")
            return self._state

    async def _generate_ui(self, metaprompt: OptimizerMetaprompt, persona: Persona) -> UIComponentTree:
        prompt = self._build_ui_prompt(metaprompt, persona)
        try:
            payload = await request_structured(
                self.oracle, prompt, ComponentPayload, self.retry_policy,
                GenerationOptions(temperature=0.7), description="UI generation"
            )
        except OracleError as e:
            raise GenerationFailure(f"UI generation failed: {e}") from e
        return payload.to_tree()

    def _build_ui_prompt(self, metaprompt: OptimizerMetaprompt, persona: Persona) -> str:
        principles = "\n".join(
            f"- {p.principle.value} (weight {p.weight}): {p.target_metric} -> {p.target_value}"
            for p in metaprompt.fitness_function.principles
        )
        criteria = "\n".join(f"- {k.value}: {v}" for k, v in PRINCIPLE_CRITERIA.items())
        return f"""# UI GENERATION

OBJECTIVE: {metaprompt.objective}
BUSINESS OBJECTIVE: {metaprompt.business_objective}

TARGET PERSONA:
- Name: {persona.name}
- Demographics: {json.dumps(persona.demographics)}
- Pain points: {', '.join(persona.pain_points)}
- Motivations: {', '.join(persona.motivations)}
- Goals: {', '.join(persona.goals)}

FITNESS FUNCTION (weighted principles to maximize):
{principles}

PRINCIPLES:
{criteria}

TECHNICAL CONSTRAINTS: {json.dumps(metaprompt.technical_constraints)}

Generate a complete UI component tree. Every component id must be unique.

OUTPUT FORMAT (JSON):
{{"id": "root", "type": "div", "props": {{}}, "children": [], "annotations": [{{"principle": "hicks_law", "reasoning": "..."}}]}}
"""

    # ------------------------------------------------------------------
    # Fitness
    # ------------------------------------------------------------------

    async def calculate_fitness(self, ui: UIComponentTree, fitness_function: FitnessFunction) -> float:
        """Weighted mean of per-principle scores, in [0, 1]."""
        scores = await asyncio.gather(
            *(self._score_principle(ui, p) for p in fitness_function.principles)
        )
        weighted = sum(p.weight * s for p, s in zip(fitness_function.principles, scores))
        return clamp_unit(weighted / fitness_function.total_weight)

    async def _score_principle(self, ui: UIComponentTree, principle: FitnessPrinciple) -> float:
        try:
            return await self.evaluate_principle(ui, principle)
        except EvaluationFailure as e:
            logger.warning(f"Evaluation of {principle.principle.value} failed, scoring {NEUTRAL_SCORE}: {e}")
            return NEUTRAL_SCORE

    async def evaluate_principle(self, ui: UIComponentTree, principle: FitnessPrinciple) -> float:
        prompt = f"""Evaluate how well this UI adheres to {principle.principle.value}.

UI STRUCTURE:
{json.dumps(ui.to_dict(), indent=2)}

TARGET METRIC: {principle.target_metric} (target {principle.target_value})

EVALUATION CRITERIA:
{PRINCIPLE_CRITERIA.get(principle.principle, 'General UX best practices.')}

Score from 0.0 (worst) to 1.0 (perfect).

OUTPUT FORMAT (JSON):
{{"score": 0.85, "rationale": "..."}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, EvaluationPayload, self.retry_policy,
                GenerationOptions(temperature=0.2), description=f"{principle.principle.value} evaluation"
            )
        except OracleError as e:
            raise EvaluationFailure(str(e)) from e
        return clamp_unit(payload.score)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def ingest_telemetry(self, events: List[TelemetryEvent]) -> int:
        """Buffer events and track their sessions. Returns events accepted."""
        state = self._require_state()
        accepted, dropped = filter_in_sequence(events, self._last_sequence)
        self._buffer.extend(accepted)

        for event in accepted:
            if event.session_id not in state.telemetry_sessions:
                state.telemetry_sessions.append(event.session_id)

        state.status = OptimizerStatus.MONITORING
        logger.info(f"Ingested {len(accepted)} events ({dropped} dropped), "
                    f"{len(state.telemetry_sessions)} sessions tracked")
        return len(accepted)

    async def analyze_telemetry(self) -> TelemetryAnalysis:
        """Summarize buffered telemetry and ask for violations and recommendations.

        Raises NoTelemetryData when nothing has been ingested.
        """
        state = self._require_state()
        if not self._buffer:
            raise NoTelemetryData("No telemetry events have been ingested")

        async with self._lock:
            patterns = summarize_behavior(self._buffer)
            violations = await self._identify_violations(state, patterns)
            recommendations = await self._recommend_changes(state, patterns, violations)

            analysis = TelemetryAnalysis(
                behavioral_patterns=patterns,
                cognitive_fitness_violations=violations,
                recommended_changes=recommendations,
                session_count=len(state.telemetry_sessions),
                event_count=len(self._buffer)
            )
            state.telemetry_analysis = analysis
            logger.info(f"Analysis: {len(patterns.rage_clicks)} rage-click elements, "
                        f"{len(patterns.hesitation_points)} hesitation points, "
                        f"{len(violations)} violations, {len(recommendations)} recommendations")
            return analysis

    async def _identify_violations(self, state: OptimizerState, patterns) -> List[PrincipleViolation]:
        prompt = f"""Identify cognitive principle violations in this UI, given observed behavior.

UI STRUCTURE:
{json.dumps(state.current_ui.to_dict(), indent=2)}

BEHAVIORAL PATTERNS:
{json.dumps(patterns.to_dict(), indent=2)}

Principles: {', '.join(p.value for p in CognitivePrinciple)}

OUTPUT FORMAT (JSON):
{{"violations": [{{"principle": "hicks_law", "element_id": "...", "violation_description": "...", "severity": "medium"}}]}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, ViolationsPayload, self.retry_policy,
                GenerationOptions(temperature=0.3), description="violation detection"
            )
        except OracleError as e:
            logger.warning(f"Violation detection failed: {e}")
            return []

        return [
            PrincipleViolation(
                principle=v.principle,
                element_id=v.element_id,
                violation_description=v.violation_description,
                severity=v.severity
            )
            for v in payload.violations
        ]

    async def _recommend_changes(self, state: OptimizerState, patterns,
                                 violations: List[PrincipleViolation]) -> List[Recommendation]:
        prompt = f"""Recommend UI changes that fix the observed friction.

UI STRUCTURE:
{json.dumps(state.current_ui.to_dict(), indent=2)}

BEHAVIORAL PATTERNS:
{json.dumps(patterns.to_dict(), indent=2)}

VIOLATIONS:
{json.dumps([v.to_dict() for v in violations], indent=2)}

Change types: reposition, resize, remove, simplify, reword, add_affordance.
Priority 1 is the most important.

OUTPUT FORMAT (JSON):
{{"recommendations": [{{"priority": 1, "element_id": "...", "change_type": "simplify", "rationale": "...",
  "expected_improvement": [{{"principle": "hicks_law", "estimated_score_delta": 0.1}}]}}]}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, RecommendationsPayload, self.retry_policy,
                GenerationOptions(temperature=0.4), description="recommendations"
            )
        except OracleError as e:
            logger.warning(f"Recommendation generation failed: {e}")
            return []

        return [
            Recommendation(
                priority=r.priority,
                element_id=r.element_id,
                change_type=r.change_type,
                rationale=r.rationale,
                expected_improvement=[i.model_dump() for i in r.expected_improvement]
            )
            for r in payload.recommendations
        ]

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    async def optimize_ui(self) -> OptimizationRecord:
        """Apply the top recommendations; keep the revision only if fitness improves.

        Always appends exactly one OptimizationRecord.
        """
        state = self._require_state()
        if state.telemetry_analysis is None:
            raise NoAnalysisAvailable("Run analyze_telemetry() before optimize_ui()")

        async with self._lock:
            state.status = OptimizerStatus.OPTIMIZING
            top = sorted(state.telemetry_analysis.recommended_changes,
                         key=lambda r: r.priority)[:MAX_RECOMMENDATIONS_APPLIED]
            before = state.current_fitness_score
            after = before
            accepted = False

            if not top:
                logger.info("No recommendations to apply")
            else:
                revised = await self._apply_recommendations(state, top)
                if revised is not None:
                    after = await self.calculate_fitness(revised, state.metaprompt.fitness_function)
                    accepted = after > before
                    if accepted:
                        state.current_ui = revised
                        state.current_fitness_score = after
                        logger.info(f"Accepted revision: fitness {before:.3f} -> {after:.3f}")
                    else:
                        logger.info(f"Revision not better ({after:.3f} <= {before:.3f}); keeping current UI")

            record = OptimizationRecord(
                iteration=len(state.optimization_history) + 1,
                recommendations_applied=tuple(top),
                fitness_before=before,
                fitness_after=after,
                accepted=accepted
            )
            state.optimization_history.append(record)
            state.status = OptimizerStatus.DEPLOYED
            return record

    async def _apply_recommendations(self, state: OptimizerState,
                                     recommendations: List[Recommendation]) -> Optional[UIComponentTree]:
        prompt = f"""Revise this UI by applying the recommendations. Keep component ids unique.

CURRENT UI:
{json.dumps(state.current_ui.to_dict(), indent=2)}

RECOMMENDATIONS:
{json.dumps([r.to_dict() for r in recommendations], indent=2)}

Return the complete revised component tree in the same JSON shape.
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, ComponentPayload, self.retry_policy,
                GenerationOptions(temperature=0.5), description="UI revision"
            )
        except OracleError as e:
            logger.warning(f"UI revision failed, keeping current UI: {e}")
            return None
        return payload.to_tree()

    async def run_ab_test(self, variant_b: UIComponentTree, session_count: int = 100) -> ABTestResult:
        """Compare the current UI (A) with a candidate (B) by fitness."""
        state = self._require_state()
        fitness_a = state.current_fitness_score
        fitness_b = await self.calculate_fitness(variant_b, state.metaprompt.fitness_function)
        winner, confidence = compare_fitness(fitness_a, fitness_b)

        sessions_b = session_count // 2
        result = ABTestResult(
            variant_a={'ui': state.current_ui, 'fitness_score': fitness_a,
                       'session_count': session_count - sessions_b},
            variant_b={'ui': variant_b, 'fitness_score': fitness_b, 'session_count': sessions_b},
            winner=winner,
            confidence=confidence
        )
        state.ab_test_results.append(result)
        logger.info(f"A/B test: winner {winner.value} (confidence {confidence:.1%})")
        return result

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _require_state(self) -> OptimizerState:
        if self._state is None:
            raise NotInitialized("Optimizer has not been initialized")
        return self._state

    @property
    def initialized(self) -> bool:
        return self._state is not None

    def get_state(self) -> Optional[OptimizerState]:
        return copy.deepcopy(self._state)

    def get_current_ui(self) -> Optional[UIComponentTree]:
        return self._state.current_ui if self._state else None

    def get_fitness_score(self) -> float:
        return self._state.current_fitness_score if self._state else 0.0

    def get_optimization_history(self) -> Tuple[OptimizationRecord, ...]:
        return tuple(self._state.optimization_history) if self._state else ()

    def reset(self):
        self._state = None
        self._buffer = []
        self._last_sequence = {}
