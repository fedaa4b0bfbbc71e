# src/autoloop/core/workflow_engine.py
"""
Test-Driven Workflow Engine.

Turns a GenerationRequest into tests and an implementation:
USER_STORY -> RAG_CONTEXT -> TEST_GENERATION -> CODE_GENERATION -> SELF_HEALING -> COMPLETE

Test execution is simulated by the Oracle; there is no real test runner.
"""
import asyncio
import copy
import logging
import re
from datetime import datetime
from typing import List, Optional

from autoloop.api.client import GenerationOracle, GenerationOptions, OracleError
from autoloop.core.errors import AutoloopError, GenerationFailure, HealingExhausted, InvalidRequest
from autoloop.core.models import (
    AcceptanceCriterion, ContextResult, FinalStatus, GeneratedCode, GeneratedTest,
    GenerationRequest, HealingIteration, TechnicalConstraints, TestResult,
    WorkflowPhase, WorkflowState
)
from autoloop.core.query_planner import QueryPlanner, extensions_for, extract_dependencies
from autoloop.core.retry import RetryPolicy
from autoloop.core.schemas import CodePayload, FixPayload, GeneratedTestPayload, SimulationPayload
from autoloop.core.structured import request_structured, request_text

logger = logging.getLogger(__name__)

MAX_HEALING_ITERATIONS = 5
DEFAULT_LANGUAGE = "python"
DEFAULT_TEST_FRAMEWORKS = {'python': 'pytest', 'typescript': 'jest', 'javascript': 'jest'}
ROOT_CAUSE_UNAVAILABLE = "Root cause analysis unavailable; regenerating from test failures alone."


# ============================================================================
# FILE PATHS
# ============================================================================

def slugify(title: str, separator: str = "-") -> str:
    slug = re.sub(r"[^a-z0-9]+", separator, title.lower()).strip(separator)
    return slug or "feature"


def _language(constraints: Optional[TechnicalConstraints]) -> str:
    return (constraints.language if constraints and constraints.language else DEFAULT_LANGUAGE).lower()


def _extension(language: str) -> str:
    extensions = extensions_for(language)
    return extensions[0] if extensions else ".txt"


def derive_test_path(title: str, constraints: Optional[TechnicalConstraints], index: int = 0) -> str:
    """tests/test_<slug>.py for Python, tests/<slug>.test.<ext> otherwise."""
    language = _language(constraints)
    suffix = f"_{index + 1}" if index else ""
    if language == "python":
        return f"tests/test_{slugify(title, '_')}{suffix}.py"
    return f"tests/{slugify(title)}{suffix}.test{_extension(language)}"


def derive_code_path(title: str, constraints: Optional[TechnicalConstraints]) -> str:
    language = _language(constraints)
    separator = "_" if language == "python" else "-"
    return f"src/{slugify(title, separator)}{_extension(language)}"


# ============================================================================
# ENGINE
# ============================================================================

class TestDrivenWorkflowEngine:
    """Runs one workflow at a time; owns its WorkflowState exclusively."""

    __test__ = False  # not a pytest class

    def __init__(self, oracle: GenerationOracle,
                 planner: Optional[QueryPlanner] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 max_healing_iterations: int = MAX_HEALING_ITERATIONS):
        self.oracle = oracle
        self.retry_policy = retry_policy or RetryPolicy()
        self.planner = planner or QueryPlanner(oracle, self.retry_policy)
        self.max_healing_iterations = max(1, min(max_healing_iterations, MAX_HEALING_ITERATIONS))
        self._state: Optional[WorkflowState] = None
        self._lock = asyncio.Lock()

    async def execute_workflow(self, request: GenerationRequest) -> WorkflowState:
        """Run every phase and return the finished state.

        Expected negative outcomes are reported through final_status;
        nothing is raised for an invalid request or a failed generation.
        """
        async with self._lock:
            state = WorkflowState(request=request)
            self._state = state
            logger.info(f"Starting workflow for '{request.title}' ({request.id})")

            try:
                await self._phase_user_story(state)
                await self._phase_rag_context(state)
                await self._phase_test_generation(state)
                await self._phase_code_generation(state)
                await self._phase_self_healing(state)
            except (InvalidRequest, GenerationFailure) as e:
                state.failed_phase = state.phase
                state.error = str(e)
                logger.error(f"Workflow failed in {state.phase.value}: {e}")

            # Assigned exactly once, after every phase has returned
            state.final_status = self._resolve_final_status(state)
            state.advance(WorkflowPhase.COMPLETE)
            state.completed_at = datetime.now()

            logger.info(f"Workflow '{request.title}' finished: {state.final_status.value} "
                        f"({state.passing_tests}/{len(state.generated_tests)} tests passing)")
            return state

    def _resolve_final_status(self, state: WorkflowState) -> FinalStatus:
        if state.failed_phase is not None:
            return FinalStatus.FAILED
        if state.test_results and all(r.passed for r in state.test_results):
            return FinalStatus.SUCCESS
        return FinalStatus.PARTIAL

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _phase_user_story(self, state: WorkflowState):
        request = state.request
        if not request.acceptance_criteria:
            raise InvalidRequest("Request must have at least one acceptance criterion")
        logger.info(f"User story: {request.title} ({len(request.acceptance_criteria)} criteria)")

    async def _phase_rag_context(self, state: WorkflowState):
        state.advance(WorkflowPhase.RAG_CONTEXT)
        request = state.request
        options = {'language': _language(request.technical_constraints)}

        for query_text in request.context_queries:
            try:
                result = await self.planner.query(query_text, options)
            except (OracleError, AutoloopError) as e:
                logger.warning(f"Context query '{query_text[:50]}' failed: {e}")
                state.context_results.append(ContextResult(query=query_text))
                continue

            contexts = result.all_contexts()
            relevance = sum(c.relevance for c in contexts) / len(contexts) if contexts else 0.0
            state.context_results.append(ContextResult(
                query=query_text,
                results=contexts,
                relevance_score=relevance,
                synthesized_context=result.synthesized_context
            ))

        logger.info(f"Retrieved {len(state.context_results)} context results")

    async def _phase_test_generation(self, state: WorkflowState):
        state.advance(WorkflowPhase.TEST_GENERATION)
        request = state.request
        constraints = request.technical_constraints
        language = _language(constraints)
        framework = (constraints.test_framework if constraints and constraints.test_framework
                     else DEFAULT_TEST_FRAMEWORKS.get(language, 'pytest'))

        for index, criterion in enumerate(request.acceptance_criteria):
            prompt = self._build_test_prompt(criterion, language, framework)
            try:
                payload = await request_structured(
                    self.oracle, prompt, GeneratedTestPayload, self.retry_policy,
                    GenerationOptions(temperature=0.4), description=f"test generation for {criterion.id}"
                )
            except OracleError as e:
                raise GenerationFailure(f"Test generation failed for criterion {criterion.id}: {e}") from e

            state.generated_tests.append(GeneratedTest(
                acceptance_criterion_id=criterion.id,
                test_framework=framework,
                file_path=payload.file_path or derive_test_path(request.title, constraints, index),
                test_code=payload.test_code,
                description=payload.description or f"Then {criterion.then}"
            ))

        logger.info(f"Generated {len(state.generated_tests)} tests")

    async def _phase_code_generation(self, state: WorkflowState):
        state.advance(WorkflowPhase.CODE_GENERATION)
        request = state.request
        prompt = self._build_code_prompt(state)
        try:
            payload = await request_structured(
                self.oracle, prompt, CodePayload, self.retry_policy,
                GenerationOptions(temperature=0.3), description="code generation"
            )
        except OracleError as e:
            raise GenerationFailure(f"Code generation failed: {e}") from e

        state.generated_code = [GeneratedCode(
            file_path=payload.file_path or derive_code_path(request.title, request.technical_constraints),
            content=payload.content,
            tests_satisfied=[t.id for t in state.generated_tests],
            dependencies=payload.dependencies or extract_dependencies(payload.content)
        )]
        logger.info(f"Generated implementation: {state.generated_code[0].file_path}")

    async def _phase_self_healing(self, state: WorkflowState):
        """Simulate tests, then analyze and fix failures, up to max_healing_iterations times.

        The last iteration only executes the tests: a fix proposed there could
        never be verified, so a bound of N runs at most N - 1 fixes. A run that
        ends with failures keeps the HealingExhausted message in state.error.
        """
        state.advance(WorkflowPhase.SELF_HEALING)

        for iteration in range(1, self.max_healing_iterations + 1):
            results = await self._run_tests(state)
            state.test_results = results
            record = HealingIteration(iteration=iteration, test_results=results)
            state.healing_iterations.append(record)

            failing = record.failing_tests
            if not failing:
                logger.info(f"All {len(results)} tests passing after iteration {iteration}")
                return

            logger.info(f"Healing iteration {iteration}: {len(failing)} failing tests")
            if iteration == self.max_healing_iterations:
                # Nothing left to verify a further fix against
                break

            record.error_analysis = await self._analyze_errors(failing)
            fix = await self._generate_fix(state, failing, record.error_analysis)
            if fix:
                record.proposed_fix = fix
                record.applied = True
                state.generated_code = fix

        exhausted = HealingExhausted(len(state.healing_iterations), len(state.healing_iterations[-1].failing_tests))
        state.error = str(exhausted)
        logger.warning(state.error)

    # ------------------------------------------------------------------
    # Test simulation & healing
    # ------------------------------------------------------------------

    async def _run_tests(self, state: WorkflowState) -> List[TestResult]:
        results = await asyncio.gather(
            *(self._simulate_test(test, state.generated_code) for test in state.generated_tests)
        )
        for test, result in zip(state.generated_tests, results):
            test.status = "passing" if result.passed else "failing"
        return list(results)

    async def _simulate_test(self, test: GeneratedTest, code: List[GeneratedCode]) -> TestResult:
        implementation = "\n\n".join(f"# {c.file_path}\n{c.content}" for c in code)
        prompt = f"""You are a test execution simulator. Decide whether this test passes against the implementation.

TEST ({test.file_path}):
{test.test_code}

IMPLEMENTATION:
{implementation}

OUTPUT FORMAT (JSON):
{{"passed": true, "error_message": null, "stack_trace": null, "execution_time_ms": 0}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, SimulationPayload, self.retry_policy,
                GenerationOptions(temperature=0.2), description=f"simulating {test.id}"
            )
        except OracleError as e:
            logger.warning(f"Test simulation failed for {test.id}: {e}")
            return TestResult(test_id=test.id, passed=False, error_message="Simulation error")

        return TestResult(
            test_id=test.id,
            passed=payload.passed,
            error_message=payload.error_message,
            stack_trace=payload.stack_trace,
            execution_time_ms=payload.execution_time_ms
        )

    async def _analyze_errors(self, failing: List[TestResult]) -> str:
        details = "\n---\n".join(
            f"Test ID: {r.test_id}\nError: {r.error_message}\nStack Trace:\n{r.stack_trace or 'N/A'}"
            for r in failing
        )
        prompt = f"""Analyze these failing tests and identify the root cause.

FAILING TESTS:
{details}

Answer in 2-3 sentences and name patterns shared across failures."""
        try:
            return await request_text(self.oracle, prompt, self.retry_policy,
                                      GenerationOptions(temperature=0.3), description="root cause analysis")
        except OracleError as e:
            logger.warning(f"Root cause analysis failed: {e}")
            return ROOT_CAUSE_UNAVAILABLE

    async def _generate_fix(self, state: WorkflowState, failing: List[TestResult],
                            analysis: str) -> Optional[List[GeneratedCode]]:
        failing_ids = {r.test_id for r in failing}
        tests_by_id = {t.id: t for t in state.generated_tests}
        passing = [t for t in state.generated_tests if t.id not in failing_ids]

        failures = "\n\n".join(
            f"{tests_by_id[r.test_id].test_code if r.test_id in tests_by_id else r.test_id}\n"
            f"Error: {r.error_message}"
            for r in failing
        )
        current = "\n\n".join(f"File: {c.file_path}\n{c.content}" for c in state.generated_code)
        prompt = f"""Fix the implementation so the failing tests pass.

ROOT CAUSE ANALYSIS:
{analysis}

FAILING TESTS:
{failures}

CURRENTLY PASSING TESTS (must keep passing): {', '.join(t.id for t in passing) or 'none'}

CURRENT IMPLEMENTATION:
{current}

OUTPUT FORMAT (JSON):
{{"files": [{{"file_path": "...", "content": "...", "dependencies": []}}]}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, FixPayload, self.retry_policy,
                GenerationOptions(temperature=0.3), description="fix generation"
            )
        except OracleError as e:
            logger.warning(f"Fix generation failed, keeping current implementation: {e}")
            return None

        default_path = state.generated_code[0].file_path if state.generated_code else \
            derive_code_path(state.request.title, state.request.technical_constraints)
        return [
            GeneratedCode(
                file_path=f.file_path or default_path,
                content=f.content,
                tests_satisfied=[t.id for t in state.generated_tests],
                dependencies=f.dependencies or extract_dependencies(f.content)
            )
            for f in payload.files
        ]

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def _build_test_prompt(self, criterion: AcceptanceCriterion, language: str, framework: str) -> str:
        return f"""Write a test for this acceptance criterion (test-first: it must fail without an implementation).

ACCEPTANCE CRITERION:
- Given: {criterion.given}
- When: {criterion.when}
- Then: {criterion.then}

Language: {language}
Test framework: {framework}
Cover edge cases and error scenarios. Use descriptive test names.

OUTPUT FORMAT (JSON):
{{"test_code": "...", "description": "..."}}
"""

    def _build_code_prompt(self, state: WorkflowState) -> str:
        request = state.request
        constraints = request.technical_constraints
        language = _language(constraints)
        tests = "\n\n".join(t.test_code for t in state.generated_tests)

        context_section = ""
        context = "\n\n".join(
            r.synthesized_context or "\n".join(f"File: {c.file_path}\n{c.content}" for c in r.results)
            for r in state.context_results if r.results or r.synthesized_context
        )
        if context:
            context_section = f"CODEBASE CONTEXT:\n{context}\n"
        framework = constraints.framework if constraints and constraints.framework else "N/A"
        standards = ""
        if constraints and constraints.coding_standards:
            standards = f"\nFollow these standards: {', '.join(constraints.coding_standards)}"

        return f"""Write the minimal implementation that makes ALL of these tests pass.

USER STORY: {request.title}
{request.description}

TESTS:
{tests}

{context_section}

Language: {language}
Framework: {framework}{standards}

OUTPUT FORMAT (JSON):
{{"content": "...", "file_path": "...", "dependencies": []}}
"""

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self) -> Optional[WorkflowState]:
        """Snapshot of the most recent run."""
        return copy.deepcopy(self._state)

    def reset(self):
        self._state = None
        self.planner.clear_cache()
