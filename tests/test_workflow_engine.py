import pytest

from autoloop.api.client import OracleAPIError
from autoloop.core.models import (
    FinalStatus, GenerationRequest, TechnicalConstraints, WorkflowPhase, WorkflowState
)
from autoloop.core.workflow_engine import (
    MAX_HEALING_ITERATIONS, TestDrivenWorkflowEngine, derive_code_path, derive_test_path
)

from scripted import CODE_GEN, FIX, RETRIEVAL, PLANNING, ROOT_CAUSE, SIMULATION, TEST_GEN

TEST_CODE = {"test_code": "def test_discount():\n    assert apply_code(100, 'SAVE10') == 90",
             "description": "applies a discount"}


@pytest.fixture
def engine(oracle, policy):
    return TestDrivenWorkflowEngine(oracle, retry_policy=policy)


def script_generation(oracle, code="def apply_code(total, code):\n    return total"):
    oracle.on(TEST_GEN, TEST_CODE)
    oracle.on(CODE_GEN, {"content": code, "file_path": "src/discounts.py"})


def passes_when(marker):
    """Simulation that passes only once the implementation contains marker."""
    def simulate(prompt):
        if marker in prompt:
            return {"passed": True, "execution_time_ms": 3}
        return {"passed": False, "error_message": "AssertionError: 100 != 90"}
    return simulate


async def test_request_without_criteria_fails_without_tests(oracle, engine):
    request = GenerationRequest(title="Nothing to test", description="", acceptance_criteria=[])

    state = await engine.execute_workflow(request)

    assert state.final_status == FinalStatus.FAILED
    assert state.failed_phase == WorkflowPhase.USER_STORY
    assert state.generated_tests == []
    assert state.phase == WorkflowPhase.COMPLETE
    assert oracle.calls == []


async def test_passing_tests_complete_in_one_iteration(oracle, engine, discount_request):
    script_generation(oracle)
    oracle.on(SIMULATION, {"passed": True})

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.SUCCESS
    assert len(state.generated_tests) == 2
    assert len(state.healing_iterations) == 1
    assert state.healing_iterations[0].converged
    assert all(t.status == "passing" for t in state.generated_tests)
    assert state.error_rate == 0.0
    assert state.phase_history == [
        WorkflowPhase.USER_STORY, WorkflowPhase.RAG_CONTEXT, WorkflowPhase.TEST_GENERATION,
        WorkflowPhase.CODE_GENERATION, WorkflowPhase.SELF_HEALING, WorkflowPhase.COMPLETE,
    ]
    assert oracle.count(ROOT_CAUSE) == 0


async def test_each_criterion_gets_a_test_linked_to_it(oracle, engine, discount_request):
    script_generation(oracle)
    oracle.on(SIMULATION, {"passed": True})

    state = await engine.execute_workflow(discount_request)

    criterion_ids = [c.id for c in discount_request.acceptance_criteria]
    assert [t.acceptance_criterion_id for t in state.generated_tests] == criterion_ids
    assert [t.file_path for t in state.generated_tests] == [
        "tests/test_apply_discount_codes.py", "tests/test_apply_discount_codes_2.py"
    ]
    assert state.generated_tests[0].test_framework == "pytest"


async def test_self_healing_applies_fix_until_tests_pass(oracle, engine, discount_request):
    script_generation(oracle)
    oracle.on(SIMULATION, passes_when("HEALED"))
    oracle.on(ROOT_CAUSE, "The discount is never subtracted.")
    oracle.on(FIX, {"files": [{"content": "def apply_code(total, code):\n    return total * 0.9  # HEALED"}]})

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.SUCCESS
    assert state.error is None
    assert len(state.healing_iterations) == 2
    first = state.healing_iterations[0]
    assert first.applied
    assert first.error_analysis == "The discount is never subtracted."
    assert len(first.failing_tests) == 2
    assert "HEALED" in state.generated_code[0].content
    # The fix keeps the original file path when none is given
    assert state.generated_code[0].file_path == "src/discounts.py"


async def test_healing_is_bounded_and_ends_partial(oracle, engine, discount_request):
    script_generation(oracle)
    oracle.on(SIMULATION, {"passed": False, "error_message": "still wrong"})
    oracle.on(ROOT_CAUSE, "Unknown.")
    oracle.on(FIX, {"files": [{"content": "def apply_code(total, code):\n    return total - 1"}]})

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.PARTIAL
    assert len(state.healing_iterations) == MAX_HEALING_ITERATIONS
    assert oracle.count(FIX) == MAX_HEALING_ITERATIONS - 1
    assert not state.healing_iterations[-1].applied
    assert state.error_rate == 1.0
    assert state.failed_phase is None
    assert state.error == f"2 test(s) still failing after {MAX_HEALING_ITERATIONS} healing iterations"


async def test_failed_fix_leaves_code_unchanged(oracle, policy, discount_request):
    engine = TestDrivenWorkflowEngine(oracle, retry_policy=policy, max_healing_iterations=2)
    original = "def apply_code(total, code):\n    return total"
    script_generation(oracle, code=original)
    oracle.on(SIMULATION, {"passed": False, "error_message": "nope"})
    oracle.on(ROOT_CAUSE, OracleAPIError("down"))
    oracle.on(FIX, OracleAPIError("down"))

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.PARTIAL
    assert state.generated_code[0].content == original
    assert not state.healing_iterations[0].applied
    assert state.healing_iterations[0].error_analysis.startswith("Root cause analysis unavailable")


async def test_simulation_errors_count_as_failures(oracle, policy, discount_request):
    engine = TestDrivenWorkflowEngine(oracle, retry_policy=policy, max_healing_iterations=1)
    script_generation(oracle)
    oracle.on(SIMULATION, OracleAPIError("down"))

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.PARTIAL
    assert {r.error_message for r in state.test_results} == {"Simulation error"}


async def test_test_generation_failure_fails_the_workflow(oracle, engine, discount_request):
    oracle.on(TEST_GEN, {"description": "missing the code"})

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.FAILED
    assert state.failed_phase == WorkflowPhase.TEST_GENERATION
    assert "Test generation failed" in state.error
    assert oracle.count(CODE_GEN) == 0


async def test_code_generation_failure_fails_the_workflow(oracle, engine, discount_request):
    oracle.on(TEST_GEN, TEST_CODE)
    oracle.on(CODE_GEN, OracleAPIError("down"))

    state = await engine.execute_workflow(discount_request)

    assert state.final_status == FinalStatus.FAILED
    assert state.failed_phase == WorkflowPhase.CODE_GENERATION
    assert len(state.generated_tests) == 2


async def test_context_queries_feed_code_generation(oracle, engine, discount_request):
    discount_request.context_queries = ["checkout totals"]
    oracle.on(PLANNING, {"sub_queries": [{"query_text": "order total"}]})
    oracle.on(RETRIEVAL, {"contexts": [
        {"file_path": "src/orders.py", "content": "def order_total(items): ...", "relevance": 0.8}
    ]})
    script_generation(oracle)
    oracle.on(SIMULATION, {"passed": True})

    state = await engine.execute_workflow(discount_request)

    assert len(state.context_results) == 1
    assert state.context_results[0].relevance_score == pytest.approx(0.8)
    code_prompt = next(p for p in oracle.calls if CODE_GEN in p)
    assert "def order_total(items)" in code_prompt


async def test_get_state_returns_a_snapshot(oracle, engine, discount_request):
    script_generation(oracle)
    oracle.on(SIMULATION, {"passed": True})
    await engine.execute_workflow(discount_request)

    snapshot = engine.get_state()
    snapshot.generated_tests.clear()

    assert len(engine.get_state().generated_tests) == 2


def test_workflow_phases_never_regress(discount_request):
    state = WorkflowState(request=discount_request)
    state.advance(WorkflowPhase.CODE_GENERATION)
    with pytest.raises(ValueError):
        state.advance(WorkflowPhase.TEST_GENERATION)


def test_derived_paths_follow_language_conventions():
    python = TechnicalConstraints(language="python")
    typescript = TechnicalConstraints(language="typescript")

    assert derive_test_path("User Login!", python) == "tests/test_user_login.py"
    assert derive_test_path("User Login!", typescript, index=2) == "tests/user-login_3.test.ts"
    assert derive_code_path("User Login!", python) == "src/user_login.py"
    assert derive_code_path("User Login!", typescript) == "src/user-login.ts"
    assert derive_code_path("User Login!", None) == "src/user_login.py"
