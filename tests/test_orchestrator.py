import asyncio
import logging

import pytest

from autoloop.core.errors import NotInitialized
from autoloop.core.feedback_translator import FeedbackTranslator
from autoloop.core.models import DeploymentStatus, FinalStatus, TelemetryEvent
from autoloop.core.orchestrator import ClosedLoopOrchestrator
from autoloop.core.telemetry import SyntheticTelemetryGenerator

from scripted import (
    CAUSAL, CODE_GEN, EVALUATION, FIX, RECOMMENDATIONS, REQUEST_GEN, REVISION, ROOT_CAUSE,
    SIMULATION, TEST_GEN, UI_GEN, VIOLATIONS, ui_tree
)

CONFIG = {'loop': {'interval_seconds': 0.01, 'performance_score': 0.9}}


def script_loop(oracle, code_versions=("def apply(): return 'v1'",), simulate=None):
    oracle.on(TEST_GEN, {"test_code": "def test_apply():\n    assert apply()"})
    oracle.on(CODE_GEN, *({"content": c} for c in code_versions))
    oracle.on(SIMULATION, simulate or {"passed": True})
    oracle.on(ROOT_CAUSE, "Wrong return value.")
    oracle.on(FIX, {"files": [{"content": "def apply(): return None"}]})
    oracle.on(UI_GEN, ui_tree("root"))
    oracle.on(EVALUATION, lambda prompt: {"score": 0.9 if '"id": "revised"' in prompt else 0.6})
    oracle.on(VIOLATIONS, {"violations": []})
    oracle.on(RECOMMENDATIONS, {"recommendations": [
        {"priority": 1, "element_id": "pay", "change_type": "resize", "rationale": "bigger target"}
    ]})
    oracle.on(REVISION, ui_tree("revised"))
    oracle.on(CAUSAL, {"edges": [], "issues": []})
    oracle.on(REQUEST_GEN, {
        "title": "Reduce checkout drop-off",
        "acceptance_criteria": [{"given": "a shopper at checkout", "when": "they pay", "then": "it succeeds"}],
    })


def friction_events():
    events = []
    for session in ("s1", "s2"):
        events.append(TelemetryEvent(session_id=session, sequence_number=0, event_type="page_view",
                                     page_path="/checkout"))
        events.append(TelemetryEvent(session_id=session, sequence_number=1, event_type="rage_click",
                                     page_path="/checkout", element_id="pay"))
    return events


@pytest.fixture
def orchestrator(oracle, policy):
    return ClosedLoopOrchestrator(oracle, config=CONFIG, retry_policy=policy)


async def test_operations_require_initialization(orchestrator):
    with pytest.raises(NotInitialized):
        await orchestrator.run_iteration([])
    with pytest.raises(NotInitialized):
        await orchestrator.run_simulation(1)
    assert orchestrator.get_state() is None


async def test_initialize_builds_backend_and_ui(oracle, orchestrator, discount_request, metaprompt):
    script_loop(oracle)

    state = await orchestrator.initialize(discount_request, metaprompt)

    assert state.workflow_state.final_status == FinalStatus.SUCCESS
    assert state.optimizer_state.current_ui.id == "root"
    assert state.deployment_status == DeploymentStatus.DEVELOPMENT
    assert state.loop_iteration == 0
    metrics = state.product_metrics
    assert metrics.user_delight == pytest.approx(0.6)
    assert metrics.error_rate == 0.0
    assert metrics.conversion_rate == 0.0
    assert metrics.performance_score == 0.9


async def test_iteration_without_telemetry_is_skipped(oracle, orchestrator, discount_request, metaprompt):
    script_loop(oracle)
    await orchestrator.initialize(discount_request, metaprompt)

    assert await orchestrator.run_iteration([]) is None

    state = orchestrator.get_state()
    assert state.loop_iteration == 1
    assert state.evolution_history == []


async def test_iteration_regenerates_and_optimizes(oracle, orchestrator, discount_request, metaprompt):
    script_loop(oracle)
    await orchestrator.initialize(discount_request, metaprompt)

    record = await orchestrator.run_iteration(friction_events())

    assert record.iteration == 1
    assert record.changes_made[0].startswith("Identified")
    assert any(c.startswith("Regenerated backend 'Reduce checkout drop-off'") for c in record.changes_made)
    assert any(c.startswith("UI optimization accepted") for c in record.changes_made)
    assert record.metrics_before.user_delight == pytest.approx(0.6)
    assert record.metrics_after.user_delight == pytest.approx(0.9)

    state = orchestrator.get_state()
    assert state.workflow_state.request.source_trigger == "feedback_translator"
    assert state.feedback_analysis.generated_request is not None
    assert orchestrator.get_evolution_history() == (record,)


async def test_worse_regeneration_is_rolled_back(oracle, orchestrator, discount_request, metaprompt):
    script_loop(
        oracle,
        code_versions=("def apply(): return 'v1'", "def apply(): return 'v2'"),
        simulate=lambda prompt: {"passed": "'v1'" in prompt, "error_message": "regressed"}
    )
    await orchestrator.initialize(discount_request, metaprompt)

    record = await orchestrator.run_iteration(friction_events())

    state = orchestrator.get_state()
    assert state.deployment_status == DeploymentStatus.ROLLBACK
    assert state.workflow_state.request.id == discount_request.id
    assert state.product_metrics.error_rate == 0.0
    assert any(c.startswith("Rolled back regeneration") for c in record.changes_made)


async def test_simulation_runs_requested_iterations(oracle, orchestrator, discount_request, metaprompt):
    script_loop(oracle)
    await orchestrator.initialize(discount_request, metaprompt)
    generator = SyntheticTelemetryGenerator(seed=11, sessions_per_batch=3, drop_off_probability=1.0)

    state = await orchestrator.run_simulation(3, generator)

    assert state.loop_iteration == 3
    assert [r.iteration for r in state.evolution_history] == [1, 2, 3]


class BrokenTranslator(FeedbackTranslator):
    async def translate(self, analysis):
        raise RuntimeError("translator crashed")


async def test_failed_iteration_does_not_stop_the_simulation(oracle, policy, discount_request, metaprompt):
    script_loop(oracle)
    orchestrator = ClosedLoopOrchestrator(oracle, config=CONFIG, retry_policy=policy,
                                          translator=BrokenTranslator(oracle, policy))
    await orchestrator.initialize(discount_request, metaprompt)

    state = await orchestrator.run_simulation(2, SyntheticTelemetryGenerator(seed=2))

    assert state.loop_iteration == 2
    assert state.evolution_history == []
    assert state.failed_iterations == [
        "Loop iteration 1 failed: translator crashed",
        "Loop iteration 2 failed: translator crashed",
    ]


class StaticSource:
    def __init__(self):
        self.collections = 0

    async def collect(self):
        self.collections += 1
        return []


async def test_loop_runs_until_stopped(oracle, policy, discount_request, metaprompt):
    script_loop(oracle)
    source = StaticSource()
    orchestrator = ClosedLoopOrchestrator(oracle, config=CONFIG, retry_policy=policy, telemetry_source=source)
    await orchestrator.initialize(discount_request, metaprompt)

    task = asyncio.create_task(orchestrator.start_loop())
    await asyncio.sleep(0.05)
    assert orchestrator.is_running
    orchestrator.stop_loop()
    await asyncio.wait_for(task, timeout=1.0)

    assert not orchestrator.is_running
    assert source.collections >= 1
    state = orchestrator.get_state()
    assert state.deployment_status == DeploymentStatus.PRODUCTION
    assert state.loop_iteration == source.collections


async def test_second_start_is_a_no_op(oracle, policy, discount_request, metaprompt, caplog):
    script_loop(oracle)
    source = StaticSource()
    config = {'loop': {'interval_seconds': 30, 'performance_score': 0.9}}
    orchestrator = ClosedLoopOrchestrator(oracle, config=config, retry_policy=policy, telemetry_source=source)
    await orchestrator.initialize(discount_request, metaprompt)

    task = asyncio.create_task(orchestrator.start_loop())
    await asyncio.sleep(0.05)
    with caplog.at_level(logging.WARNING, logger="autoloop.core.orchestrator"):
        await asyncio.wait_for(orchestrator.start_loop(), timeout=0.5)

    assert "Loop already running" in caplog.text
    assert orchestrator.is_running
    assert not task.done()
    assert source.collections == 1

    orchestrator.stop_loop()
    await asyncio.wait_for(task, timeout=1.0)
    assert source.collections == 1
    assert orchestrator.get_state().loop_iteration == 1


async def test_state_is_returned_as_a_snapshot(oracle, orchestrator, discount_request, metaprompt):
    script_loop(oracle)
    await orchestrator.initialize(discount_request, metaprompt)

    snapshot = orchestrator.get_state()
    snapshot.loop_iteration = 99

    assert orchestrator.get_state().loop_iteration == 0


def test_loop_interval_must_be_non_negative(orchestrator):
    orchestrator.set_loop_interval(5)
    assert orchestrator.loop_interval == 5
    with pytest.raises(ValueError):
        orchestrator.set_loop_interval(-1)
