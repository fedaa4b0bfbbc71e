#!/usr/bin/env python3
"""
Closed Loop Demo - build a feature, generate its UI, then evolve both from
synthetic telemetry.

Requires AUTOLOOP_API_KEY (environment or .env).
"""

import asyncio
from pathlib import Path

import yaml

from autoloop.api.client import DeepSeekOracle
from autoloop.core.config import load_config
from autoloop.core.models import GenerationRequest, OptimizerMetaprompt
from autoloop.core.orchestrator import ClosedLoopOrchestrator
from autoloop.core.telemetry import SyntheticTelemetryGenerator

HERE = Path(__file__).parent


def load_inputs():
    with open(HERE / "requests" / "checkout_discount.yaml", 'r', encoding='utf-8') as f:
        request = GenerationRequest.from_dict(yaml.safe_load(f))

    with open(HERE / "metaprompt.yaml", 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    data['target_persona'] = str(HERE / data['target_persona'])
    return request, OptimizerMetaprompt.from_dict(data)


async def demo_closed_loop():
    print("🔁 autoloop - Closed Loop Demo")
    print("=" * 50)

    request, metaprompt = load_inputs()
    config = load_config()

    async with DeepSeekOracle(config=config) as oracle:
        orchestrator = ClosedLoopOrchestrator(oracle, config=config)

        print("1. Building backend and initial UI...")
        state = await orchestrator.initialize(request, metaprompt)
        print(f"   Workflow: {state.workflow_state.final_status.value}")
        print(f"   UI fitness: {state.product_metrics.user_delight:.3f}")

        print("\n2. Running 3 iterations on synthetic telemetry...")
        generator = SyntheticTelemetryGenerator(seed=7, sessions_per_batch=8, drop_off_probability=0.6)
        state = await orchestrator.run_simulation(3, generator)

    print(f"\n3. Evolution ({len(state.evolution_history)} records):")
    for record in state.evolution_history:
        print(f"   #{record.iteration}:")
        for change in record.changes_made:
            print(f"      • {change}")

    metrics = state.product_metrics
    print("\n📊 Final metrics:")
    print(f"   User delight:    {metrics.user_delight:.3f}")
    print(f"   Conversion rate: {metrics.conversion_rate:.3f}")
    print(f"   Error rate:      {metrics.error_rate:.3f}")

    print("\n🎉 Demo completed!")


if __name__ == "__main__":
    asyncio.run(demo_closed_loop())
