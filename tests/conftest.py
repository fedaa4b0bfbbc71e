"""
Shared fixtures: a scripted Oracle, zero-delay retry policies and sample inputs.
"""
import pytest

from autoloop.core.models import (
    AcceptanceCriterion, CognitivePrinciple, FitnessFunction, FitnessPrinciple,
    GenerationRequest, OptimizerMetaprompt, Persona, TechnicalConstraints
)
from autoloop.core.retry import RetryPolicy

from scripted import ScriptedOracle


@pytest.fixture
def oracle() -> ScriptedOracle:
    return ScriptedOracle()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=1, base_delay=0.0)


@pytest.fixture
def retrying_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, base_delay=0.0)


@pytest.fixture
def discount_request() -> GenerationRequest:
    return GenerationRequest(
        title="Apply discount codes",
        description="Shoppers can apply a discount code at checkout.",
        acceptance_criteria=[
            AcceptanceCriterion(given="a cart of 100", when="SAVE10 is applied", then="total is 90"),
            AcceptanceCriterion(given="an expired code", when="it is applied", then="an error is shown"),
        ],
        technical_constraints=TechnicalConstraints(language="python", test_framework="pytest")
    )


@pytest.fixture
def fitness_function() -> FitnessFunction:
    return FitnessFunction(principles=(
        FitnessPrinciple(CognitivePrinciple.HICKS_LAW, 0.6, "decision_time_ms", 2000),
        FitnessPrinciple(CognitivePrinciple.FITTS_LAW, 0.4, "primary_action_size_px", 44),
    ))


@pytest.fixture
def metaprompt(fitness_function) -> OptimizerMetaprompt:
    return OptimizerMetaprompt(
        objective="minimize_friction",
        business_objective="Raise checkout completion",
        target_persona=Persona(name="Busy Shopper", pain_points=["Long forms"]),
        fitness_function=fitness_function
    )

