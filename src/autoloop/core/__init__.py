# src/autoloop/core/__init__.py
"""
Core modules for the generation and optimization loop.
"""

# config must load before anything that imports the Oracle client
from autoloop.core.config import load_config
from autoloop.core.retry import RetryPolicy
from autoloop.core.query_planner import QueryPlanner
from autoloop.core.workflow_engine import TestDrivenWorkflowEngine
from autoloop.core.ui_optimizer import FitnessOptimizer
from autoloop.core.telemetry import DirectoryTelemetrySource, SyntheticTelemetryGenerator
from autoloop.core.feedback_translator import FeedbackTranslator
from autoloop.core.orchestrator import ClosedLoopOrchestrator

__all__ = [
    'load_config',
    'RetryPolicy',
    'QueryPlanner',
    'TestDrivenWorkflowEngine',
    'FitnessOptimizer',
    'DirectoryTelemetrySource',
    'SyntheticTelemetryGenerator',
    'FeedbackTranslator',
    'ClosedLoopOrchestrator'
]
