# src/autoloop/__init__.py
"""
Autonomous generation and optimization loop.
"""

__version__ = "0.1.0"
__author__ = "Autoloop Team"

from autoloop.core.orchestrator import ClosedLoopOrchestrator
from autoloop.core.workflow_engine import TestDrivenWorkflowEngine
from autoloop.core.ui_optimizer import FitnessOptimizer
from autoloop.core.feedback_translator import FeedbackTranslator
from autoloop.core.query_planner import QueryPlanner

__all__ = [
    'ClosedLoopOrchestrator',
    'TestDrivenWorkflowEngine',
    'FitnessOptimizer',
    'FeedbackTranslator',
    'QueryPlanner'
]
