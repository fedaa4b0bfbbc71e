#!/usr/bin/env python3
"""Check that all autoloop modules import cleanly."""
import importlib
import sys

MODULES = [
    "autoloop.api.client",
    "autoloop.core.config",
    "autoloop.core.errors",
    "autoloop.core.retry",
    "autoloop.core.models",
    "autoloop.core.schemas",
    "autoloop.core.structured",
    "autoloop.core.query_planner",
    "autoloop.core.workflow_engine",
    "autoloop.core.ui_optimizer",
    "autoloop.core.telemetry",
    "autoloop.core.feedback_translator",
    "autoloop.core.orchestrator",
    "autoloop.cli.main",
]


def check_imports() -> bool:
    print("Checking imports...")
    for name in MODULES:
        try:
            importlib.import_module(name)
            print(f"✅ {name}: OK")
        except ImportError as e:
            print(f"❌ {name}: {e}")
            return False

    print("\n✅ All imports successful!")
    return True


if __name__ == "__main__":
    sys.exit(0 if check_imports() else 1)
