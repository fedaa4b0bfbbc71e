# src/autoloop/api/__init__.py
"""
Generation Oracle clients.
"""

from autoloop.api.client import (
    GenerationOracle,
    GenerationOptions,
    DeepSeekOracle,
    OracleError
)

__all__ = [
    'GenerationOracle',
    'GenerationOptions',
    'DeepSeekOracle',
    'OracleError'
]
