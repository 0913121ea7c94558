"""
Configuration module for Overture feature retrieval.
"""

from .settings import (
    Config,
    ConfigurationError,
    HttpConfig,
    OvertureConfig,
    ProcessingConfig,
)

__all__ = [
    'Config',
    'ConfigurationError',
    'HttpConfig',
    'OvertureConfig',
    'ProcessingConfig',
]
