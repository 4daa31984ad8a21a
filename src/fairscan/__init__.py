"""Bias detection and mitigation for content and model predictions."""

__version__ = "1.0.0"

from .exceptions import (
    BiasPipelineError,
    ConsentError,
    InsufficientDataError,
    ModelFetchError,
    ModelNotFoundError,
    InvalidImportError
)
from .bias_mitigation import BiasDetectionCoordinator, ProtectedCategory, SeverityLevel
from .models import ModelLifecycleManager
from .privacy import PrivacyPreprocessor

__all__ = [
    '__version__',
    'BiasPipelineError',
    'ConsentError',
    'InsufficientDataError',
    'ModelFetchError',
    'ModelNotFoundError',
    'InvalidImportError',
    'BiasDetectionCoordinator',
    'ProtectedCategory',
    'SeverityLevel',
    'ModelLifecycleManager',
    'PrivacyPreprocessor'
]
