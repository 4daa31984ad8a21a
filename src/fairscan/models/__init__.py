from .model_manager import (
    ModelLifecycleManager,
    ModelMetadata,
    ModelHandle,
    SemanticVersion
)

__all__ = [
    'ModelLifecycleManager',
    'ModelMetadata',
    'ModelHandle',
    'SemanticVersion'
]
