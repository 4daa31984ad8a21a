import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from fairscan.bias_mitigation.detection_system import BiasDetectionCoordinator
from fairscan.models.model_manager import ModelLifecycleManager
from fairscan.privacy.privacy_handler import PrivacyPreprocessor
from mocks.mock_components import consenting_privacy_settings


@pytest.fixture
def model_manager():
    """Model manager with no remote source; every initialization falls back."""
    return ModelLifecycleManager(registry_url="", initial_version="1.0.0")


@pytest.fixture
def coordinator(model_manager):
    """Coordinator with consent recorded."""
    return BiasDetectionCoordinator(
        preprocessor=PrivacyPreprocessor(consenting_privacy_settings(), identifier_salt="test"),
        model_manager=model_manager,
        model_id="test-model"
    )
