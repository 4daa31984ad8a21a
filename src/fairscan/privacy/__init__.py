from .privacy_handler import (
    PrivacyPreprocessor,
    PrivacySettings,
    ProcessingOptions,
    generalize_frequency,
    generalize_location
)

__all__ = [
    'PrivacyPreprocessor',
    'PrivacySettings',
    'ProcessingOptions',
    'generalize_frequency',
    'generalize_location'
]
