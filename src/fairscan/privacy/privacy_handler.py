import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Tuple, Optional, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config.settings import settings, AnonymizationLevel
from ..config.logging_config import audit_log
from ..exceptions import ConsentError, InvalidImportError
from ..utils.helpers import calculate_hash

logger = logging.getLogger(__name__)

# Fields that are always forwarded to the analysis stages
ANALYSIS_FIELDS = ('text', 'contentType', 'predictions', 'attributes', 'inputs')

# Direct identifiers folded into a single user hash
HASHED_IDENTIFIER_FIELDS = ('userIdentifiers', 'userId')

# Direct identifiers that are never forwarded
REMOVED_IDENTIFIER_FIELDS = ('email', 'name', 'fullName', 'phone', 'ipAddress', 'deviceId')

FREQUENCY_BUCKETS = ((5, 'low'), (20, 'medium'))


class PrivacySettings(BaseModel):
    """The single privacy settings record."""
    model_config = ConfigDict(populate_by_name=True, extra='forbid', use_enum_values=True)

    data_retention_days: int = Field(default=30, ge=1, alias='dataRetentionDays')
    anonymization_level: AnonymizationLevel = Field(
        default=AnonymizationLevel.HIGH,
        alias='anonymizationLevel'
    )
    consent_status: bool = Field(default=False, alias='consentStatus')

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode='json')


@dataclass(frozen=True)
class ProcessingOptions:
    """Per-request processing switches."""
    anonymize: bool = True
    remove_identifiers: bool = True
    preserve_context: bool = True

    @classmethod
    def from_dict(cls, options: Optional[Dict[str, Any]]) -> 'ProcessingOptions':
        options = options or {}
        return cls(
            anonymize=options.get('anonymize', True),
            remove_identifiers=options.get('removeIdentifiers', True),
            preserve_context=options.get('preserveContext', True)
        )


def generalize_frequency(frequency: float) -> str:
    """Bucket an exact usage frequency into low/medium/high."""
    for upper_bound, label in FREQUENCY_BUCKETS:
        if frequency <= upper_bound:
            return label
    return 'high'


def generalize_location(
    location: Dict[str, Any],
    level: AnonymizationLevel = AnonymizationLevel.HIGH
) -> Dict[str, Any]:
    """
    Reduce a detailed location to region and timezone.

    The low level also keeps the city; street-level detail is never kept.
    """
    generalized = {
        'region': location.get('country') or location.get('region'),
        'timezone': location.get('timezone')
    }
    if level == AnonymizationLevel.LOW:
        generalized['city'] = location.get('city')
    return generalized


class PrivacyPreprocessor:
    """
    Anonymizes and generalizes raw content before any analysis runs.

    Owns the privacy settings record; consent must be recorded before
    ``process`` will release any derived data.
    """

    def __init__(
        self,
        privacy_settings: Optional[Dict[str, Any]] = None,
        identifier_salt: Optional[str] = None
    ):
        """
        Initialize the preprocessor.

        Args:
            privacy_settings: Initial settings record (camelCase or snake_case keys)
            identifier_salt: Salt mixed into identifier hashes
        """
        self._settings = PrivacySettings.model_validate(
            privacy_settings if privacy_settings is not None else settings.get_privacy_defaults()
        )
        self.identifier_salt = settings.identifier_salt if identifier_salt is None else identifier_salt

    @property
    def has_consent(self) -> bool:
        return self._settings.consent_status

    @property
    def privacy_settings(self) -> PrivacySettings:
        return self._settings

    def process(
        self,
        raw_content: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Produce sanitized content plus processing metadata.

        Args:
            raw_content: Content payload; never mutated
            options: ``anonymize``, ``removeIdentifiers``, ``preserveContext`` switches

        Returns:
            Tuple of (sanitized content, metadata)

        Raises:
            ConsentError: If consent has not been recorded
        """
        if not self.has_consent:
            raise ConsentError()

        opts = ProcessingOptions.from_dict(options)
        level = AnonymizationLevel(self._settings.anonymization_level)
        source = copy.deepcopy(raw_content)
        sanitized: Dict[str, Any] = {}
        hashed: List[str] = []
        removed: List[str] = []

        for key in ANALYSIS_FIELDS:
            if key in source:
                sanitized[key] = source[key]
        sanitized.setdefault('text', '')

        # Direct identifiers
        identifier = next(
            (source[key] for key in HASHED_IDENTIFIER_FIELDS if source.get(key) is not None),
            None
        )
        if identifier is not None:
            sanitized['userHash'] = self.hash_identifier(identifier)
            hashed.extend(key for key in HASHED_IDENTIFIER_FIELDS if key in source)

        for key in REMOVED_IDENTIFIER_FIELDS:
            if key in source:
                if opts.remove_identifiers:
                    removed.append(key)
                else:
                    sanitized[f'{key}Hash'] = self.hash_identifier(source[key])
                    hashed.append(key)

        # Quasi-identifiers are generalized or dropped, never forwarded raw
        if 'location' in source:
            if opts.anonymize and isinstance(source['location'], dict):
                sanitized['region'] = generalize_location(source['location'], level)
            else:
                removed.append('location')

        if 'features' in source:
            if opts.anonymize and isinstance(source['features'], dict):
                sanitized['features'] = self.process_features(
                    source['features'],
                    exact_frequency=level != AnonymizationLevel.HIGH
                )
            else:
                removed.append('features')

        if opts.preserve_context:
            skip = set(ANALYSIS_FIELDS) | set(HASHED_IDENTIFIER_FIELDS) | set(REMOVED_IDENTIFIER_FIELDS)
            skip |= {'location', 'features'}
            for key, value in source.items():
                if key not in skip:
                    sanitized[key] = value

        processed_at = datetime.now(timezone.utc)
        metadata = {
            'processedAt': processed_at.isoformat(),
            'expiresAt': (processed_at + timedelta(days=self._settings.data_retention_days)).isoformat(),
            'anonymizationLevel': self._settings.anonymization_level,
            'identifiersHashed': hashed,
            'fieldsRemoved': removed,
            'locationGeneralized': 'region' in sanitized,
            'contentType': sanitized.get('contentType', 'text/plain')
        }

        logger.debug(f"Processed content: {len(hashed)} identifiers hashed, {len(removed)} fields removed")
        return sanitized, metadata

    def hash_identifier(self, identifier: Any) -> str:
        """One-way hash of a direct identifier."""
        return calculate_hash(identifier, algorithm='sha256', salt=self.identifier_salt)

    @staticmethod
    def process_features(
        features: Dict[str, Any],
        exact_frequency: bool = False
    ) -> Dict[str, Dict[str, Any]]:
        """Keep feature usage flags and bucket their frequencies, optionally keeping the exact count too."""
        processed = {}
        for feature, usage in features.items():
            if isinstance(usage, dict):
                used, frequency = bool(usage.get('used', False)), usage.get('frequency', 0)
            else:
                used, frequency = bool(usage), usage or 0

            processed[feature] = {'used': used, 'frequency': generalize_frequency(frequency)}
            if exact_frequency:
                processed[feature]['exactFrequency'] = frequency
        return processed

    def update_settings(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge updates into the settings record.

        Raises:
            ValueError: If the merged record does not validate; settings stay unchanged
        """
        merged = {**self._settings.to_dict(), **updates}
        new_settings = PrivacySettings.model_validate(merged)

        consent_changed = new_settings.consent_status != self._settings.consent_status
        self._settings = new_settings

        audit_log(
            action='consent_updated' if consent_changed else 'privacy_settings_updated',
            resource='privacy_settings',
            metadata={'keys': sorted(updates.keys())}
        )
        return {'success': True, 'settings': self._settings.to_dict()}

    def get_settings(self) -> Dict[str, Any]:
        return {'success': True, 'settings': self._settings.to_dict()}

    def export_settings(self) -> str:
        """Serialize the settings record to JSON."""
        return json.dumps(self._settings.to_dict())

    def import_settings(self, payload: str) -> Dict[str, Any]:
        """
        Replace the settings record from a JSON export.

        Raises:
            InvalidImportError: If the payload is malformed; previous settings are kept
        """
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise InvalidImportError('Privacy settings export must be a JSON object')
            imported = PrivacySettings.model_validate(data)
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Rejected privacy settings import: {e}")
            raise InvalidImportError(f"Invalid privacy settings data: {e}") from e

        self._settings = imported
        audit_log(action='privacy_settings_imported', resource='privacy_settings')
        return {'success': True, 'settings': self._settings.to_dict()}
