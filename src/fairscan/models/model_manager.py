import asyncio
import copy
import json
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, Union

import aiohttp
import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config.settings import settings
from ..config.logging_config import audit_log
from ..exceptions import InvalidImportError, ModelFetchError, ModelNotFoundError
from ..utils.helpers import load_config, save_config, utc_timestamp


@dataclass(frozen=True, order=True)
class SemanticVersion:
    """major.minor.patch version, ordered lexicographically."""
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, version: str) -> 'SemanticVersion':
        parts = str(version).split('.')
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid semantic version: {version!r}")
        return cls(*(int(p) for p in parts))

    def bump_patch(self) -> 'SemanticVersion':
        return SemanticVersion(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass
class ModelMetadata:
    """Versioned configuration and performance history of one model."""
    model_id: str
    version: SemanticVersion
    last_updated: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    performance: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    fallback_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': str(self.version),
            'lastUpdated': self.last_updated,
            'parameters': copy.deepcopy(self.parameters),
            'performance': copy.deepcopy(self.performance),
            'fallbackMode': self.fallback_mode
        }


@dataclass
class ModelHandle:
    """Loaded model configuration together with its fetched or synthesized data."""
    model_id: str
    config: Dict[str, Any]
    data: Dict[str, Any]

    @property
    def fallback_mode(self) -> bool:
        return bool(self.data.get('fallbackMode', False))


class RegistryEntry(BaseModel):
    """Validation schema for one persisted registry entry."""
    version: str
    lastUpdated: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    performance: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    fallbackMode: bool = False

    @field_validator('version')
    @classmethod
    def validate_version(cls, v: str) -> str:
        SemanticVersion.parse(v)
        return v


class ModelLifecycleManager:
    """
    Owns model registry state: versions, parameters, performance history and
    fallback data for when the authoritative model source is unreachable.

    Writes to one model id are serialized with a per-id lock.
    """

    def __init__(
        self,
        registry_url: Optional[str] = None,
        fetch_timeout: Optional[float] = None,
        initial_version: Optional[str] = None,
        history_limit: Optional[int] = None
    ):
        """
        Initialize the manager.

        Args:
            registry_url: Base URL of the model source; ``None`` always uses fallback data
            fetch_timeout: Remote fetch timeout in seconds
            initial_version: Version assigned to models whose config names none
            history_limit: Maximum performance snapshots kept per model
        """
        self.registry_url = registry_url if registry_url is not None else settings.model_registry_url
        self.fetch_timeout = settings.model_fetch_timeout if fetch_timeout is None else fetch_timeout
        self.initial_version = SemanticVersion.parse(initial_version or settings.model_version)
        self.history_limit = history_limit if history_limit is not None else settings.performance_history_limit

        self._metadata: Dict[str, ModelMetadata] = {}
        self._models: Dict[str, ModelHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def has_model(self, model_id: str) -> bool:
        return model_id in self._metadata

    def get_metadata(self, model_id: str) -> ModelMetadata:
        if model_id not in self._metadata:
            raise ModelNotFoundError(model_id)
        return self._metadata[model_id]

    def get_model(self, model_id: str) -> ModelHandle:
        if model_id not in self._models:
            raise ModelNotFoundError(model_id)
        return self._models[model_id]

    async def initialize(self, model_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Initialize a model, falling back to locally synthesized data when the
        remote source fails.

        Args:
            model_id: Model identifier
            config: Model configuration with ``parameters`` and optional ``version``

        Returns:
            ``{'success': True, 'modelId': model_id}``
        """
        async with self._locks[model_id]:
            try:
                model_data = await self._fetch_model_data(model_id)
            except ModelFetchError as e:
                logger.warning(f"Using fallback model data for {model_id}: {e}")
                model_data = self.get_fallback_model_data(model_id, config)

            self._register(model_id, config, model_data)

        return {'success': True, 'modelId': model_id}

    async def initialize_fallback(self, model_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Register a model from the fallback stub without contacting the remote source."""
        async with self._locks[model_id]:
            self._register(model_id, config, self.get_fallback_model_data(model_id, config))
        return {'success': True, 'modelId': model_id}

    def _register(self, model_id: str, config: Dict[str, Any], model_data: Dict[str, Any]) -> None:
        fallback = bool(model_data.get('fallbackMode', False))
        existing = self._metadata.get(model_id)

        if existing is None:
            version = SemanticVersion.parse(config['version']) if config.get('version') else self.initial_version
            self._metadata[model_id] = ModelMetadata(
                model_id=model_id,
                version=version,
                last_updated=utc_timestamp(),
                parameters=copy.deepcopy(config.get('parameters', {})),
                fallback_mode=fallback
            )
        else:
            # Re-initialization refreshes the data but keeps version and history
            existing.fallback_mode = fallback
            logger.info(f"Model {model_id} re-initialized at version {existing.version}")

        self._models[model_id] = ModelHandle(model_id, copy.deepcopy(config), model_data)
        logger.info(f"Model {model_id} initialized (fallback={fallback})")

    async def _fetch_model_data(self, model_id: str) -> Dict[str, Any]:
        """
        Fetch authoritative model data.

        Raises:
            ModelFetchError: On missing configuration, HTTP error, timeout or malformed body
        """
        if not self.registry_url:
            raise ModelFetchError("No model registry configured")

        url = f"{self.registry_url.rstrip('/')}/{model_id}"
        timeout = aiohttp.ClientTimeout(total=self.fetch_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise ModelFetchError(f"Failed to fetch model: HTTP {response.status}")
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            raise ModelFetchError(f"Failed to fetch model {model_id}: {e}") from e

        if not isinstance(data, dict):
            raise ModelFetchError(f"Malformed model data for {model_id}")
        return data

    def get_fallback_model_data(self, model_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        parameters = config.get('parameters') or {}
        return {
            'id': model_id,
            'name': f"Fallback {model_id}",
            'version': str(self.initial_version),
            'type': parameters.get('type', 'default'),
            'features': list(parameters.get('features', [])),
            'fallbackMode': True,
            'capabilities': {
                'textProcessing': True,
                'imageAnalysis': False,
                'audioProcessing': False
            }
        }

    async def update(self, model_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a new configuration and bump the patch version.

        Raises:
            ModelNotFoundError: If the model was never initialized
        """
        async with self._locks[model_id]:
            metadata = self.get_metadata(model_id)
            previous = metadata.version

            metadata.version = previous.bump_patch()
            metadata.last_updated = utc_timestamp()
            metadata.parameters = copy.deepcopy(config.get('parameters', {}))

            handle = self._models.get(model_id)
            data = handle.data if handle is not None else {}
            self._models[model_id] = ModelHandle(model_id, copy.deepcopy(config), data)

        audit_log(
            action='model_updated',
            resource=model_id,
            metadata={'from': str(previous), 'to': str(metadata.version)}
        )
        logger.info(f"Model {model_id} updated {previous} -> {metadata.version}")
        return {'success': True, 'version': str(metadata.version)}

    async def track_performance(self, model_id: str, metrics: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append a timestamped metric snapshot to the model's history.

        Raises:
            ModelNotFoundError: If the model was never initialized
        """
        async with self._locks[model_id]:
            metadata = self.get_metadata(model_id)
            timestamp = utc_timestamp()
            suffix = 1
            key = timestamp
            while key in metadata.performance:
                key = f"{timestamp}#{suffix}"
                suffix += 1

            metadata.performance[key] = copy.deepcopy(metrics)

            if self.history_limit is not None:
                while len(metadata.performance) > self.history_limit:
                    oldest = next(iter(metadata.performance))
                    del metadata.performance[oldest]

        return {'success': True, 'timestamp': key}

    def get_history(self, model_id: str) -> Dict[str, Any]:
        """
        Version history view of a model.

        Raises:
            ModelNotFoundError: If the model was never initialized
        """
        metadata = self.get_metadata(model_id)
        return {
            'currentVersion': str(metadata.version),
            'lastUpdated': metadata.last_updated,
            'performance': copy.deepcopy(metadata.performance),
            'fallbackMode': metadata.fallback_mode
        }

    def export_registry(self) -> Dict[str, Dict[str, Any]]:
        """Registry in its persisted layout, keyed by model id."""
        return {model_id: metadata.to_dict() for model_id, metadata in self._metadata.items()}

    def import_registry(self, data: Any) -> Dict[str, Any]:
        """
        Replace the registry with persisted state.

        Every entry is validated before anything is replaced.

        Raises:
            InvalidImportError: If the data is malformed; the previous registry is kept
        """
        if not isinstance(data, dict):
            raise InvalidImportError("Model registry must be a mapping of model id to metadata")

        imported: Dict[str, ModelMetadata] = {}
        for model_id, entry in data.items():
            try:
                validated = RegistryEntry.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Rejected model registry import at {model_id}: {e}")
                raise InvalidImportError(f"Invalid registry entry for {model_id}: {e}") from e

            imported[model_id] = ModelMetadata(
                model_id=model_id,
                version=SemanticVersion.parse(validated.version),
                last_updated=validated.lastUpdated,
                parameters=validated.parameters,
                performance=dict(validated.performance),
                fallback_mode=validated.fallbackMode
            )

        self._metadata = imported
        self._models = {
            model_id: ModelHandle(
                model_id,
                {'version': str(metadata.version), 'parameters': copy.deepcopy(metadata.parameters)},
                {'fallbackMode': metadata.fallback_mode}
            )
            for model_id, metadata in imported.items()
        }

        audit_log(action='model_registry_imported', resource='model_registry', metadata={'models': len(imported)})
        return {'success': True, 'models': list(imported)}

    def save_registry(self, filepath: Union[str, Path]) -> None:
        save_config(self.export_registry(), filepath)

    def load_registry(self, filepath: Union[str, Path]) -> Dict[str, Any]:
        """
        Load persisted registry state from a JSON or YAML file.

        Raises:
            FileNotFoundError: If the file does not exist
            InvalidImportError: If the file cannot be parsed or fails validation
        """
        try:
            data = load_config(filepath)
        except (json.JSONDecodeError, yaml.YAMLError, ValueError) as e:
            raise InvalidImportError(f"Unreadable model registry file {filepath}: {e}") from e
        return self.import_registry(data)
