import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable

import numpy as np

from ..config.settings import settings
from ..config.logging_config import log_bias_metrics, log_exception
from ..exceptions import BiasPipelineError, InsufficientDataError
from ..models.model_manager import ModelLifecycleManager
from ..privacy.privacy_handler import PrivacyPreprocessor
from ..utils.helpers import load_config, time_it
from ..utils.metrics import AnalysisMetrics, PerformanceTracker
from .intersectional import IntersectionalAnalyzer
from .mitigation import MitigationCatalog, MitigationStrategy, MitigationStrategyEngine
from .pattern_scanner import CategoryPatternScanner, CategoryScore
from .patterns import PatternRegistry, ProtectedCategory
from .statistical_analyzer import StatisticalAnalysis, StatisticalBiasAnalyzer

logger = logging.getLogger(__name__)

NO_BIAS_RECOMMENDATION = "No significant bias detected. Continue monitoring."

STRATEGY_RECOMMENDATIONS = {
    MitigationStrategy.REWEIGHTING.value: "Reweight training samples to balance protected groups",
    MitigationStrategy.THRESHOLD_ADJUSTMENT.value: "Adjust decision thresholds per protected attribute",
    MitigationStrategy.ENSEMBLE.value: "Combine the current model with additional ensemble members",
}

PRIVACY_SETTING_KEYS = ('dataRetentionDays', 'anonymizationLevel', 'consentStatus')
THRESHOLD_SETTING_KEYS = ('disparateImpactThreshold', 'confidenceThreshold')


class CoordinatorState(str, Enum):
    """Stages of one analysis request."""
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    SCANNING = "scanning"
    AGGREGATING = "aggregating"
    MITIGATING = "mitigating"
    REPORTING = "reporting"


@dataclass
class AnalysisContext:
    """State trail of a single analysis request."""
    state: CoordinatorState = CoordinatorState.IDLE
    transitions: List[CoordinatorState] = field(default_factory=list)

    def transition(self, state: CoordinatorState) -> None:
        self.state = state
        self.transitions.append(state)


class BiasDetectionCoordinator:
    """
    Orchestrates one request/response cycle of the bias pipeline.

    Raw content is sanitized, scanned per category concurrently, aggregated
    into intersectional patterns, turned into mitigation suggestions and
    reported. Any failure yields a ``{'success': False}`` report; partial
    results are never returned.
    """

    def __init__(
        self,
        preprocessor: Optional[PrivacyPreprocessor] = None,
        scanner: Optional[CategoryPatternScanner] = None,
        statistical_analyzer: Optional[StatisticalBiasAnalyzer] = None,
        intersectional_analyzer: Optional[IntersectionalAnalyzer] = None,
        mitigation_engine: Optional[MitigationStrategyEngine] = None,
        model_manager: Optional[ModelLifecycleManager] = None,
        performance_tracker: Optional[PerformanceTracker] = None,
        model_id: Optional[str] = None,
        categories: Optional[Iterable[ProtectedCategory]] = None
    ):
        """
        Initialize the coordinator.

        Args:
            preprocessor: Privacy preprocessor owning the privacy settings record
            scanner: Category pattern scanner
            statistical_analyzer: Analyzer for optional prediction batches
            intersectional_analyzer: Pairwise category analyzer
            mitigation_engine: Strategy engine; shares ``statistical_analyzer`` when built here
            model_manager: Model registry the analyses are recorded into
            performance_tracker: In-memory analysis metrics
            model_id: Model the analyses are attributed to
            categories: Categories scanned; defaults to every category with patterns
        """
        self.preprocessor = preprocessor or PrivacyPreprocessor()
        self.scanner = scanner or CategoryPatternScanner()
        self.statistical_analyzer = statistical_analyzer or StatisticalBiasAnalyzer()
        self.intersectional_analyzer = intersectional_analyzer or IntersectionalAnalyzer()
        self.mitigation_engine = mitigation_engine or MitigationStrategyEngine(analyzer=self.statistical_analyzer)
        self.model_manager = model_manager or ModelLifecycleManager()
        self.performance_tracker = performance_tracker or PerformanceTracker(settings.performance_tracker_size)
        self.model_id = model_id or settings.default_model_id
        self.categories = [ProtectedCategory(c) for c in (categories or self.scanner.registry.categories)]

        self.last_context = AnalysisContext()
        self._initialized = False

    @classmethod
    def from_settings(cls, **overrides) -> 'BiasDetectionCoordinator':
        """Build a coordinator with tables loaded from the configured files."""
        registry = (
            PatternRegistry.from_file(settings.pattern_table_path)
            if settings.pattern_table_path else PatternRegistry()
        )
        components: Dict[str, Any] = {'scanner': CategoryPatternScanner(registry)}

        if settings.mitigation_table_path:
            tables = load_config(settings.mitigation_table_path)
            components['mitigation_engine'] = MitigationStrategyEngine(catalog=MitigationCatalog.from_config(tables))
            if 'intersections' in tables:
                components['intersectional_analyzer'] = IntersectionalAnalyzer.from_config(tables)

        components.update(overrides)
        return cls(**components)

    @property
    def initialized(self) -> bool:
        return self._initialized and self.model_manager.has_model(self.model_id)

    def default_model_config(self) -> Dict[str, Any]:
        return {
            'version': settings.model_version,
            'parameters': {
                'type': 'bias-detection',
                'features': [category.value for category in self.categories]
            }
        }

    async def initialize(self, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Initialize the scoring model, failing over to the fallback stub.

        Returns:
            ``{'success': True, 'modelId': ...}``
        """
        config = config or self.default_model_config()
        try:
            result = await self.model_manager.initialize(self.model_id, config)
        except Exception as e:
            log_exception(e, {'operation': 'initialize', 'modelId': self.model_id})
            logger.warning(f"Model initialization failed, continuing with fallback model: {e}")
            result = await self.model_manager.initialize_fallback(self.model_id, config)

        self._initialized = True
        return result

    async def analyze_content(
        self,
        content: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Analyze one content item.

        Args:
            content: ``{text, contentType}`` payload, optionally with aligned
                ``predictions`` and ``attributes`` for model-level analysis
            options: Privacy processing options

        Returns:
            Report with ``biasDetected``, ``intersectionalAnalysis``,
            ``suggestions``, ``confidence`` and ``performance``, or
            ``{'success': False, 'error': ...}``
        """
        context = AnalysisContext()
        self.last_context = context
        started = time.perf_counter()

        try:
            # Also covers a registry import that dropped this model
            if not self.initialized:
                await self.initialize()

            context.transition(CoordinatorState.PREPROCESSING)
            sanitized, processing_metadata = self.preprocessor.process(content, options)

            context.transition(CoordinatorState.SCANNING)
            category_results = await self.scan_categories(sanitized)
            detected = {category.value: score for category, score in category_results.items() if score.detected}

            context.transition(CoordinatorState.AGGREGATING)
            intersectional = self.intersectional_analyzer.analyze(detected)
            statistical = self.analyze_predictions(sanitized)

            context.transition(CoordinatorState.MITIGATING)
            text_suggestions = self.mitigation_engine.suggest_text_mitigation(detected)
            plan = None
            if statistical is not None:
                plan = self.mitigation_engine.mitigate(
                    statistical,
                    sanitized.get('attributes') or {},
                    model=self.model_manager.get_model(self.model_id)
                )

            context.transition(CoordinatorState.REPORTING)
            confidence = self.calculate_confidence(detected)
            metrics = AnalysisMetrics(
                categories_analyzed=len(category_results),
                bias_instances=sum(len(score.instances) for score in detected.values()),
                severity_distribution=dict(Counter(score.severity.value for score in detected.values())),
                processing_time_ms=(time.perf_counter() - started) * 1000,
                confidence=confidence
            )
            await self.model_manager.track_performance(self.model_id, metrics.to_dict())
            self.performance_tracker.add_analysis_metrics(metrics)
            log_bias_metrics(len(detected), metrics.bias_instances, confidence)

            report = {
                'success': True,
                'biasDetected': {category: score.to_dict() for category, score in detected.items()},
                'intersectionalAnalysis': intersectional.to_dict(),
                'suggestions': {
                    'individual': {category: s.to_dict() for category, s in text_suggestions.items()},
                    'intersectional': [dict(r) for r in intersectional.recommendations]
                },
                'confidence': confidence,
                'performance': self.performance_snapshot(metrics),
                'metadata': processing_metadata
            }
            if statistical is not None:
                report['statisticalAnalysis'] = statistical.to_dict()
                report['mitigation'] = plan.to_dict()

        except Exception as e:
            context.transition(CoordinatorState.REPORTING)
            report = self.error_report(e, context.transitions[-2] if len(context.transitions) > 1 else None)

        context.transition(CoordinatorState.IDLE)
        return report

    @time_it
    async def scan_categories(self, content: Dict[str, Any]) -> Dict[ProtectedCategory, CategoryScore]:
        """Scan every category concurrently; results keep category order."""
        scores = await asyncio.gather(*(
            asyncio.to_thread(self.scanner.scan, content, category)
            for category in self.categories
        ))
        return dict(zip(self.categories, scores))

    def analyze_predictions(self, content: Dict[str, Any]) -> Optional[StatisticalAnalysis]:
        """Statistical analysis of an attached prediction batch, if any."""
        if content.get('predictions') is None:
            return None
        try:
            return self.statistical_analyzer.analyze(content['predictions'], content.get('attributes') or {})
        except InsufficientDataError as e:
            logger.warning(f"Skipping statistical analysis: {e}")
            return None

    @staticmethod
    def calculate_confidence(detected: Dict[str, CategoryScore]) -> float:
        """Mean category score, capped at 1 per category; 0 when nothing was detected."""
        if not detected:
            return 0.0
        return float(np.mean([min(score.score, 1.0) for score in detected.values()]))

    def performance_snapshot(self, metrics: AnalysisMetrics) -> Dict[str, Any]:
        metadata = self.model_manager.get_metadata(self.model_id)
        return {
            'latest': metrics.to_dict(),
            'summary': self.performance_tracker.calculate_performance_summary(),
            'modelId': self.model_id,
            'modelVersion': str(metadata.version),
            'fallbackMode': metadata.fallback_mode
        }

    @staticmethod
    def error_report(error: Exception, failed_state: Optional[CoordinatorState] = None) -> Dict[str, Any]:
        """Downgrade an error to a caller-safe failure report."""
        if isinstance(error, BiasPipelineError):
            logger.warning(f"Analysis rejected: {error.message}")
            message = error.message
        else:
            log_exception(error, {'state': failed_state.value if failed_state else None})
            message = str(error) or 'Analysis failed'

        return {'success': False, 'error': message, 'errorType': type(error).__name__}

    def get_recommendations(self, analysis_result: Dict[str, Any]) -> List[str]:
        """
        Flatten an analysis report into a de-duplicated recommendation list.

        Returns an empty list for failed or malformed reports.
        """
        if not analysis_result.get('success'):
            return []

        try:
            recommendations: List[str] = []
            suggestions = analysis_result['suggestions']

            for suggestion in suggestions['individual'].values():
                recommendations.extend(suggestion['recommendations'])
            for suggestion in suggestions['intersectional']:
                recommendations.extend(suggestion['suggestions'])

            mitigation = analysis_result.get('mitigation') or {}
            for strategy in mitigation.get('appliedStrategies', []):
                if strategy in STRATEGY_RECOMMENDATIONS:
                    recommendations.append(STRATEGY_RECOMMENDATIONS[strategy])
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Could not extract recommendations: {e}")
            return []

        return list(dict.fromkeys(recommendations)) or [NO_BIAS_RECOMMENDATION]

    async def update_settings(self, new_settings: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update privacy settings and sensitivity thresholds.

        The disparate impact threshold is clamped into the adaptive range.
        Nothing is applied when any value is invalid.
        """
        try:
            unknown = set(new_settings) - set(PRIVACY_SETTING_KEYS) - set(THRESHOLD_SETTING_KEYS)
            if unknown:
                raise ValueError(f"Unknown settings: {sorted(unknown)}")

            disparate_impact_threshold = None
            if new_settings.get('disparateImpactThreshold') is not None:
                low, high = settings.adaptive_threshold_range
                disparate_impact_threshold = float(np.clip(float(new_settings['disparateImpactThreshold']), low, high))

            confidence_threshold = None
            if new_settings.get('confidenceThreshold') is not None:
                confidence_threshold = float(new_settings['confidenceThreshold'])
                if not 0 < confidence_threshold < 1:
                    raise ValueError("confidenceThreshold must be between 0 and 1")

            privacy_updates = {k: new_settings[k] for k in PRIVACY_SETTING_KEYS if k in new_settings}
            if privacy_updates:
                self.preprocessor.update_settings(privacy_updates)

            if disparate_impact_threshold is not None:
                self.statistical_analyzer.disparate_impact_threshold = disparate_impact_threshold
                self.mitigation_engine.mitigation_threshold = disparate_impact_threshold
            if confidence_threshold is not None:
                self.statistical_analyzer.confidence_threshold = confidence_threshold

        except (ValueError, TypeError) as e:
            logger.warning(f"Rejected settings update: {e}")
            return {'success': False, 'error': str(e), 'errorType': type(e).__name__}

        return {'success': True, 'settings': self.get_settings()}

    def get_settings(self) -> Dict[str, Any]:
        return {
            **self.preprocessor.privacy_settings.to_dict(),
            'disparateImpactThreshold': self.statistical_analyzer.disparate_impact_threshold,
            'confidenceThreshold': self.statistical_analyzer.confidence_threshold
        }

    def get_model_history(self, model_id: Optional[str] = None) -> Dict[str, Any]:
        """Version and performance history of a model (the coordinator's own by default)."""
        try:
            history = self.model_manager.get_history(model_id or self.model_id)
        except BiasPipelineError as e:
            return self.error_report(e)
        return {'success': True, **history}
