import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Mapping, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, ValidationError

from ..config.settings import settings
from .pattern_scanner import CategoryScore
from .patterns import ProtectedCategory, SeverityLevel
from .statistical_analyzer import StatisticalAnalysis, StatisticalBiasAnalyzer

logger = logging.getLogger(__name__)

BASE_THRESHOLD = 0.5
THRESHOLD_BOUNDS = (0.1, 0.9)


class MitigationStrategy(str, Enum):
    """Model-level correction strategies."""
    REWEIGHTING = "reweighting"
    THRESHOLD_ADJUSTMENT = "threshold_adjustment"
    ENSEMBLE = "ensemble"


DEFAULT_CATEGORY_RECOMMENDATIONS: Dict[str, List[str]] = {
    "gender": [
        "Use gender-neutral language",
        "Avoid gender stereotypes",
        "Include diverse perspectives",
    ],
    "disability": [
        "Use person-first language",
        "Focus on capabilities",
        "Avoid ableist language",
    ],
    "age": [
        "Describe skills and experience instead of age",
        "Avoid assumptions about ability based on age",
    ],
    "language": [
        "State the actual communication requirement",
        "Avoid judging fluency or accent",
    ],
    "nationality": [
        "Describe legal requirements precisely instead of excluding nationalities",
        "Use people-first descriptions of immigration status",
    ],
}

DEFAULT_PHRASE_ALTERNATIVES: Dict[str, Dict[str, List[str]]] = {
    "gender": {
        "he is assumed": ["they are assumed", "the person is assumed"],
        "she is assumed": ["they are assumed", "the person is assumed"],
        "male only": ["all genders", "anyone"],
        "female only": ["all genders", "anyone"],
    },
    "disability": {
        "normal person": ["person", "individual"],
        "suffering of": ["living with", "experiencing"],
        "suffering from": ["living with", "experiencing"],
        "victim of": ["person with", "person who has"],
    },
    "language": {
        "native english speakers only": ["fluent English required"],
        "broken english": ["non-native English"],
    },
    "nationality": {
        "illegals": ["undocumented immigrants"],
    },
}


class MitigationTable(BaseModel):
    """Pluggable recommendation and phrase alternative tables."""
    recommendations: Dict[ProtectedCategory, List[str]] = Field(default_factory=dict)
    alternatives: Dict[ProtectedCategory, Dict[str, List[str]]] = Field(default_factory=dict)


class MitigationCatalog:
    """Category recommendations and phrase alternatives keyed by category."""

    def __init__(
        self,
        recommendations: Optional[Mapping[str, List[str]]] = None,
        alternatives: Optional[Mapping[str, Mapping[str, List[str]]]] = None
    ):
        try:
            table = MitigationTable.model_validate({
                'recommendations': DEFAULT_CATEGORY_RECOMMENDATIONS if recommendations is None else recommendations,
                'alternatives': DEFAULT_PHRASE_ALTERNATIVES if alternatives is None else alternatives,
            })
        except ValidationError as e:
            raise ValueError(f"Invalid mitigation table: {e}") from e

        self.recommendations = table.recommendations
        # Phrase lookups are case-insensitive
        self.alternatives = {
            category: {phrase.lower(): list(options) for phrase, options in phrases.items()}
            for category, phrases in table.alternatives.items()
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'MitigationCatalog':
        return cls(config.get('recommendations'), config.get('alternatives'))

    def recommendations_for(self, category: ProtectedCategory) -> List[str]:
        return list(self.recommendations.get(category, []))

    def alternatives_for(self, category: ProtectedCategory, phrase: str) -> List[str]:
        return list(self.alternatives.get(category, {}).get(phrase.lower(), []))


@dataclass(frozen=True)
class EnsembleConfig:
    """Ensemble wrapper around the current model."""
    models: Tuple[Any, ...]
    weights: Tuple[float, ...]
    combination_strategy: str = 'weighted_average'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'models': [getattr(m, 'model_id', None) or str(m) for m in self.models],
            'weights': list(self.weights),
            'combinationStrategy': self.combination_strategy
        }


@dataclass
class MitigationPlan:
    """Selected strategies and their parameters."""
    strategies: List[MitigationStrategy] = field(default_factory=list)
    weights: Dict[str, Dict[str, float]] = field(default_factory=dict)
    thresholds: Dict[str, float] = field(default_factory=dict)
    ensemble: Optional[EnsembleConfig] = None

    @property
    def mitigation_needed(self) -> bool:
        return bool(self.strategies)

    def to_dict(self) -> Dict[str, Any]:
        adjustments: Dict[str, Any] = {}
        if MitigationStrategy.REWEIGHTING in self.strategies:
            adjustments['weights'] = {a: dict(w) for a, w in self.weights.items()}
        if MitigationStrategy.THRESHOLD_ADJUSTMENT in self.strategies:
            adjustments['thresholds'] = dict(self.thresholds)
        if self.ensemble is not None:
            adjustments['ensemble'] = self.ensemble.to_dict()
        return {
            'mitigationNeeded': self.mitigation_needed,
            'appliedStrategies': [s.value for s in self.strategies],
            'adjustments': adjustments
        }


@dataclass
class TextMitigation:
    """Rewrite guidance for one category of textual bias."""
    category: ProtectedCategory
    recommendations: List[str]
    alternatives: Dict[str, List[str]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'recommendations': list(self.recommendations),
            'alternatives': {phrase: list(options) for phrase, options in self.alternatives.items()}
        }


@dataclass
class MitigationEvaluation:
    """Before/after comparison of a re-scored model."""
    original: StatisticalAnalysis
    mitigated: StatisticalAnalysis
    disparate_impact_delta: Dict[str, float]
    systematic_bias_resolved: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'originalMetrics': self.original.to_dict(),
            'mitigatedMetrics': self.mitigated.to_dict(),
            'improvement': {
                'disparateImpact': dict(self.disparate_impact_delta),
                'systematicBias': self.systematic_bias_resolved
            }
        }


class MitigationStrategyEngine:
    """
    Chooses and parameterizes bias correction strategies.

    Model-level plans come from statistical metrics; textual guidance comes
    from per-category pattern scores.
    """

    def __init__(
        self,
        catalog: Optional[MitigationCatalog] = None,
        analyzer: Optional[StatisticalBiasAnalyzer] = None,
        mitigation_threshold: Optional[float] = None
    ):
        """
        Initialize the engine.

        Args:
            catalog: Recommendation and alternative tables
            analyzer: Analyzer used to re-score during evaluation
            mitigation_threshold: Disparate impact ratio below which reweighting applies
        """
        self.catalog = catalog or MitigationCatalog()
        self.analyzer = analyzer or StatisticalBiasAnalyzer()
        self.mitigation_threshold = (
            settings.disparate_impact_threshold if mitigation_threshold is None else mitigation_threshold
        )

    def needs_mitigation(self, bias_metrics: StatisticalAnalysis) -> bool:
        has_disparate_impact = any(
            ratio < self.mitigation_threshold for ratio in bias_metrics.disparate_impact.values()
        )
        has_systematic_bias = bias_metrics.systematic_bias.severity != SeverityLevel.LOW
        return has_disparate_impact or has_systematic_bias

    def determine_strategies(self, bias_metrics: StatisticalAnalysis) -> List[MitigationStrategy]:
        strategies = []

        if any(ratio < self.mitigation_threshold for ratio in bias_metrics.disparate_impact.values()):
            strategies.append(MitigationStrategy.REWEIGHTING)

        if bias_metrics.systematic_bias.patterns:
            strategies.append(MitigationStrategy.THRESHOLD_ADJUSTMENT)

        if bias_metrics.systematic_bias.severity == SeverityLevel.HIGH:
            strategies.append(MitigationStrategy.ENSEMBLE)

        return strategies

    def mitigate(
        self,
        bias_metrics: StatisticalAnalysis,
        metadata: Mapping[str, Sequence[Any]],
        model: Optional[Any] = None
    ) -> MitigationPlan:
        """
        Build a mitigation plan from statistical bias metrics.

        Args:
            bias_metrics: Output of the statistical analyzer
            metadata: Protected attribute values of the analysed batch
            model: Current model handle, wrapped when an ensemble is selected

        Returns:
            MitigationPlan; empty when no mitigation is needed
        """
        plan = MitigationPlan()
        if not self.needs_mitigation(bias_metrics):
            return plan

        for strategy in self.determine_strategies(bias_metrics):
            if strategy == MitigationStrategy.REWEIGHTING:
                plan.weights = self.apply_reweighting(metadata)
            elif strategy == MitigationStrategy.THRESHOLD_ADJUSTMENT:
                plan.thresholds = self.adjust_thresholds(bias_metrics)
            elif strategy == MitigationStrategy.ENSEMBLE:
                plan.ensemble = self.create_ensemble(model)
            plan.strategies.append(strategy)

        logger.info(f"Mitigation strategies selected: {[s.value for s in plan.strategies]}")
        return plan

    def apply_reweighting(self, metadata: Mapping[str, Sequence[Any]]) -> Dict[str, Dict[str, float]]:
        weights = {}
        for attribute, values in metadata.items():
            attribute_weights = self.calculate_balancing_weights(values)
            if attribute_weights:
                weights[attribute] = attribute_weights
        return weights

    @staticmethod
    def calculate_balancing_weights(values: Sequence[Any]) -> Dict[str, float]:
        """
        Weight per value that would bring every value to an equal share.

        Missing values (None/NaN) form no group, matching the statistical analyzer.
        """
        shares = pd.Series(list(values), dtype=object).dropna().astype(str).value_counts(normalize=True)
        if shares.empty:
            return {}
        target = 1.0 / len(shares)
        return {group: float(target / share) for group, share in sorted(shares.items())}

    def adjust_thresholds(self, bias_metrics: StatisticalAnalysis) -> Dict[str, float]:
        return {
            attribute: self.calculate_optimal_threshold(ratio)
            for attribute, ratio in bias_metrics.disparate_impact.items()
        }

    @staticmethod
    def calculate_optimal_threshold(disparate_impact_score: float) -> float:
        return float(np.clip(BASE_THRESHOLD * disparate_impact_score, *THRESHOLD_BOUNDS))

    @staticmethod
    def create_ensemble(model: Optional[Any]) -> EnsembleConfig:
        return EnsembleConfig(
            models=(model if model is not None else 'current',),
            weights=(1.0,)
        )

    def suggest_text_mitigation(
        self,
        category_results: Mapping[Union[ProtectedCategory, str], CategoryScore]
    ) -> Dict[str, TextMitigation]:
        """
        Recommendation text and phrase alternatives per detected category.

        Unmapped phrases map to an empty list of alternatives.
        """
        suggestions = {}
        for category, result in category_results.items():
            category = ProtectedCategory(category)
            suggestions[category.value] = TextMitigation(
                category=category,
                recommendations=self.catalog.recommendations_for(category),
                alternatives={
                    instance.text: self.catalog.alternatives_for(category, instance.text)
                    for instance in result.instances
                }
            )
        return suggestions

    def evaluate(
        self,
        model: Any,
        original_metrics: StatisticalAnalysis,
        metadata: Mapping[str, Sequence[Any]],
        inputs: Any
    ) -> MitigationEvaluation:
        """
        Re-score with the adjusted model and compare against the original metrics.

        Args:
            model: Object exposing ``predict(inputs)``
            original_metrics: Metrics measured before mitigation
            metadata: Protected attribute values aligned with ``inputs``
            inputs: Model inputs for the re-scored batch
        """
        predictions = np.asarray(model.predict(inputs), dtype=float).ravel()
        mitigated = self.analyzer.analyze(predictions, dict(metadata))

        delta = {
            attribute: mitigated.disparate_impact[attribute] - ratio
            for attribute, ratio in original_metrics.disparate_impact.items()
            if attribute in mitigated.disparate_impact
        }
        resolved = (
            mitigated.systematic_bias.severity == SeverityLevel.LOW and
            original_metrics.systematic_bias.severity != SeverityLevel.LOW
        )

        logger.info(f"Mitigation evaluation: delta={delta}, systematic bias resolved={resolved}")
        return MitigationEvaluation(
            original=original_metrics,
            mitigated=mitigated,
            disparate_impact_delta=delta,
            systematic_bias_resolved=resolved
        )
