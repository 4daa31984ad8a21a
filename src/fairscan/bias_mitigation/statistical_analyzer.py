import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from ..config.settings import settings
from ..exceptions import InsufficientDataError
from ..utils.helpers import time_it, utc_timestamp
from .patterns import SeverityLevel

logger = logging.getLogger(__name__)

# Lower bound reported when some group has no favorable outcomes at all
DISPARATE_IMPACT_FLOOR = 1e-3


@dataclass
class SystematicBiasReport:
    """Distribution-level bias findings for a prediction batch."""
    patterns: List[Dict[str, Any]] = field(default_factory=list)
    severity: SeverityLevel = SeverityLevel.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {'patterns': [dict(p) for p in self.patterns], 'severity': self.severity.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SystematicBiasReport':
        return cls(
            patterns=list(data.get('patterns', [])),
            severity=SeverityLevel(data.get('severity', SeverityLevel.LOW.value))
        )


@dataclass
class StatisticalAnalysis:
    """Container for statistical bias analysis results."""
    disparate_impact: Dict[str, float]
    systematic_bias: SystematicBiasReport
    confidence_score: float
    flagged_attributes: List[str] = field(default_factory=list)
    distribution: Dict[str, float] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'disparateImpact': dict(self.disparate_impact),
            'systematicBias': self.systematic_bias.to_dict(),
            'confidenceScore': self.confidence_score,
            'flaggedAttributes': list(self.flagged_attributes),
            'distribution': dict(self.distribution),
            'timestamp': self.timestamp
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatisticalAnalysis':
        return cls(
            disparate_impact=dict(data.get('disparateImpact', {})),
            systematic_bias=SystematicBiasReport.from_dict(data.get('systematicBias', {})),
            confidence_score=data.get('confidenceScore', 0.0),
            flagged_attributes=list(data.get('flaggedAttributes', [])),
            distribution=dict(data.get('distribution', {})),
            timestamp=data.get('timestamp', utc_timestamp())
        )


class StatisticalBiasAnalyzer:
    """Disparate impact and systematic bias over a batch of scored outcomes."""

    def __init__(
        self,
        confidence_threshold: Optional[float] = None,
        disparate_impact_threshold: Optional[float] = None,
        skewness_threshold: Optional[float] = None,
        underrepresentation_threshold: Optional[float] = None,
        min_batch_size: Optional[int] = None
    ):
        """
        Initialize the analyzer.

        Args:
            confidence_threshold: Prediction score above which an outcome is favorable
            disparate_impact_threshold: Ratio below which an attribute is flagged
            skewness_threshold: Absolute skewness above which predictions count as skewed
            underrepresentation_threshold: Minimum group share before flagging
            min_batch_size: Smallest batch analysed
        """
        thresholds = settings.get_analysis_thresholds()
        self.confidence_threshold = (
            thresholds['confidence_threshold'] if confidence_threshold is None else confidence_threshold
        )
        self.disparate_impact_threshold = (
            thresholds['disparate_impact_threshold'] if disparate_impact_threshold is None
            else disparate_impact_threshold
        )
        self.skewness_threshold = (
            thresholds['skewness_threshold'] if skewness_threshold is None else skewness_threshold
        )
        self.underrepresentation_threshold = (
            thresholds['underrepresentation_threshold'] if underrepresentation_threshold is None
            else underrepresentation_threshold
        )
        self.min_batch_size = settings.min_batch_size if min_batch_size is None else min_batch_size

    @time_it
    def analyze(
        self,
        predictions: Sequence[float],
        attribute_metadata: Dict[str, Sequence[Any]]
    ) -> StatisticalAnalysis:
        """
        Analyze a prediction batch against its protected attribute labels.

        Args:
            predictions: Prediction scores
            attribute_metadata: Attribute name to values, aligned by index with predictions

        Returns:
            StatisticalAnalysis

        Raises:
            InsufficientDataError: If the batch is empty or below the minimum size
            ValueError: If attribute values are not aligned with predictions
        """
        scores = np.asarray(predictions, dtype=float).ravel()
        if scores.size == 0 or scores.size < self.min_batch_size:
            raise InsufficientDataError(
                f"Prediction batch of {scores.size} is too small for statistical analysis"
            )

        for attribute, values in attribute_metadata.items():
            if len(values) != scores.size:
                raise ValueError(
                    f"Attribute '{attribute}' has {len(values)} values for {scores.size} predictions"
                )

        disparate_impact = {}
        for attribute, values in attribute_metadata.items():
            ratio = self.calculate_disparate_impact(scores, values)
            if ratio is None:
                logger.warning(f"Disparate impact undefined for attribute {attribute}")
                continue
            disparate_impact[attribute] = ratio

        distribution = self.analyze_distribution(scores)
        systematic_bias = self.detect_systematic_bias(distribution, attribute_metadata)
        flagged = [a for a, ratio in disparate_impact.items() if ratio < self.disparate_impact_threshold]

        if flagged:
            logger.info(f"Disparate impact below {self.disparate_impact_threshold} for: {flagged}")

        return StatisticalAnalysis(
            disparate_impact=disparate_impact,
            systematic_bias=systematic_bias,
            confidence_score=self.calculate_confidence_score(disparate_impact),
            flagged_attributes=flagged,
            distribution=distribution
        )

    def calculate_disparate_impact(
        self,
        predictions: np.ndarray,
        attribute_values: Sequence[Any]
    ) -> Optional[float]:
        """
        Ratio of the lowest to the highest favorable-outcome rate across groups.

        Returns None when no group can be formed.
        """
        frame = pd.DataFrame({'favorable': predictions > self.confidence_threshold, 'group': list(attribute_values)})
        rates = frame.groupby('group', sort=False)['favorable'].mean()

        if rates.empty:
            return None

        min_rate, max_rate = float(rates.min()), float(rates.max())
        if min_rate == max_rate:
            return 1.0

        return max(min_rate / max_rate, DISPARATE_IMPACT_FLOOR)

    def analyze_distribution(self, predictions: np.ndarray) -> Dict[str, float]:
        """Mean, standard deviation and skewness of the predictions."""
        skewness = float(stats.skew(predictions, bias=True)) if predictions.size > 1 else 0.0
        if np.isnan(skewness):
            # Constant predictions have no defined skew
            skewness = 0.0

        return {
            'mean': float(np.mean(predictions)),
            'standardDeviation': float(np.std(predictions)),
            'skewness': skewness
        }

    def detect_systematic_bias(
        self,
        distribution: Dict[str, float],
        attribute_metadata: Dict[str, Sequence[Any]]
    ) -> SystematicBiasReport:
        """Flag skewed predictions and underrepresented groups."""
        report = SystematicBiasReport()

        if abs(distribution['skewness']) > self.skewness_threshold:
            report.patterns.append({
                'type': 'skewed_predictions',
                'details': 'Predictions show significant skew towards certain outcomes',
                'skewness': distribution['skewness']
            })
            report.severity = SeverityLevel.MEDIUM

        representation_issues = self.check_representation(attribute_metadata)
        if representation_issues:
            report.patterns.append({
                'type': 'underrepresentation',
                'details': 'Some groups are underrepresented in the analysis',
                'affected': representation_issues
            })
            report.severity = SeverityLevel.HIGH

        return report

    def check_representation(self, attribute_metadata: Dict[str, Sequence[Any]]) -> List[Dict[str, Any]]:
        """List attributes whose smallest group share falls under the threshold."""
        underrepresented = []

        for attribute, values in attribute_metadata.items():
            shares = pd.Series(list(values)).value_counts(normalize=True)
            if shares.empty:
                continue

            min_share = float(shares.min())
            if min_share < self.underrepresentation_threshold:
                underrepresented.append({
                    'attribute': attribute,
                    'representation': min_share,
                    'groups': sorted(str(g) for g, share in shares.items() if share < self.underrepresentation_threshold)
                })

        return underrepresented

    @staticmethod
    def calculate_confidence_score(disparate_impact: Dict[str, float]) -> float:
        """Mean disparate impact ratio clamped to [0, 1]; 0 when nothing was computable."""
        if not disparate_impact:
            return 0.0
        return float(np.clip(np.mean(list(disparate_impact.values())), 0.0, 1.0))
