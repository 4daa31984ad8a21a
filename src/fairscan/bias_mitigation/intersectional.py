import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Mapping, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from ..config.settings import settings
from .pattern_scanner import BiasInstance, CategoryScore
from .patterns import ProtectedCategory, SeverityLevel

logger = logging.getLogger(__name__)

CategoryPair = Tuple[ProtectedCategory, ProtectedCategory]

INTERSECTION_SEVERITY_THRESHOLDS = (
    (1.0, SeverityLevel.CRITICAL),
    (0.8, SeverityLevel.HIGH),
    (0.5, SeverityLevel.MEDIUM),
)

DEFAULT_INTERSECTION_WEIGHTS: Dict[CategoryPair, float] = {
    (ProtectedCategory.GENDER, ProtectedCategory.RACE): 1.2,
    (ProtectedCategory.GENDER, ProtectedCategory.AGE): 1.1,
    (ProtectedCategory.RACE, ProtectedCategory.DISABILITY): 1.15,
    (ProtectedCategory.GENDER, ProtectedCategory.SOCIOECONOMIC): 1.1,
    (ProtectedCategory.DISABILITY, ProtectedCategory.AGE): 1.15,
    (ProtectedCategory.RACE, ProtectedCategory.RELIGION): 1.1,
    (ProtectedCategory.NATIONALITY, ProtectedCategory.RELIGION): 1.1,
    (ProtectedCategory.LANGUAGE, ProtectedCategory.CULTURAL): 1.05,
}

DEFAULT_INTERSECTION_RECOMMENDATIONS: Dict[CategoryPair, List[str]] = {
    (ProtectedCategory.GENDER, ProtectedCategory.RACE): [
        'Consider diverse representation across both gender and racial dimensions',
        'Examine power dynamics and privilege in intersectional contexts',
        'Include perspectives from individuals with varied gender and racial identities',
    ],
    (ProtectedCategory.RACE, ProtectedCategory.DISABILITY): [
        'Address compounded barriers faced by individuals with disabilities from different racial backgrounds',
        'Consider cultural differences in disability perspectives',
        'Ensure accessibility solutions are culturally appropriate',
    ],
    (ProtectedCategory.GENDER, ProtectedCategory.AGE): [
        'Consider how gender biases may differ across age groups',
        'Address stereotypes that combine age and gender assumptions',
        'Include diverse age representations within gender discussions',
    ],
}

GENERIC_INTERSECTION_RECOMMENDATIONS = [
    'Review content for combined impact of multiple bias categories',
    'Consider how different aspects of identity interact',
    'Seek feedback from individuals with intersecting identities',
]


def pair_key(pair: CategoryPair) -> str:
    return f"{pair[0].value}_{pair[1].value}"


@dataclass(frozen=True)
class OverlappingInstance:
    """Two instances from different categories that sit close together."""
    first: BiasInstance
    second: BiasInstance

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.first.text,
            'context': self.first.context,
            'index': self.first.index,
            'pairedWith': self.second.to_dict()
        }


@dataclass(frozen=True)
class IntersectionPattern:
    """Compounded bias between an ordered pair of categories."""
    categories: CategoryPair
    score: float
    overlapping_instances: Tuple[OverlappingInstance, ...]
    severity: SeverityLevel
    category_scores: Tuple[CategoryScore, CategoryScore]

    @property
    def key(self) -> str:
        return pair_key(self.categories)

    def to_dict(self) -> Dict[str, Any]:
        first, second = self.category_scores
        return {
            'score': self.score,
            'overlappingInstances': [o.to_dict() for o in self.overlapping_instances],
            'severity': self.severity.value,
            'categories': {
                'category1': {'name': first.category.value, 'score': first.score, 'severity': first.severity.value},
                'category2': {'name': second.category.value, 'score': second.score, 'severity': second.severity.value}
            }
        }


@dataclass
class IntersectionalAnalysis:
    """Result of an intersectional pass over per-category scores."""
    patterns: Dict[str, IntersectionPattern] = field(default_factory=dict)
    summary: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'patterns': {key: pattern.to_dict() for key, pattern in self.patterns.items()},
            'summary': self.summary,
            'recommendations': [dict(r) for r in self.recommendations]
        }


class IntersectionSpec(BaseModel):
    """One configured category pair."""
    categories: Tuple[ProtectedCategory, ProtectedCategory]
    weight: float = Field(gt=0)
    recommendations: List[str] = Field(default_factory=list)


class IntersectionTable(BaseModel):
    intersections: List[IntersectionSpec]


class IntersectionalAnalyzer:
    """
    Combines per-category results pairwise to find compounded bias.

    Only the configured pairs are examined, in configuration order. A pair
    produces a pattern only when both of its categories were detected.
    """

    def __init__(
        self,
        weights: Optional[Mapping[CategoryPair, float]] = None,
        recommendations: Optional[Mapping[CategoryPair, List[str]]] = None,
        overlap_distance: Optional[int] = None
    ):
        """
        Initialize the analyzer.

        Args:
            weights: Ordered category pair to weight; defaults to the built-in pairs
            recommendations: Ordered category pair to recommendation text
            overlap_distance: Offset distance below which two instances overlap
        """
        self.weights: Dict[CategoryPair, float] = dict(
            DEFAULT_INTERSECTION_WEIGHTS if weights is None else weights
        )
        self.recommendations: Dict[CategoryPair, List[str]] = dict(
            DEFAULT_INTERSECTION_RECOMMENDATIONS if recommendations is None else recommendations
        )
        self.overlap_distance = settings.overlap_distance if overlap_distance is None else overlap_distance

    @classmethod
    def from_config(cls, config: Dict[str, Any], overlap_distance: Optional[int] = None) -> 'IntersectionalAnalyzer':
        """
        Build an analyzer from an ``intersections`` table.

        Raises:
            ValueError: If the table fails validation
        """
        try:
            table = IntersectionTable.model_validate(config)
        except ValidationError as e:
            raise ValueError(f"Invalid intersection table: {e}") from e

        weights = {entry.categories: entry.weight for entry in table.intersections}
        recommendations = {
            entry.categories: entry.recommendations
            for entry in table.intersections if entry.recommendations
        }
        return cls(weights, recommendations, overlap_distance)

    @property
    def pairs(self) -> List[CategoryPair]:
        return list(self.weights.keys())

    def analyze(
        self,
        category_results: Mapping[Union[ProtectedCategory, str], CategoryScore]
    ) -> IntersectionalAnalysis:
        """
        Analyze intersectional bias patterns.

        Args:
            category_results: Per-category scores from the pattern scanner

        Returns:
            IntersectionalAnalysis with patterns, summary and recommendations
        """
        results = {ProtectedCategory(category): score for category, score in category_results.items()}
        patterns: Dict[str, IntersectionPattern] = {}

        for pair, weight in self.weights.items():
            first, second = results.get(pair[0]), results.get(pair[1])
            if first is None or second is None or not (first.detected and second.detected):
                continue

            pattern = self.calculate_intersection(pair, first, second, weight)
            if pattern.score > 0:
                patterns[pattern.key] = pattern

        if patterns:
            logger.info(f"Intersectional analysis found {len(patterns)} patterns: {list(patterns)}")

        return IntersectionalAnalysis(
            patterns=patterns,
            summary=self.generate_summary(patterns),
            recommendations=self.generate_recommendations(patterns)
        )

    def calculate_intersection(
        self,
        pair: CategoryPair,
        first: CategoryScore,
        second: CategoryScore,
        weight: float
    ) -> IntersectionPattern:
        """Weighted intersection score and overlapping instances for one pair."""
        weighted_score = ((first.score + second.score) / 2) * weight
        return IntersectionPattern(
            categories=pair,
            score=weighted_score,
            overlapping_instances=self.find_overlapping_instances(first.instances, second.instances),
            severity=SeverityLevel.from_score(weighted_score, INTERSECTION_SEVERITY_THRESHOLDS),
            category_scores=(first, second)
        )

    def find_overlapping_instances(
        self,
        instances1: Tuple[BiasInstance, ...],
        instances2: Tuple[BiasInstance, ...]
    ) -> Tuple[OverlappingInstance, ...]:
        return tuple(
            OverlappingInstance(first, second)
            for first in instances1
            for second in instances2
            if self.are_overlapping(first, second)
        )

    def are_overlapping(self, first: BiasInstance, second: BiasInstance) -> bool:
        return (
            abs(first.index - second.index) < self.overlap_distance or
            abs(first.end - second.end) < self.overlap_distance
        )

    @staticmethod
    def generate_summary(patterns: Dict[str, IntersectionPattern]) -> Dict[str, Any]:
        distribution = {level.value: 0 for level in reversed(SeverityLevel)}
        for pattern in patterns.values():
            distribution[pattern.severity.value] += 1

        return {
            'totalPatterns': len(patterns),
            'criticalIntersections': [k for k, p in patterns.items() if p.severity == SeverityLevel.CRITICAL],
            'highPriorityIntersections': [k for k, p in patterns.items() if p.severity == SeverityLevel.HIGH],
            'severityDistribution': distribution
        }

    def generate_recommendations(self, patterns: Dict[str, IntersectionPattern]) -> List[Dict[str, Any]]:
        """Recommendations for high and critical pairs only."""
        recommendations = []
        for key, pattern in patterns.items():
            if pattern.severity.rank >= SeverityLevel.HIGH.rank:
                recommendations.append({
                    'intersection': key,
                    'severity': pattern.severity.value,
                    'suggestions': list(self.recommendations.get(pattern.categories, GENERIC_INTERSECTION_RECOMMENDATIONS))
                })
        return recommendations
