import logging
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from collections import deque
import numpy as np

from .helpers import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class AnalysisMetrics:
    """Container for the metrics of one content analysis."""
    categories_analyzed: int = 0
    bias_instances: int = 0
    severity_distribution: Dict[str, int] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    confidence: float = 0.0
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to the snapshot layout stored in model history."""
        return {
            'timestamp': self.timestamp,
            'categoriesAnalyzed': self.categories_analyzed,
            'biasInstances': self.bias_instances,
            'severityDistribution': dict(self.severity_distribution),
            'processingTimeMs': self.processing_time_ms,
            'confidence': self.confidence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisMetrics':
        """Create AnalysisMetrics from a stored snapshot."""
        return cls(
            categories_analyzed=data.get('categoriesAnalyzed', 0),
            bias_instances=data.get('biasInstances', 0),
            severity_distribution=data.get('severityDistribution', {}),
            processing_time_ms=data.get('processingTimeMs', 0.0),
            confidence=data.get('confidence', 0.0),
            timestamp=data.get('timestamp', utc_timestamp())
        )


class PerformanceTracker:
    """Track analysis performance over time."""

    def __init__(self, max_history: int = 1000):
        """
        Initialize performance tracker.

        Args:
            max_history: Maximum number of analyses to keep in history
        """
        self.max_history = max_history
        self.analysis_history = deque(maxlen=max_history)
        self.total_analyses = 0

    def add_analysis_metrics(self, metrics: AnalysisMetrics) -> None:
        """Add the metrics of a finished analysis."""
        self.analysis_history.append(metrics)
        self.total_analyses += 1

    def get_latest_metrics(self) -> Optional[AnalysisMetrics]:
        """Get latest analysis metrics."""
        return self.analysis_history[-1] if self.analysis_history else None

    def get_metrics_trend(self, metric_name: str, window: int = 10) -> List[float]:
        """Get trend for a specific metric."""
        recent_metrics = list(self.analysis_history)[-window:]
        return [float(getattr(m, metric_name, 0.0)) for m in recent_metrics]

    def calculate_performance_summary(self) -> Dict[str, Any]:
        """Calculate performance summary over the retained history."""
        if not self.analysis_history:
            return {'totalAnalyses': self.total_analyses, 'message': 'No analysis metrics available'}

        metrics = list(self.analysis_history)
        times = [m.processing_time_ms for m in metrics]
        instances = [m.bias_instances for m in metrics]

        summary = {
            'totalAnalyses': self.total_analyses,
            'processingTimeMs': {
                'latest': float(times[-1]),
                'mean': float(np.mean(times)),
                'max': float(np.max(times))
            },
            'biasInstances': {
                'latest': int(instances[-1]),
                'mean': float(np.mean(instances))
            }
        }

        recent_times = self.get_metrics_trend('processing_time_ms', 5)
        if len(recent_times) >= 2:
            summary['processingTrend'] = 'slowing' if recent_times[-1] > recent_times[0] else 'stable'

        return summary
