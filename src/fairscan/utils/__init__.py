from .metrics import (
    AnalysisMetrics,
    PerformanceTracker
)
from .helpers import (
    save_config,
    load_config,
    calculate_hash,
    utc_timestamp,
    time_it
)

__all__ = [
    # Metrics
    'AnalysisMetrics',
    'PerformanceTracker',

    # Helpers
    'save_config',
    'load_config',
    'calculate_hash',
    'utc_timestamp',
    'time_it'
]
