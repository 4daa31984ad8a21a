from .patterns import (
    ProtectedCategory,
    SeverityLevel,
    BiasPattern,
    PatternRegistry
)
from .pattern_scanner import (
    BiasInstance,
    CategoryScore,
    CategoryPatternScanner
)
from .statistical_analyzer import (
    StatisticalAnalysis,
    SystematicBiasReport,
    StatisticalBiasAnalyzer
)
from .intersectional import (
    IntersectionPattern,
    IntersectionalAnalysis,
    IntersectionalAnalyzer
)
from .mitigation import (
    MitigationStrategy,
    MitigationPlan,
    MitigationCatalog,
    MitigationStrategyEngine
)
from .detection_system import (
    CoordinatorState,
    BiasDetectionCoordinator
)

__all__ = [
    # Patterns
    'ProtectedCategory',
    'SeverityLevel',
    'BiasPattern',
    'PatternRegistry',

    # Scanning and analysis
    'BiasInstance',
    'CategoryScore',
    'CategoryPatternScanner',
    'StatisticalAnalysis',
    'SystematicBiasReport',
    'StatisticalBiasAnalyzer',
    'IntersectionPattern',
    'IntersectionalAnalysis',
    'IntersectionalAnalyzer',

    # Mitigation
    'MitigationStrategy',
    'MitigationPlan',
    'MitigationCatalog',
    'MitigationStrategyEngine',

    # Coordinator
    'CoordinatorState',
    'BiasDetectionCoordinator'
]
