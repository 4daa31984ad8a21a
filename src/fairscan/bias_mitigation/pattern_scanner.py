import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, Union

from ..config.settings import settings
from .patterns import (
    CATEGORY_SEVERITY_THRESHOLDS,
    PatternRegistry,
    ProtectedCategory,
    SeverityLevel
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BiasInstance:
    """One concrete pattern match inside a piece of text."""
    text: str
    index: int
    context: str

    @property
    def end(self) -> int:
        return self.index + len(self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {'text': self.text, 'index': self.index, 'context': self.context}


@dataclass(frozen=True)
class CategoryScore:
    """Aggregate scan result for one category on one content item."""
    category: ProtectedCategory
    score: float
    instances: Tuple[BiasInstance, ...] = field(default_factory=tuple)
    severity: SeverityLevel = SeverityLevel.LOW

    @property
    def detected(self) -> bool:
        return self.score > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'instances': [instance.to_dict() for instance in self.instances],
            'severity': self.severity.value
        }


def content_text(content: Union[str, Dict[str, Any]]) -> str:
    """Extract the text body from a content payload."""
    if isinstance(content, str):
        return content
    return content.get('text') or ''


def match_context(text: str, index: int, window: int) -> str:
    """Slice of ``text`` within ``window`` characters either side of ``index``."""
    start = max(0, index - window)
    end = min(len(text), index + window)
    return text[start:end]


class CategoryPatternScanner:
    """Scans text for the lexical bias patterns of a category."""

    def __init__(
        self,
        registry: Optional[PatternRegistry] = None,
        context_window: Optional[int] = None
    ):
        self.registry = registry or PatternRegistry()
        self.context_window = settings.context_window if context_window is None else context_window

    def scan(
        self,
        content: Union[str, Dict[str, Any]],
        category: Union[ProtectedCategory, str]
    ) -> CategoryScore:
        """
        Score content against every pattern of one category.

        Args:
            content: Text or a payload with a ``text`` field
            category: Category to scan for

        Returns:
            CategoryScore with instances ordered by position
        """
        category = ProtectedCategory(category)
        text = content_text(content)
        instances: List[BiasInstance] = []
        weighted_matches: List[float] = []

        for pattern in self.registry.patterns_for(category):
            matches = [
                BiasInstance(
                    text=match.group(0),
                    index=match.start(),
                    context=match_context(text, match.start(), self.context_window)
                )
                for match in pattern.finditer(text)
            ]
            if matches:
                weighted_matches.append(len(matches) * pattern.weight)
                instances.extend(matches)

        instances.sort(key=lambda instance: instance.index)
        score = math.fsum(weighted_matches)

        if instances:
            logger.debug(f"{category.value}: {len(instances)} matches, score {score:.3f}")

        return CategoryScore(
            category=category,
            score=score,
            instances=tuple(instances),
            severity=SeverityLevel.from_score(score, CATEGORY_SEVERITY_THRESHOLDS)
        )
