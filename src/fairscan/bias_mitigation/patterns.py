import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Sequence, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..utils.helpers import load_config

logger = logging.getLogger(__name__)


class ProtectedCategory(str, Enum):
    """Protected categories content is scanned for."""
    GENDER = "gender"
    RACE = "race"
    AGE = "age"
    DISABILITY = "disability"
    SOCIOECONOMIC = "socioeconomic"
    CULTURAL = "cultural"
    LANGUAGE = "language"
    RELIGION = "religion"
    NATIONALITY = "nationality"
    ETHNICITY = "ethnicity"


class SeverityLevel(str, Enum):
    """Severity tiers, ordered low to critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def from_score(
        cls,
        score: float,
        thresholds: Sequence[Tuple[float, "SeverityLevel"]]
    ) -> "SeverityLevel":
        """Map a score onto a tier; ``thresholds`` are (lower bound, tier), highest first."""
        for lower_bound, level in thresholds:
            if score >= lower_bound:
                return level
        return cls.LOW


_SEVERITY_ORDER = [SeverityLevel.LOW, SeverityLevel.MEDIUM, SeverityLevel.HIGH, SeverityLevel.CRITICAL]

CATEGORY_SEVERITY_THRESHOLDS = (
    (0.9, SeverityLevel.CRITICAL),
    (0.7, SeverityLevel.HIGH),
    (0.4, SeverityLevel.MEDIUM),
)


@dataclass(frozen=True)
class BiasPattern:
    """A compiled detection rule for one category."""
    category: ProtectedCategory
    regex: "re.Pattern[str]"
    weight: float
    description: str = ""

    def finditer(self, text: str):
        return self.regex.finditer(text)


class PatternSpec(BaseModel):
    """One pattern entry as written in a pattern table file."""
    pattern: str
    weight: float = Field(gt=0, le=1)
    description: str = ""
    case_sensitive: bool = False

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            compiled = re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid regular expression {v!r}: {e}")
        if compiled.match(""):
            raise ValueError(f"Pattern {v!r} matches the empty string")
        return v


class PatternTable(BaseModel):
    """A full pattern table keyed by category."""
    patterns: Dict[ProtectedCategory, List[PatternSpec]]


DEFAULT_PATTERN_TABLE: Dict[str, List[Dict[str, Any]]] = {
    "gender": [
        {"pattern": r"\b(he|she) is assumed\b", "weight": 0.8, "description": "gendered assumption"},
        {"pattern": r"\b(male|female) only\b", "weight": 0.9, "description": "gender-exclusive requirement"},
    ],
    "disability": [
        {"pattern": r"\b(normal|abnormal) person\b", "weight": 0.9, "description": "normality framing"},
        {"pattern": r"\b(suffering|victim) of\b", "weight": 0.7, "description": "victimizing framing"},
    ],
    "age": [
        {"pattern": r"\btoo old to\b", "weight": 0.7, "description": "age dismissal"},
        {"pattern": r"\b(young|recent graduates?) only\b", "weight": 0.8, "description": "age-exclusive requirement"},
    ],
    "race": [
        {"pattern": r"\b(articulate|well[- ]spoken) for a\b", "weight": 0.8, "description": "backhanded compliment"},
    ],
    "ethnicity": [
        {"pattern": r"\bethnic(ally)? (looking|sounding)\b", "weight": 0.6, "description": "othering descriptor"},
    ],
    "language": [
        {"pattern": r"\bnative (english )?speakers? only\b", "weight": 0.8, "description": "language-exclusive requirement"},
        {"pattern": r"\bbroken english\b", "weight": 0.5, "description": "language disparagement"},
    ],
    "religion": [
        {"pattern": r"\b(godless|heathens?)\b", "weight": 0.7, "description": "religious disparagement"},
    ],
    "nationality": [
        {"pattern": r"\bforeigners need not apply\b", "weight": 0.9, "description": "nationality exclusion"},
        {"pattern": r"\billegals\b", "weight": 0.8, "description": "dehumanizing label"},
    ],
    "socioeconomic": [
        {"pattern": r"\b(ghetto|trailer trash)\b", "weight": 0.8, "description": "class disparagement"},
    ],
    "cultural": [
        {"pattern": r"\b(uncivilized|primitive) (culture|people)\b", "weight": 0.8, "description": "cultural disparagement"},
    ],
}


class PatternRegistry:
    """Validated, compiled pattern table keyed by ProtectedCategory."""

    def __init__(self, table: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        """
        Build the registry from a raw table.

        Args:
            table: Mapping of category name to pattern entries; defaults to the built-in table

        Raises:
            ValueError: If the table fails validation
        """
        raw_table = DEFAULT_PATTERN_TABLE if table is None else table
        try:
            validated = PatternTable.model_validate({"patterns": raw_table})
        except ValidationError as e:
            raise ValueError(f"Invalid pattern table: {e}") from e

        self._patterns: Dict[ProtectedCategory, Tuple[BiasPattern, ...]] = {}
        for category, entries in validated.patterns.items():
            self._patterns[category] = tuple(
                BiasPattern(
                    category=category,
                    regex=re.compile(entry.pattern, 0 if entry.case_sensitive else re.IGNORECASE),
                    weight=entry.weight,
                    description=entry.description
                )
                for entry in entries
            )

        logger.info(
            f"PatternRegistry loaded {sum(len(p) for p in self._patterns.values())} patterns "
            f"for {len(self._patterns)} categories"
        )

    @classmethod
    def from_file(cls, filepath: Union[str, Path]) -> "PatternRegistry":
        """Load a registry from a YAML or JSON pattern table."""
        data = load_config(filepath)
        if not isinstance(data, dict):
            raise ValueError(f"Pattern table {filepath} must be a mapping of category to patterns")
        return cls(data.get("patterns", data))

    @property
    def categories(self) -> List[ProtectedCategory]:
        return list(self._patterns.keys())

    def patterns_for(self, category: Union[ProtectedCategory, str]) -> Tuple[BiasPattern, ...]:
        return self._patterns.get(ProtectedCategory(category), ())
