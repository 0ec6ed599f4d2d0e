"""
Stop type classification for the recovery bank.

Classifiers map a time point to a StopType. The default chain tries explicit
per-stop configuration first and falls back to keyword matching on the name.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from connection_optimizer.models.recovery import StopType
from connection_optimizer.models.schedule import TimePoint

logger = logging.getLogger(__name__)


# Checked in order; first match wins.
DEFAULT_NAME_KEYWORDS: Sequence[Tuple[StopType, Tuple[str, ...]]] = (
    (StopType.TERMINAL, ("terminal", "station")),
    (StopType.SCHOOL, ("school", "collegiate", "secondary")),
    (StopType.HOSPITAL, ("hospital", "medical")),
    (StopType.MALL, ("mall", "centre", "plaza")),
    (StopType.MAJOR_STOP, ("georgian", "college", "university")),
)


class StopClassifier:
    """Base classifier. Returns None when it has no opinion."""

    def classify(self, time_point: TimePoint) -> Optional[StopType]:
        raise NotImplementedError


class NameKeywordClassifier(StopClassifier):
    """Substring match of the lower-cased stop name against keyword groups."""

    def __init__(
        self,
        keywords: Optional[Sequence[Tuple[StopType, Iterable[str]]]] = None,
        default: Optional[StopType] = StopType.REGULAR,
    ):
        source = keywords if keywords is not None else DEFAULT_NAME_KEYWORDS
        self.keywords: List[Tuple[StopType, Tuple[str, ...]]] = [
            (stop_type, tuple(word.lower() for word in words)) for stop_type, words in source
        ]
        self.default = default

    def classify(self, time_point: TimePoint) -> Optional[StopType]:
        name = time_point.name.lower()
        for stop_type, words in self.keywords:
            if any(word in name for word in words):
                return stop_type
        return self.default


class ExplicitStopClassifier(StopClassifier):
    """Per-stop configuration keyed by stop id."""

    def __init__(self, mapping: Optional[Dict[str, StopType]] = None):
        self.mapping: Dict[str, StopType] = {
            stop_id: StopType(stop_type) for stop_id, stop_type in (mapping or {}).items()
        }

    def classify(self, time_point: TimePoint) -> Optional[StopType]:
        return self.mapping.get(time_point.id)


class ChainedStopClassifier(StopClassifier):
    """Tries each classifier in order; falls back to REGULAR."""

    def __init__(self, *classifiers: StopClassifier):
        self.classifiers = list(classifiers)

    def classify(self, time_point: TimePoint) -> StopType:
        for classifier in self.classifiers:
            stop_type = classifier.classify(time_point)
            if stop_type is not None:
                return stop_type
        logger.debug(f"No classifier matched stop {time_point.id}, using regular")
        return StopType.REGULAR


def build_default_classifier(explicit: Optional[Dict[str, StopType]] = None) -> ChainedStopClassifier:
    return ChainedStopClassifier(ExplicitStopClassifier(explicit), NameKeywordClassifier())


__all__ = [
    "DEFAULT_NAME_KEYWORDS",
    "StopClassifier",
    "NameKeywordClassifier",
    "ExplicitStopClassifier",
    "ChainedStopClassifier",
    "build_default_classifier",
]
