"""Qualification layer - Transition detection and alert de-duplication."""

from hyperliquid_whale_tracker.detector.dedup import AlertDedupCache, RedisAlertDedupCache
from hyperliquid_whale_tracker.detector.models import (
    AlertRecord,
    AlertSignature,
    Transition,
    TransitionKind,
)
from hyperliquid_whale_tracker.detector.qualification import (
    QualificationThresholds,
    detect_transition,
    is_qualifying,
)

__all__ = [
    "AlertDedupCache",
    "AlertRecord",
    "AlertSignature",
    "QualificationThresholds",
    "RedisAlertDedupCache",
    "Transition",
    "TransitionKind",
    "detect_transition",
    "is_qualifying",
]
