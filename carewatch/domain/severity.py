"""
Severity classification for vital signs.

Each signal has fixed bands evaluated outer-to-inner, so the widest deviation
is checked first. Bounds are strict: a heart rate of exactly 100 bpm is not
above 100 and falls through to the Warning band.
"""

from typing import NamedTuple

from carewatch.domain.models import SeverityTier, SignalKind


class Band(NamedTuple):
    tier: SeverityTier
    above: float
    below: float


HEART_RATE_BANDS: tuple[Band, ...] = (
    Band(SeverityTier.CRITICAL, above=100, below=50),
    Band(SeverityTier.WARNING, above=90, below=60),
    Band(SeverityTier.CAUTION, above=85, below=65),
)

RESPIRATORY_RATE_BANDS: tuple[Band, ...] = (
    Band(SeverityTier.CRITICAL, above=25, below=10),
    Band(SeverityTier.WARNING, above=22, below=12),
    Band(SeverityTier.CAUTION, above=20, below=14),
)

BANDS_BY_SIGNAL = {
    SignalKind.HEART_RATE: HEART_RATE_BANDS,
    SignalKind.RESPIRATORY_RATE: RESPIRATORY_RATE_BANDS,
}


def _classify(value: float | None, bands: tuple[Band, ...]) -> SeverityTier:
    # Missing or non-positive values mean "no reading", not bradycardia
    if value is None or value <= 0:
        return SeverityTier.NORMAL
    for band in bands:
        if value > band.above or value < band.below:
            return band.tier
    return SeverityTier.NORMAL


def classify_heart_rate(value: float | None) -> SeverityTier:
    return _classify(value, HEART_RATE_BANDS)


def classify_respiratory_rate(value: float | None) -> SeverityTier:
    return _classify(value, RESPIRATORY_RATE_BANDS)


def classify(kind: SignalKind, value: float | None) -> SeverityTier:
    """Classify ``value`` using the bands for ``kind``."""
    return _classify(value, BANDS_BY_SIGNAL[kind])


def composite_severity(
    *tiers: SeverityTier | None, baseline: SeverityTier | None = None
) -> SeverityTier:
    """
    Combine per-signal tiers into one.

    The result is the maximum tier. An externally supplied ``baseline`` can
    only raise the result, never lower it.
    """
    present = [tier for tier in tiers if tier is not None]
    if baseline is not None:
        present.append(baseline)
    return max(present, default=SeverityTier.NORMAL)
