"""Sentinel encoding for limits exposed as an ``<x>_enabled`` flag plus ``<x>``.

The store keeps one signed number per limit: any negative value means the
limit is switched off, anything else is the active threshold.
"""

from __future__ import annotations

from dataclasses import dataclass

DISABLED_SENTINEL = -1


@dataclass(frozen=True)
class SentinelPair:
    enabled: bool
    threshold: float | int | None = None

    @classmethod
    def disabled(cls) -> "SentinelPair":
        return cls(False, None)


def encode(enabled: bool, threshold: float | int | None) -> float | int:
    if not enabled:
        return DISABLED_SENTINEL
    # Callers validate threshold >= 0 before getting here.
    return threshold  # type: ignore[return-value]


def decode(stored: float | int | None) -> SentinelPair:
    if stored is None or stored < 0:
        return SentinelPair.disabled()
    return SentinelPair(True, stored)


def wire_threshold(pair: SentinelPair, disabled_value: float | int = DISABLED_SENTINEL) -> float | int:
    """Magnitude reported to clients for ``pair``."""

    if not pair.enabled or pair.threshold is None:
        return disabled_value
    return pair.threshold
