"""
Seasonal demand multipliers.

The category × month table is configuration data
(``Settings.seasonal_multipliers``); categories or months missing from it
are neutral (1.0).
"""

from core.config import get_settings


def get_seasonal_multiplier(
    category: str | None,
    month: int,
    table: dict[str, dict[int, float]] | None = None,
) -> float:
    """Multiplier for ``category`` in ``month`` (1-12), 1.0 when unknown."""
    if not category:
        return 1.0
    if table is None:
        table = get_settings().seasonal_multipliers
    return float(table.get(category, {}).get(month, 1.0))


def apply_seasonal_adjustment(priority: int, multiplier: float, bump_threshold: float) -> tuple[int, bool]:
    """Raise priority by one level (capped at 5) when multiplier > threshold.

    Never lowers priority.
    """
    if multiplier > bump_threshold:
        return min(5, priority + 1), True
    return priority, False
