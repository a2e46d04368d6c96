"""
Explanation module for Dealer Matching.

Renders a vehicle match's score into the bullet list shown to dealers.
Pure functions: the same match and profile always give the same lines.
"""

from typing import Optional

from .config import AppConfig, get_app_config
from .learning import personalization_components
from .models import FACTOR_LABELS, FACTOR_MAX_POINTS, LearnedPreferences, VehicleMatch

BULLET = "  • "


def _points(value: float) -> str:
    return f"{value:.1f}".rstrip("0").rstrip(".")


def _money(value: float, symbol: str) -> str:
    return f"{symbol}{value:,.0f}"


def explain(
    match: VehicleMatch,
    learned: Optional[LearnedPreferences],
    config: Optional[AppConfig] = None,
) -> list[str]:
    """
    Build the explanation lines for a match.

    Args:
        match: The scored vehicle match
        learned: The dealer's learned preferences (None for a new dealer)

    Returns:
        Ordered list of display strings
    """
    config = config or get_app_config()
    lines = [f"Base match score: {match.base_score}/100"]

    for factor, points in match.score_breakdown.items():
        lines.append(
            f"{BULLET}{FACTOR_LABELS[factor]}: {_points(points)}/{_points(FACTOR_MAX_POINTS[factor])} pts"
        )

    boost = match.personalization_boost
    if boost > 0:
        lines.append(f"+{boost} personalization boost")
        lines.extend(_boost_reasons(match, learned, config))
    elif boost < 0:
        lines.append(f"{boost} personalization penalty")
        lines.append(f"{BULLET}This vehicle is atypical for the vehicles you usually save")
    else:
        lines.append("No personalization applied yet - interact with more vehicles to improve recommendations")

    lines.append(f"Final score: {match.display_score()}/100")
    return lines


def _boost_reasons(
    match: VehicleMatch,
    learned: Optional[LearnedPreferences],
    config: AppConfig,
) -> list[str]:
    """Learned signals that pushed the score up, strongest first."""
    components = [
        c for c in personalization_components(learned, match.listing, config)
        if c.points > 0
    ]
    # stable sort keeps make, model, price order on ties
    components.sort(key=lambda c: c.points, reverse=True)

    reasons = []
    for component in components:
        if component.signal == "make":
            reasons.append(
                f"{BULLET}You frequently save {component.subject} vehicles "
                f"({component.strength * 100:.0f}% preference)"
            )
        elif component.signal == "model":
            reasons.append(
                f"{BULLET}You show interest in {component.subject} models "
                f"({component.strength * 100:.0f}% preference)"
            )
        elif component.signal == "price":
            preferred = learned.learned_price_range.preferred
            reasons.append(
                f"{BULLET}Price matches your typical range "
                f"(around {_money(preferred, config.currency_symbol)})"
            )

    if not reasons:
        reasons.append(f"{BULLET}Similar to vehicles you have saved before")
    return reasons
