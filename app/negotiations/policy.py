"""Offer decision policy: when to accept, counter or walk away.

The advisor only drafts. Every amount it proposes goes through apply_floor()
before it can be sent, and the accept/walk-away calls are made here from the
rates and the round count alone, whatever the advisor's action hint says.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Action(str, Enum):
    ACCEPT = "accept"
    COUNTER = "counter"
    WALK_AWAY = "walk_away"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str


def default_floor_rate(target_rate: float, tolerance_percent: float) -> float:
    """Floor = target minus a configured tolerance, e.g. $2000 at 10% -> $1800."""
    return round(target_rate * (1 - tolerance_percent / 100), 2)


def decide_on_counter(
    counter: float,
    target_rate: float,
    floor_rate: float,
    round: int,
    max_rounds: int,
) -> Decision:
    """Decide what to do with a broker counter. `round` is already incremented.

    Priority order:
    1. counter >= target                          -> accept, no advisor needed
    2. counter >= floor on the last allowed round -> accept rather than expire
    3. no rounds left                             -> walk away
    4. otherwise                                  -> counter (advisor drafts it)
    """
    if counter >= target_rate:
        return Decision(Action.ACCEPT, f"Counter ${counter:,.2f} meets target ${target_rate:,.2f}")

    if counter >= floor_rate and round == max_rounds - 1:
        return Decision(
            Action.ACCEPT,
            f"Counter ${counter:,.2f} clears floor ${floor_rate:,.2f} on the last allowed round",
        )

    if round >= max_rounds:
        return Decision(Action.WALK_AWAY, f"Round limit reached ({round}/{max_rounds})")

    return Decision(
        Action.COUNTER,
        f"Counter ${counter:,.2f} below target ${target_rate:,.2f}, round {round}/{max_rounds}",
    )


def apply_floor(proposed: float, floor_rate: float, broker_counter: Optional[float] = None) -> float:
    """Veto an advisor amount that would give away value.

    Never offer below the floor, and never ask for less than the broker
    already has on the table.
    """
    minimum = floor_rate
    if broker_counter is not None:
        minimum = max(minimum, broker_counter)
    return round(max(proposed, minimum), 2)


# ---------------------------------------------------------------------------
# Counter-offer extraction from free-text broker replies
# ---------------------------------------------------------------------------

_NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"

# Tried in order; first match wins. Per-mile phrasing first so that
# "$2.50/mile" isn't read as a flat $2.50.
_COUNTER_PATTERNS = [
    re.compile(r"\$\s*" + _NUMBER + r"\s*/\s*mi(?:le)?\b", re.IGNORECASE),
    re.compile(r"\$\s*" + _NUMBER + r"\s+per\s+mi(?:le)?\b", re.IGNORECASE),
    re.compile(_NUMBER + r"\s*/\s*mi(?:le)?\b", re.IGNORECASE),
    re.compile(r"\$\s*" + _NUMBER),
]


def parse_counter_offer(text: Optional[str]) -> Optional[float]:
    """Pull the broker's counter amount out of an email body.

    Handles "$1,850", "$1850.00", "$2.50/mile", "$2.50 per mile" and
    "2.50/mi". Returns None when nothing usable is found.
    """
    if not text:
        return None
    for pattern in _COUNTER_PATTERNS:
        match = pattern.search(text)
        if match:
            value = float(match.group(1).replace(",", ""))
            if value > 0:
                return value
    return None


# ---------------------------------------------------------------------------
# Status messages the engine sends without consulting the advisor
# ---------------------------------------------------------------------------


def acceptance_message(load_id: str, rate: float) -> str:
    return (
        f"Thank you. We accept ${rate:,.2f} for load {load_id}. "
        "Please send the rate confirmation and we will get this load moving."
    )


def walk_away_message(load_id: str, counter: float) -> str:
    return (
        f"Thank you for your time on load {load_id}. Unfortunately ${counter:,.2f} "
        "does not work for us, so we will have to pass on this one."
    )
