from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Sequence

MIN_PARTICIPANTS = 2


class ValidationError(ValueError):
    pass


@dataclass(frozen=True)
class Assignment:
    """giver buys a gift for the participant named giftee_name."""
    giver: Any
    giftee_name: str


def assign(participants: Sequence[Any], rng: random.Random | None = None) -> list[Assignment]:
    """
    Shuffle the participants and chain them into a single gifting cycle:
    order[i] gives to order[(i + 1) % n].

    With n >= 2 nobody draws themselves, everyone is drawn exactly once and
    no closed sub-loops form (for n > 2, nobody simply swaps with a partner).
    Participants only need a ``name`` attribute.
    """
    if len(participants) < MIN_PARTICIPANTS:
        raise ValidationError("minimum participants")

    rng = rng or random.Random()
    order = list(participants)
    rng.shuffle(order)

    n = len(order)
    return [Assignment(giver=order[i], giftee_name=order[(i + 1) % n].name) for i in range(n)]
