"""Writing prompts offered when composing an entry."""

from __future__ import annotations

import random
from typing import Optional, Sequence

PROMPTS: Sequence[str] = (
    "What made you smile today?",
    "Describe a challenge you overcame recently.",
    "Write about something you're grateful for.",
    "What is a goal you have for this week?",
    "Recall a funny or surprising moment from today.",
    "If you could travel anywhere tomorrow, where would you go?",
    "Write about someone who inspired you recently.",
    "Describe a memory that makes you happy.",
)


def random_prompt(rng: Optional[random.Random] = None) -> str:
    """Pick one prompt at random."""
    return (rng or random).choice(PROMPTS)
