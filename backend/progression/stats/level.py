"""Player level as a function of experience."""

import math

from progression.errors import InputValidationError

EXPERIENCE_PER_LEVEL_STEP = 100


def level_for(experience: int) -> int:
    """Return ``floor(sqrt(experience / 100)) + 1``.

    Integer square root of the floored quotient gives the same value as the
    real-valued formula for every non-negative integer, without float error.
    """
    if experience < 0:
        raise InputValidationError(f"Experience must be non-negative, got {experience}")
    return math.isqrt(experience // EXPERIENCE_PER_LEVEL_STEP) + 1
