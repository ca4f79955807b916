"""Credit accounting for finished renders."""
from __future__ import annotations

import math
from typing import Optional, Union

SECONDS_PER_CREDIT = 60


def estimate_credits(duration_seconds: Optional[Union[int, float]], *, test_mode: bool = False) -> int:
    """1 credit per started minute of output, minimum 1; test-mode renders are free."""
    if test_mode:
        return 0
    if duration_seconds is None:
        return 1
    try:
        duration = float(duration_seconds)
    except (TypeError, ValueError):
        return 1
    if math.isnan(duration) or duration <= 0:
        return 1
    return max(1, math.ceil(duration / SECONDS_PER_CREDIT))
