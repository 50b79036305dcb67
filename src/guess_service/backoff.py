from __future__ import annotations


def reconnect_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect ``attempt`` (0-based): ``min(base * 2**attempt, cap)``."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    # 2**attempt grows without bound; stop doubling once the cap is reached.
    delay = float(base)
    for _ in range(attempt):
        delay *= 2.0
        if delay >= cap:
            return float(cap)
    return min(delay, float(cap))
