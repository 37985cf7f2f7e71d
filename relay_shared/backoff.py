import random


def backoff_delay(attempt: int, base_delay_s: float = 1.0, max_delay_s: float = 32.0) -> float:
    """Exponential backoff for the given 1-based attempt, capped, plus up to 10% jitter."""
    delay = min(base_delay_s * (2 ** (attempt - 1)), max_delay_s)
    return delay + random.uniform(0, delay * 0.1)
