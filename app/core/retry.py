"""
Exponential backoff shared by jobs, events and the Bling API client.
"""
import math


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
    factor: float = 2.0,
) -> float:
    """
    Calculate exponential backoff seconds with a hard upper bound.

        backoff = base_seconds * (factor ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds:
        return float(max_backoff_seconds)

    if factor <= 1:
        return float(min(base_seconds * (factor ** retry_count), max_backoff_seconds))

    # מספר הניסיון שממנו base * factor**n כבר עובר את התקרה - בלי לחשב חזקות ענק
    threshold = math.ceil(math.log(max_backoff_seconds / base_seconds, factor))
    if retry_count >= threshold:
        return float(max_backoff_seconds)

    return float(min(base_seconds * (factor ** retry_count), max_backoff_seconds))
