"""Backoff schedule shared by ingestion and reconciliation retries."""


def compute_backoff(attempt: int, base_seconds: float, max_seconds: float = 5.0) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at max_seconds."""
    return min(max_seconds, base_seconds * (2 ** max(0, attempt - 1)))
