"""
src/scoring/retry.py
=====================
Scoring Retry Utility — SCAI Guard

Retries ``ChunkScorer.score_chunk`` when the scorer is unavailable
(failure, timeout, or malformed output) with exponential back-off.
InvalidChunk is the caller's fault and is never retried.

Usage::

    from src.scoring.retry import score_with_retry

    result = await score_with_retry(
        scorer, call_id, sequence_number, audio,
        max_retries=2, base_delay=0.5,
    )

This module does NOT:
    - Record failures in the audit log (service.py decides that)
"""

import asyncio
import logging

from src.config import (
    DEFAULT_SCORING_BASE_DELAY,
    DEFAULT_SCORING_MAX_DELAY,
    DEFAULT_SCORING_MAX_RETRIES,
)
from src.errors import ScoringUnavailable
from src.scoring.adapter import ChunkScorer
from src.session.models import ChunkResult

logger = logging.getLogger("scai.scoring.retry")

BACKOFF_FACTOR: float = 2.0   # exponential multiplier


async def score_with_retry(
    scorer: ChunkScorer,
    call_id: str,
    sequence_number: int,
    audio: bytes,
    total_chunks: int | None = None,
    max_retries: int = DEFAULT_SCORING_MAX_RETRIES,
    base_delay: float = DEFAULT_SCORING_BASE_DELAY,
    max_delay: float = DEFAULT_SCORING_MAX_DELAY,
    sleep=asyncio.sleep,
) -> ChunkResult:
    """
    Score a chunk, retrying ScoringUnavailable up to ``max_retries`` times.

    Args:
        scorer:      The adapter to call.
        max_retries: Extra attempts after the first (0 disables retry).
        base_delay:  First back-off delay in seconds.
        max_delay:   Cap for the back-off delay.
        sleep:       Awaitable sleep, replaceable in tests.

    Returns:
        The ChunkResult from the first successful attempt.

    Raises:
        InvalidChunk:       Immediately, without retrying.
        ScoringUnavailable: The last failure once retries are exhausted.
    """
    last_exc: ScoringUnavailable | None = None
    delay = base_delay

    for attempt in range(max_retries + 1):
        try:
            return await scorer.score_chunk(call_id, sequence_number, audio, total_chunks)
        except ScoringUnavailable as exc:
            last_exc = exc

            if attempt < max_retries:
                logger.warning(
                    "Scoring %s seq=%d failed (attempt %d/%d): %s; retrying in %.1fs",
                    call_id,
                    sequence_number,
                    attempt + 1,
                    max_retries + 1,
                    exc.message,
                    delay,
                )
                await sleep(delay)
                delay = min(delay * BACKOFF_FACTOR, max_delay)
            else:
                logger.error(
                    "Scoring %s seq=%d failed after %d attempts: %s",
                    call_id,
                    sequence_number,
                    max_retries + 1,
                    exc.message,
                )

    raise last_exc  # type: ignore[misc]
