"""
src/scoring/adapter.py
=======================
Chunk Scorer Adapter — SCAI Guard

Responsibility:
    - Validate chunk metadata and payload before scoring
    - Invoke the injected scoring strategy off the event loop, bounded by
      a timeout
    - Normalize the strategy's output into a ChunkResult
    - Translate collaborator failures into ScoringUnavailable

Scoring strategy contract:
    A callable ``strategy(audio: bytes) -> dict`` returning
        {
            "risk_score": float (0–100),
            "confidence": float (0.0–1.0),
            "patterns":   list of PatternMatch | dict | str
        }
    It may raise InvalidChunk for an undecodable payload. Any other
    exception, a timeout, or malformed output is treated as the scorer
    being unavailable.

The strategy runs in a worker thread. A timed-out call keeps running in
its thread but its result is discarded.

This module does NOT:
    - Touch sessions or hold session locks
    - Retry (retry.py)
    - Implement any detection model (acoustic.py is the default strategy)
"""

import asyncio
import logging
from typing import Any, Callable

from src.config import DEFAULT_SCORING_TIMEOUT_SECONDS
from src.errors import InvalidChunk, ScoringUnavailable
from src.session.models import ChunkResult, PatternMatch, utc_now

logger = logging.getLogger("scai.scoring.adapter")

ScoringStrategy = Callable[[bytes], dict]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_chunk(
    call_id: str,
    sequence_number: int,
    audio: bytes,
    total_chunks: int | None = None,
    max_bytes: int | None = None,
    max_total_chunks: int | None = None,
) -> None:
    """
    Check chunk metadata and payload shape.

    Raises:
        InvalidChunk: On any malformed field.
    """
    if not isinstance(call_id, str) or not call_id.strip():
        raise InvalidChunk(call_id or None, "call_id must be a non-empty string.")

    if isinstance(sequence_number, bool) or not isinstance(sequence_number, int):
        raise InvalidChunk(call_id, f"sequence_number must be an integer, got {sequence_number!r}.")
    if sequence_number < 0:
        raise InvalidChunk(call_id, f"sequence_number must be >= 0, got {sequence_number}.")

    if total_chunks is not None:
        if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) or total_chunks < 1:
            raise InvalidChunk(call_id, f"total_chunks must be a positive integer, got {total_chunks!r}.")
        if max_total_chunks is not None and total_chunks > max_total_chunks:
            raise InvalidChunk(
                call_id,
                f"total_chunks {total_chunks} exceeds the limit of {max_total_chunks}.",
            )
        if sequence_number >= total_chunks:
            raise InvalidChunk(
                call_id,
                f"sequence_number {sequence_number} is outside total_chunks {total_chunks}.",
            )

    if not isinstance(audio, (bytes, bytearray)) or len(audio) == 0:
        raise InvalidChunk(call_id, "Audio payload is empty.")

    if max_bytes is not None and len(audio) > max_bytes:
        raise InvalidChunk(
            call_id,
            f"Audio payload is {len(audio)} bytes; the limit is {max_bytes}.",
        )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ChunkScorer:
    """Wraps a scoring strategy with validation, timeout and normalization."""

    def __init__(
        self,
        strategy: ScoringStrategy,
        timeout_seconds: float = DEFAULT_SCORING_TIMEOUT_SECONDS,
        max_chunk_bytes: int | None = None,
        max_total_chunks: int | None = None,
    ):
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")
        self.strategy = strategy
        self.timeout_seconds = timeout_seconds
        self.max_chunk_bytes = max_chunk_bytes
        self.max_total_chunks = max_total_chunks

    async def score_chunk(
        self,
        call_id: str,
        sequence_number: int,
        audio: bytes,
        total_chunks: int | None = None,
    ) -> ChunkResult:
        """
        Score one chunk.

        Returns:
            Normalized ChunkResult.

        Raises:
            InvalidChunk:       Malformed metadata or payload.
            ScoringUnavailable: Strategy failed, timed out, or returned
                                malformed output.
        """
        validate_chunk(
            call_id, sequence_number, audio, total_chunks,
            self.max_chunk_bytes, self.max_total_chunks,
        )

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self.strategy, bytes(audio)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Scoring timed out after %.1fs for %s seq=%d.",
                self.timeout_seconds, call_id, sequence_number,
            )
            raise ScoringUnavailable(
                call_id, f"Scoring timed out after {self.timeout_seconds:.1f}s."
            )
        except InvalidChunk as exc:
            if exc.call_id is None:
                raise InvalidChunk(call_id, exc.message)
            raise
        except ScoringUnavailable:
            raise
        except Exception as exc:
            logger.error("Scoring failed for %s seq=%d: %s", call_id, sequence_number, exc)
            raise ScoringUnavailable(call_id, f"Scoring failed: {exc}")

        result = normalize_score(call_id, sequence_number, raw)
        logger.info(
            "Chunk scored: %s seq=%d risk=%.1f confidence=%.2f patterns=%s",
            call_id,
            sequence_number,
            result.risk_score,
            result.confidence,
            sorted(p.name for p in result.patterns),
        )
        return result


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_score(call_id: str, sequence_number: int, raw: Any) -> ChunkResult:
    """
    Build a validated ChunkResult from raw strategy output.

    Raises:
        ScoringUnavailable: If the output is not a dict or any value is
            missing, non-numeric, or out of range.
    """
    if not isinstance(raw, dict):
        raise ScoringUnavailable(
            call_id, f"Scorer returned {type(raw).__name__}, expected dict."
        )

    risk_score = _read_number(call_id, raw, "risk_score", 0.0, 100.0)
    confidence = _read_number(call_id, raw, "confidence", 0.0, 1.0)

    raw_patterns = raw.get("patterns") or []
    if not isinstance(raw_patterns, (list, tuple, set, frozenset)):
        raise ScoringUnavailable(call_id, "Scorer 'patterns' must be a list.")

    patterns = frozenset(_to_pattern(call_id, p) for p in raw_patterns)

    return ChunkResult(
        call_id=call_id,
        sequence_number=sequence_number,
        risk_score=risk_score,
        confidence=confidence,
        patterns=patterns,
        observed_at=utc_now(),
    )


def _read_number(call_id: str, raw: dict, key: str, low: float, high: float) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScoringUnavailable(
            call_id, f"Scorer '{key}' must be a number, got {type(value).__name__}."
        )
    value = float(value)
    if value != value or value < low or value > high:  # NaN fails value != value
        raise ScoringUnavailable(call_id, f"Scorer '{key}' out of range: {value}.")
    return value


def _to_pattern(call_id: str, item: Any) -> PatternMatch:
    if isinstance(item, PatternMatch):
        pattern = item
    elif isinstance(item, str):
        pattern = PatternMatch(name=item)
    elif isinstance(item, dict):
        confidence = item.get("confidence", 0.0)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ScoringUnavailable(call_id, f"Pattern confidence must be a number: {item!r}.")
        pattern = PatternMatch(
            name=str(item.get("name", "")),
            description=str(item.get("description", "")),
            confidence=float(confidence),
        )
    else:
        raise ScoringUnavailable(call_id, f"Unsupported pattern entry: {item!r}.")

    if not pattern.name.strip():
        raise ScoringUnavailable(call_id, "Pattern name must be non-empty.")
    if not 0.0 <= pattern.confidence <= 1.0:
        raise ScoringUnavailable(call_id, f"Pattern confidence out of range: {pattern.confidence}.")
    return pattern
