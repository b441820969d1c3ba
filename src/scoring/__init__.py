# src/scoring/__init__.py
# ========================
# Chunk Scoring Layer — SCAI Guard
#
# Responsibility:
#   - Validate uploaded chunks and score them with an injected strategy
#   - Bound scoring by a timeout and retry transient failures
#   - Ship a default acoustic heuristic strategy
#
# Public API:
#   - ChunkScorer.score_chunk() — validate → score → ChunkResult
#   - score_with_retry()        — retry ScoringUnavailable with back-off
#   - AcousticHeuristicScorer   — default strategy

from src.scoring.adapter import ChunkScorer, normalize_score, validate_chunk  # noqa: F401
from src.scoring.retry import score_with_retry  # noqa: F401
from src.scoring.acoustic import AcousticHeuristicScorer  # noqa: F401
