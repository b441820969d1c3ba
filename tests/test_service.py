"""
tests/test_service.py
======================
Session Service Tests

Test categories:
    1. Reference scenarios (escalation, late arrival, duplicate union,
       ENDED without a session)
    2. Implicit session creation policy
    3. Scoring failures → audit placeholders
    4. Stop during in-flight scoring → late arrival
    5. Concurrent ingestion for one call and across calls
    6. Update notifications
    7. Listing, completeness and eviction

Scoring is injected: the chunk payload is the ASCII risk score, optionally
followed by ``|`` and comma-separated pattern names.
"""

import asyncio
import os
import sys
import threading
import unittest
from datetime import timedelta

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.config import Settings
from src.errors import (
    InvalidChunk,
    ScoringUnavailable,
    SessionAlreadyClosed,
    SessionNotFound,
)
from src.scoring.adapter import ChunkScorer
from src.session.aggregator import AUDIT_REASON_LATE_ARRIVAL, AUDIT_REASON_SCORING_UNAVAILABLE
from src.session.models import CallDirection, MergeStatus, RiskLevel, SessionState, utc_now
from src.telephony.classifier import CallEvent, CallEventKind


# ===================================================================
# Fixtures
# ===================================================================


def _payload_strategy(audio: bytes) -> dict:
    text = audio.decode("ascii")
    risk, _, names = text.partition("|")
    return {
        "risk_score": float(risk),
        "confidence": 0.9,
        "patterns": [n for n in names.split(",") if n],
    }


def _audio(risk: float, *patterns: str) -> bytes:
    return f"{risk}|{','.join(patterns)}".encode("ascii")


def _settings(**overrides) -> Settings:
    values = dict(
        scoring_timeout_seconds=2.0,
        scoring_max_retries=0,
        scoring_base_delay=0.0,
        scoring_max_delay=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def _service(strategy=_payload_strategy, **overrides):
    # Imported here so the module under test is loaded the same way the API does
    from src.session.service import SessionService

    settings = _settings(**overrides)
    scorer = ChunkScorer(strategy, timeout_seconds=settings.scoring_timeout_seconds)
    return SessionService(scorer, settings=settings)


# ===================================================================
# 1. Reference scenarios
# ===================================================================


class TestReferenceScenarios(unittest.IsolatedAsyncioTestCase):

    async def test_escalation_then_late_arrival(self):
        service = _service()
        await service.start_session("call-1")

        await service.ingest_chunk("call-1", 1, _audio(30))
        result = await service.ingest_chunk("call-1", 2, _audio(85))
        self.assertEqual(result.status, MergeStatus.MERGED)
        self.assertEqual(result.assessment.max_risk, 85.0)
        self.assertEqual(result.assessment.overall_risk_level, RiskLevel.CRITICAL)
        self.assertEqual(result.assessment.chunk_count, 2)

        closed = await service.stop_session("call-1")
        self.assertEqual(closed.state, SessionState.CLOSED)
        frozen = closed.aggregate_risk

        late = await service.ingest_chunk("call-1", 3, _audio(10))
        self.assertEqual(late.status, MergeStatus.LATE_ARRIVAL)
        self.assertIsNotNone(late.warning)
        self.assertIs(late.assessment, frozen)
        self.assertEqual(late.assessment.max_risk, 85.0)
        self.assertEqual(
            [e.reason for e in service.audit_entries("call-1")],
            [AUDIT_REASON_LATE_ARRIVAL],
        )

    async def test_duplicate_sequence_unions_patterns(self):
        service = _service()
        await service.start_session("call-1")
        await service.ingest_chunk("call-1", 1, _audio(50, "URGENCY"))
        result = await service.ingest_chunk("call-1", 1, _audio(50, "GIFT_CARDS"))

        self.assertEqual(result.status, MergeStatus.DUPLICATE)
        self.assertEqual(result.assessment.chunk_count, 1)
        self.assertEqual(set(result.assessment.pattern_names), {"URGENCY", "GIFT_CARDS"})

    async def test_ended_without_session_is_silent(self):
        service = _service()
        result = await service.coordinator.handle(CallEvent("ghost", CallEventKind.ENDED))
        self.assertIsNone(result)
        self.assertNotIn("ghost", service.registry)
        with self.assertRaises(SessionNotFound):
            service.get_session("ghost")

    async def test_stop_unknown_session(self):
        with self.assertRaises(SessionNotFound) as ctx:
            await _service().stop_session("ghost")
        self.assertEqual(ctx.exception.call_id, "ghost")

    async def test_start_is_idempotent_and_rejects_closed(self):
        service = _service()
        first = await service.start_session("call-1", "+15550001", "incoming")
        second = await service.start_session("call-1")
        self.assertIs(first, second)
        self.assertEqual(first.direction, CallDirection.INCOMING)

        await service.stop_session("call-1")
        with self.assertRaises(SessionAlreadyClosed):
            await service.start_session("call-1")

    async def test_start_rejects_bad_input(self):
        service = _service()
        with self.assertRaises(ValueError):
            await service.start_session("")
        with self.assertRaises(ValueError):
            await service.start_session("call-1", direction="sideways")


# ===================================================================
# 2. Implicit sessions
# ===================================================================


class TestImplicitSessions(unittest.IsolatedAsyncioTestCase):

    async def test_chunk_before_lifecycle_event_creates_session(self):
        service = _service()
        result = await service.ingest_chunk("early", 0, _audio(20))
        self.assertEqual(result.session.direction, CallDirection.UNKNOWN)
        self.assertEqual(result.session.state, SessionState.OPEN)

        # The later STARTED event finds the session and leaves it as is
        session = await service.start_session("early", "+1", "incoming")
        self.assertIs(session, result.session)
        self.assertEqual(session.aggregate_risk.chunk_count, 1)

    async def test_disabled_policy_rejects_unknown_call(self):
        calls = []

        def strategy(audio):
            calls.append(audio)
            return _payload_strategy(audio)

        service = _service(strategy, allow_implicit_sessions=False)
        with self.assertRaises(SessionNotFound):
            await service.ingest_chunk("nobody", 0, _audio(20))
        self.assertEqual(calls, [])

        await service.start_session("somebody")
        result = await service.ingest_chunk("somebody", 0, _audio(20))
        self.assertEqual(result.status, MergeStatus.MERGED)

    async def test_invalid_chunk_creates_nothing(self):
        service = _service()
        with self.assertRaises(InvalidChunk):
            await service.ingest_chunk("call-1", -3, _audio(20))
        self.assertNotIn("call-1", service.registry)


# ===================================================================
# 3. Scoring failures
# ===================================================================


class TestScoringFailures(unittest.IsolatedAsyncioTestCase):

    async def test_failure_recorded_as_placeholder(self):
        def broken(audio):
            raise RuntimeError("model offline")

        service = _service(broken)
        await service.start_session("call-1")
        with self.assertRaises(ScoringUnavailable):
            await service.ingest_chunk("call-1", 4, _audio(90))

        entries = service.audit_entries("call-1")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].reason, AUDIT_REASON_SCORING_UNAVAILABLE)
        self.assertEqual(entries[0].sequence_number, 4)
        self.assertIsNone(entries[0].risk_score)
        self.assertEqual(service.get_session("call-1").aggregate_risk.chunk_count, 0)

    async def test_failure_retried_per_settings(self):
        attempts = []

        def flaky(audio):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("blip")
            return _payload_strategy(audio)

        service = _service(flaky, scoring_max_retries=1)
        result = await service.ingest_chunk("call-1", 0, _audio(65))
        self.assertEqual(result.assessment.overall_risk_level, RiskLevel.HIGH)
        self.assertEqual(len(attempts), 2)
        self.assertEqual(service.audit_entries(), [])


# ===================================================================
# 4. Stop during scoring
# ===================================================================


class TestStopDuringScoring(unittest.IsolatedAsyncioTestCase):

    async def test_in_flight_result_becomes_late_arrival(self):
        started = threading.Event()
        release = threading.Event()

        def gated(audio):
            started.set()
            release.wait(timeout=2.0)
            return _payload_strategy(audio)

        service = _service(gated)
        await service.start_session("call-1")
        task = asyncio.create_task(service.ingest_chunk("call-1", 0, _audio(99)))

        await asyncio.to_thread(started.wait, 2.0)
        await service.stop_session("call-1")
        release.set()
        result = await task

        self.assertEqual(result.status, MergeStatus.LATE_ARRIVAL)
        self.assertEqual(result.assessment.chunk_count, 0)
        self.assertEqual(service.get_session("call-1").late_arrivals, 1)

    async def test_slow_scoring_does_not_block_other_chunks(self):
        release = threading.Event()

        def strategy(audio):
            if audio.startswith(b"1.0"):
                release.wait(timeout=2.0)
            return _payload_strategy(audio)

        service = _service(strategy)
        await service.start_session("call-1")
        slow = asyncio.create_task(service.ingest_chunk("call-1", 0, _audio(1.0)))
        fast = await asyncio.wait_for(service.ingest_chunk("call-1", 1, _audio(70)), timeout=1.0)
        self.assertEqual(fast.assessment.chunk_count, 1)

        release.set()
        await slow
        self.assertEqual(service.get_session("call-1").aggregate_risk.chunk_count, 2)


# ===================================================================
# 5. Concurrency
# ===================================================================


class TestConcurrentIngestion(unittest.IsolatedAsyncioTestCase):

    async def test_racing_first_chunks_share_one_session(self):
        service = _service()
        results = await asyncio.gather(
            *(service.ingest_chunk("call-1", seq, _audio(seq * 10)) for seq in range(10)),
            service.start_session("call-1", "+1", "incoming"),
        )
        sessions = {id(r.session) for r in results[:10]} | {id(results[10])}
        self.assertEqual(len(sessions), 1)

        session = service.get_session("call-1")
        self.assertEqual(session.aggregate_risk.chunk_count, 10)
        self.assertAlmostEqual(session.aggregate_risk.mean_risk, 45.0)
        self.assertEqual(session.aggregate_risk.max_risk, 90.0)

    async def test_duplicates_under_concurrency_count_once(self):
        service = _service()
        await asyncio.gather(*(service.ingest_chunk("call-1", 7, _audio(40)) for _ in range(8)))
        self.assertEqual(service.get_session("call-1").aggregate_risk.chunk_count, 1)

    async def test_calls_are_isolated(self):
        service = _service()
        await asyncio.gather(
            service.ingest_chunk("a", 0, _audio(95)),
            service.ingest_chunk("b", 0, _audio(5)),
        )
        self.assertEqual(service.get_session("a").aggregate_risk.overall_risk_level, RiskLevel.CRITICAL)
        self.assertEqual(service.get_session("b").aggregate_risk.overall_risk_level, RiskLevel.LOW)


# ===================================================================
# 6. Notifications
# ===================================================================


class TestNotifications(unittest.IsolatedAsyncioTestCase):

    async def test_open_merge_close_each_notify(self):
        service = _service()
        seen = []
        service.subscribe(lambda s: seen.append((s.state, s.version)))

        await service.start_session("call-1")
        await service.ingest_chunk("call-1", 0, _audio(10))
        await service.ingest_chunk("call-1", 0, _audio(10))      # duplicate
        await service.stop_session("call-1")
        await service.ingest_chunk("call-1", 1, _audio(10))      # late

        self.assertEqual(len(seen), 4)
        versions = [v for _, v in seen]
        self.assertEqual(versions, sorted(versions))
        self.assertEqual(len(set(versions)), 4)
        self.assertEqual(seen[-1][0], SessionState.CLOSED)

    async def test_async_listener_and_unsubscribe(self):
        service = _service()
        seen = []

        async def listener(session):
            seen.append(session.call_id)

        service.subscribe(listener)
        await service.start_session("a")
        service.unsubscribe(listener)
        await service.start_session("b")
        self.assertEqual(seen, ["a"])

    async def test_failing_listener_does_not_break_ingestion(self):
        service = _service()
        seen = []

        def broken(session):
            raise RuntimeError("ui gone")

        service.subscribe(broken)
        service.subscribe(lambda s: seen.append(s.version))
        with self.assertLogs("scai.session.service", level="WARNING"):
            result = await service.ingest_chunk("call-1", 0, _audio(10))
        self.assertEqual(result.status, MergeStatus.MERGED)
        self.assertEqual(len(seen), 2)  # implicit open + merge


# ===================================================================
# 7. Listing, completeness, eviction
# ===================================================================


class TestListingAndEviction(unittest.IsolatedAsyncioTestCase):

    async def test_list_most_recent_first_with_filters(self):
        service = _service()
        await service.start_session("old")
        await service.ingest_chunk("old", 0, _audio(90))
        await asyncio.sleep(0.01)
        await service.start_session("new")

        self.assertEqual([s.call_id for s in service.list_sessions()], ["new", "old"])
        self.assertEqual([s.call_id for s in service.list_sessions(limit=1)], ["new"])
        self.assertEqual([s.call_id for s in service.list_sessions(scam_only=True)], ["old"])

    async def test_missing_sequences_tracked(self):
        service = _service()
        await service.ingest_chunk("call-1", 0, _audio(10), total_chunks=4)
        result = await service.ingest_chunk("call-1", 2, _audio(10), total_chunks=4)
        self.assertEqual(result.session.total_chunks, 4)
        self.assertEqual(result.session.missing_sequences, [1, 3])
        self.assertEqual(result.session.to_dict()["missing_sequences"], [1, 3])

    async def test_oversized_total_chunks_rejected(self):
        service = _service(max_total_chunks=1000)
        await service.ingest_chunk("call-1", 0, _audio(10), total_chunks=1000)

        with self.assertRaises(InvalidChunk):
            await service.ingest_chunk("call-1", 1, _audio(10), total_chunks=5_000_000)

        session = service.get_session("call-1")
        self.assertEqual(session.total_chunks, 1000)
        self.assertEqual(len(session.to_dict()["missing_sequences"]), 999)

    async def test_evict_after_retention(self):
        service = _service(retention_seconds=60)
        await service.start_session("call-1")
        session = await service.stop_session("call-1")

        self.assertEqual(service.evict_expired(session.ended_at + timedelta(seconds=30)), 0)
        self.assertEqual(service.evict_expired(session.ended_at + timedelta(seconds=61)), 1)
        with self.assertRaises(SessionNotFound):
            service.get_session("call-1")

    async def test_eviction_loop(self):
        service = _service(retention_seconds=0)
        await service.start_session("call-1")
        await service.stop_session("call-1")

        task = asyncio.create_task(service.run_eviction(interval_seconds=0.01))
        for _ in range(100):
            if "call-1" not in service.registry:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertNotIn("call-1", service.registry)

    async def test_session_serializes(self):
        service = _service()
        await service.start_session("call-1", "+15550001", "outgoing")
        await service.ingest_chunk("call-1", 0, _audio(61, "URGENCY"))
        data = service.get_session("call-1").to_dict()
        self.assertEqual(data["direction"], "outgoing")
        self.assertEqual(data["assessment"]["overall_risk_level"], "HIGH")
        self.assertTrue(data["is_scam"])
        self.assertEqual(data["assessment"]["merged_patterns"][0]["name"], "URGENCY")
        self.assertLessEqual(
            utc_now() - service.get_session("call-1").last_updated_at,
            timedelta(seconds=5),
        )


if __name__ == "__main__":
    unittest.main()
