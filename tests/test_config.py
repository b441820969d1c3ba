"""
tests/test_config.py
=====================
Settings Tests

Test categories:
    1. Defaults and environment overrides
    2. Malformed values rejected at load time
    3. Chunk-count limit
"""

import os
import sys
import unittest

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.config import DEFAULT_MAX_CHUNK_BYTES, DEFAULT_MAX_TOTAL_CHUNKS, Settings, load_settings


# ===================================================================
# 1. Defaults / overrides
# ===================================================================


class TestLoadSettings(unittest.TestCase):

    def test_defaults(self):
        settings = load_settings({})
        self.assertEqual(settings, Settings())
        self.assertEqual(settings.retention_seconds, 3600.0)
        self.assertEqual(settings.scoring_timeout_seconds, 10.0)
        self.assertEqual(settings.scoring_max_retries, 2)
        self.assertTrue(settings.allow_implicit_sessions)
        self.assertEqual(settings.max_chunk_bytes, DEFAULT_MAX_CHUNK_BYTES)
        self.assertIsNone(settings.webhook_url)

    def test_overrides(self):
        settings = load_settings({
            "SESSION_RETENTION_SECONDS": "120",
            "SCORING_TIMEOUT_SECONDS": "2.5",
            "SCORING_MAX_RETRIES": "0",
            "ALLOW_IMPLICIT_SESSIONS": "no",
            "AUDIT_LOG_MAX_ENTRIES": "10",
            "WEBHOOK_URL": "  http://example.test/hook  ",
        })
        self.assertEqual(settings.retention_seconds, 120.0)
        self.assertEqual(settings.scoring_timeout_seconds, 2.5)
        self.assertEqual(settings.scoring_max_retries, 0)
        self.assertFalse(settings.allow_implicit_sessions)
        self.assertEqual(settings.audit_log_max_entries, 10)
        self.assertEqual(settings.webhook_url, "http://example.test/hook")

    def test_blank_values_use_defaults(self):
        settings = load_settings({"SCORING_MAX_RETRIES": "  ", "WEBHOOK_URL": ""})
        self.assertEqual(settings.scoring_max_retries, 2)
        self.assertIsNone(settings.webhook_url)


# ===================================================================
# 2. Validation
# ===================================================================


class TestInvalidSettings(unittest.TestCase):

    def test_rejected_values(self):
        cases = [
            {"SESSION_RETENTION_SECONDS": "soon"},
            {"SESSION_RETENTION_SECONDS": "-5"},
            {"SCORING_MAX_RETRIES": "1.5"},
            {"ALLOW_IMPLICIT_SESSIONS": "maybe"},
            {"SCORING_TIMEOUT_SECONDS": "0"},
            {"EVICTION_INTERVAL_SECONDS": "0"},
            {"AUDIT_LOG_MAX_ENTRIES": "0"},
            {"MAX_TOTAL_CHUNKS": "0"},
        ]
        for env in cases:
            with self.subTest(env=env):
                with self.assertRaises(ValueError):
                    load_settings(env)


# ===================================================================
# 3. Chunk-count limit
# ===================================================================


class TestTotalChunksLimit(unittest.TestCase):

    def test_default_limit(self):
        self.assertEqual(load_settings({}).max_total_chunks, DEFAULT_MAX_TOTAL_CHUNKS)

    def test_override(self):
        self.assertEqual(load_settings({"MAX_TOTAL_CHUNKS": "250"}).max_total_chunks, 250)


if __name__ == "__main__":
    unittest.main()
