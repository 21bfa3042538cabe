#!/usr/bin/env python3
"""
Utility and Configuration Tests
===============================

Tests for the shared helpers and the encrypted configuration covering:
- Amount and basis-point arithmetic
- Formatting and log redaction
- Config validation
- Encrypted key storage, updates and password rotation

Run with: python -m pytest test_utils.py -v
"""

import os
import sys
import stat
import asyncio
import logging
import random
import tempfile
import unittest
from pathlib import Path

import yaml
from solders.keypair import Keypair

# Ensure imports work
sys.path.insert(0, str(Path(__file__).parent))

from config import Config, ConfigManager, DEFAULT_CONFIG
from utils import (
    SecureLogger,
    SecurityError,
    async_retry_with_backoff,
    backoff_delay,
    bps_of,
    format_duration,
    format_pubkey,
    format_sol,
    percent_to_bps,
    sanitize_error_message,
    shuffled,
    sol_to_lamports,
)


class TestAmounts(unittest.TestCase):
    """Test lamport and basis-point helpers."""

    def test_sol_to_lamports_rounds(self):
        self.assertEqual(sol_to_lamports(0.05), 50_000_000)
        self.assertEqual(sol_to_lamports(0.003), 3_000_000)
        self.assertEqual(sol_to_lamports(1), 1_000_000_000)

    def test_bps_of(self):
        self.assertEqual(bps_of(1, 3), 3333)
        self.assertEqual(bps_of(3, 10), 3000)
        with self.assertRaises(ValueError):
            bps_of(1, 0)

    def test_percent_to_bps(self):
        self.assertEqual(percent_to_bps(30), 3000)
        self.assertEqual(percent_to_bps(0.5), 50)


class TestFormatting(unittest.TestCase):
    """Test display helpers."""

    def test_format_sol(self):
        self.assertEqual(format_sol(0), "0 SOL")
        self.assertEqual(format_sol(50_000_000), "0.050000 SOL")
        self.assertEqual(format_sol(2_500_000_000), "2.5000 SOL")

    def test_format_pubkey(self):
        pubkey = str(Keypair().pubkey())
        short = format_pubkey(pubkey)
        self.assertEqual(short, f"{pubkey[:4]}...{pubkey[-4:]}")
        self.assertEqual(format_pubkey("abc"), "abc")

    def test_format_duration(self):
        self.assertEqual(format_duration(45), "45s")
        self.assertEqual(format_duration(300), "5m")
        self.assertEqual(format_duration(3660), "1h 1m")


class TestRandomHelpers(unittest.TestCase):

    def test_backoff_is_capped(self):
        self.assertEqual([backoff_delay(a) for a in range(6)], [1, 2, 4, 8, 16, 30])

    def test_shuffled_leaves_input_alone(self):
        items = list(range(20))
        result = shuffled(items, random.Random(4))
        self.assertEqual(items, list(range(20)))
        self.assertEqual(sorted(result), items)
        self.assertEqual(result, shuffled(items, random.Random(4)))


class TestRetry(unittest.TestCase):

    def test_retries_then_succeeds(self):
        calls = []
        sleeps = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("busy")
            return 42

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        result = asyncio.run(async_retry_with_backoff(flaky, max_retries=3, sleep=fake_sleep))

        self.assertEqual(result, 42)
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_raises_after_last_attempt(self):
        async def broken():
            raise ConnectionError("down")

        async def fake_sleep(seconds):
            pass

        with self.assertRaises(ConnectionError):
            asyncio.run(async_retry_with_backoff(broken, max_retries=2, sleep=fake_sleep))


class TestRedaction(unittest.TestCase):
    """Keypair material must never reach a log record."""

    def setUp(self):
        self.records = []
        collector = self.records

        class _Collect(logging.Handler):
            def emit(self, record):
                collector.append(record.getMessage())

        inner = logging.getLogger("wallet_pool.test_redaction")
        inner.handlers = [_Collect()]
        inner.propagate = False
        inner.setLevel(logging.DEBUG)
        self.logger = SecureLogger(inner)

    def test_base58_secret_redacted(self):
        secret = str(Keypair())
        self.logger.info(f"loaded {secret}")
        self.assertNotIn(secret, self.records[0])
        self.assertIn("[SECRET_KEY_REDACTED]", self.records[0])

    def test_byte_array_redacted(self):
        self.logger.warning(f"bytes {list(bytes(Keypair()))}")
        self.assertIn("[KEY_BYTES_REDACTED]", self.records[0])

    def test_pubkey_kept(self):
        pubkey = str(Keypair().pubkey())
        self.logger.info(f"funded {pubkey}")
        self.assertIn(pubkey, self.records[0])

    def test_error_sanitizer(self):
        message = sanitize_error_message("failed calling https://rpc.example/key?abc password=hunter2")
        self.assertNotIn("rpc.example", message)
        self.assertNotIn("hunter2", message)


class TestConfigValidation(unittest.TestCase):

    def test_defaults_are_valid(self):
        Config().validate()

    def test_rejects_bad_values(self):
        bad = [
            {'batch_size': 0},
            {'burner_mode': 'sometimes'},
            {'burner_ratio': 1.5},
            {'min_wallet_cooldown_ms': 10, 'max_wallet_cooldown_ms': 5},
            {'emergency_stop_loss_percent': 120},
            {'seasoning_delay_ms': [5, 1]},
        ]
        for overrides in bad:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValueError):
                    Config(**overrides).validate()

    def test_from_dict_ignores_unknown_keys(self):
        config = Config.from_dict({'batch_size': 7, 'not_a_setting': True})
        self.assertEqual(config.batch_size, 7)


class TestConfigManager(unittest.TestCase):
    """Test encrypted configuration storage."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "pool_config.yaml"
        self.manager = ConfigManager(self.config_path)
        self.manager._kdf_iterations = 1000

        self.master = Keypair()
        self.sink = Keypair()
        self.relayers = [Keypair(), Keypair()]
        self.password = "test_password_123"

        self.manager.create_config(
            yaml.safe_load(DEFAULT_CONFIG), self.password,
            master_key=str(self.master),
            sink_key=str(self.sink),
            relayer_keys=[str(k) for k in self.relayers],
        )

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_secrets_encrypted_on_disk(self):
        raw = self.config_path.read_text()
        self.assertNotIn(str(self.master), raw)
        self.assertNotIn(str(self.sink), raw)

    def test_permissions(self):
        mode = stat.S_IMODE(os.stat(self.config_path).st_mode)
        self.assertEqual(mode, 0o600)

    def test_load_keys(self):
        config = self.manager.load_config()
        keys = self.manager.load_keys(config, self.password)

        self.assertEqual(keys.master.pubkey(), self.master.pubkey())
        self.assertEqual(keys.sink.pubkey(), self.sink.pubkey())
        self.assertEqual([k.pubkey() for k in keys.relayers], [k.pubkey() for k in self.relayers])

    def test_wrong_password(self):
        config = self.manager.load_config()
        with self.assertRaises(SecurityError):
            self.manager.load_keys(config, "wrong_password")

    def test_update_keeps_secrets(self):
        self.manager.update_config({'batch_size': 7})

        config = self.manager.load_config()
        self.assertEqual(config.batch_size, 7)
        keys = self.manager.load_keys(config, self.password)
        self.assertEqual(keys.master.pubkey(), self.master.pubkey())

    def test_rotate_password(self):
        self.manager.rotate_password(self.password, "new_password_456")

        config = self.manager.load_config()
        keys = self.manager.load_keys(config, "new_password_456")
        self.assertEqual(keys.sink.pubkey(), self.sink.pubkey())
        with self.assertRaises(SecurityError):
            self.manager.load_keys(config, self.password)


if __name__ == '__main__':
    unittest.main()
