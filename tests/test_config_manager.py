import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from slotguard.config_manager import ConfigManager
from slotguard.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.locks.wait_attempts, 3)
            self.assertEqual(config.reconciliation.backoff_seconds, 3.0)

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            updated = manager.update({"locks": {"stale_after_seconds": 120}})

            self.assertEqual(updated.locks.stale_after_seconds, 120)
            self.assertEqual(updated.locks.retain_days, 7)
            self.assertEqual(manager.load().locks.stale_after_seconds, 120)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "database": {"path": "/var/lib/slotguard/state.db"},
                    "reconciliation": {"max_attempts": 5},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["database"]["path"], "/var/lib/slotguard/state.db")
            self.assertEqual(data["reconciliation"]["max_attempts"], 5)

    def test_load_picks_up_external_edits(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertEqual(manager.load().locks.retain_days, 7)

            config_path.write_text("locks:\n  retain_days: 30\n  stale_after_seconds: 45\n", encoding="utf-8")

            config = manager.load()
            self.assertEqual(config.locks.retain_days, 30)
            self.assertEqual(config.locks.stale_after_seconds, 45)

    def test_loaded_config_is_a_private_copy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.load().locks.wait_attempts = 99
            self.assertEqual(manager.load().locks.wait_attempts, 3)

    def test_update_rejects_unknown_or_scalar_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with self.assertRaises(ValueError):
                manager.update({"caldav": {"url": "https://example.invalid"}})
            with self.assertRaises(ValueError):
                manager.update({"reconciliation": 5})
            self.assertEqual(manager.load().reconciliation.max_attempts, 3)

    def test_non_mapping_file_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config_path.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                manager.load()


if __name__ == "__main__":
    unittest.main()
