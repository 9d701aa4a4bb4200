"""Tests for structured logging behavior."""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
import unittest

from pdl_engine.logging_utils import app_only_filter, configure_logging


def _record(name: str) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="x",
        args=(),
        exc_info=None,
    )


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level

        def _restore() -> None:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)

        self.addCleanup(_restore)

    def test_structured_file_output_includes_extra_fields(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            log_path = Path(temp_dir) / "logs" / "engine.log"
            configure_logging(
                {
                    "level": "INFO",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(log_path),
                }
            )
            logging.getLogger("pdl_engine.lifecycle").info(
                "lifecycle.transitioned",
                extra={"event": "lifecycle.transitioned", "project_id": "p1"},
            )
            for handler in logging.getLogger().handlers:
                handler.flush()

            lines = log_path.read_text(encoding="utf-8").strip().splitlines()
            data = json.loads(lines[-1])
            self.assertEqual(data["event"], "lifecycle.transitioned")
            self.assertEqual(data["project_id"], "p1")
            self.assertEqual(data["logger"], "pdl_engine.lifecycle")
            self.assertEqual(data["level"], "info")

    def test_plain_mode_installs_single_stderr_handler(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False})
        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertEqual(root.level, logging.DEBUG)
        self.assertEqual(root.handlers[0].level, logging.WARNING)

    def test_stderr_only_shows_engine_records(self) -> None:
        self.assertTrue(app_only_filter(_record("pdl_engine.events.bus")))
        self.assertFalse(app_only_filter(_record("asyncio")))


if __name__ == "__main__":
    unittest.main()
