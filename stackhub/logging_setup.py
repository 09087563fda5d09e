from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Optional


class JsonFormatter(logging.Formatter):
	"""
	One JSON object per line:
	  { "t": 1700000000000, "lvl": "INFO", "name": "stackhub.services.alignment", "msg": "text" }
	"""

	def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
		payload = {
			"t": int(time.time() * 1000),
			"lvl": record.levelname,
			"name": record.name,
			"msg": record.getMessage(),
		}
		job_id = getattr(record, "job_id", None)
		if job_id is not None:
			payload["job_id"] = job_id
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: Optional[str] = None) -> None:
	"""
	Configure the root logger once with JSON formatting.
	Level precedence: explicit `level`, env STACKHUB_LOG_LEVEL, INFO.
	"""
	root = logging.getLogger()
	if getattr(root, "_stackhub_configured", False):
		return

	lvl_name = (level or os.environ.get("STACKHUB_LOG_LEVEL") or "INFO").upper()
	lvl = getattr(logging, lvl_name, None)
	if not isinstance(lvl, int):
		lvl = logging.INFO

	handler = logging.StreamHandler(sys.stdout)
	handler.setFormatter(JsonFormatter())

	root.handlers.clear()
	root.addHandler(handler)
	root.setLevel(lvl)
	root._stackhub_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
	"""Module logger with the root configured."""
	setup_logging()
	return logging.getLogger(name)
