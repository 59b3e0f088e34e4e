"""Structured logging for flutter analysis sessions.

Two tiers are written into ``log_dir``:

* ``app.log`` -- rotating human-readable application log.
* ``operations.jsonl`` / ``calculations.jsonl`` -- one JSON record per
  line for search milestones and for completed flutter / sensitivity
  calculations.

Records may carry numpy scalars and arrays and complex eigenvalues;
complex numbers are written as ``[real, imag]``.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

import numpy as np

OPERATIONS_FILE = "operations.jsonl"
CALCULATIONS_FILE = "calculations.jsonl"

_APP_LOG_BYTES = 10 * 1024 * 1024
_APP_LOG_BACKUPS = 5


def _to_json(value: Any) -> Any:
    if isinstance(value, (complex, np.complexfloating)):
        return [float(value.real), float(value.imag)]
    if isinstance(value, np.ndarray):
        return [_to_json(v) for v in value.tolist()] if np.iscomplexobj(value) else value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


class StructuredLogger:
    """Per-session application log plus JSON-lines record files.

    Parameters
    ----------
    log_dir : str
        Directory for ``app.log`` and the ``.jsonl`` files; created if
        missing.
    level : str
        Level name for the application log.
    """

    def __init__(self, log_dir: str = "data/logs", level: str = "DEBUG"):
        self._log_dir = log_dir
        os.makedirs(log_dir, exist_ok=True)
        self._app_logger = logging.getLogger(f"aeroflutter.session.{id(self):x}")
        self._app_logger.setLevel(getattr(logging, str(level).upper(), logging.DEBUG))
        if not self._app_logger.handlers:
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=_APP_LOG_BYTES,
                backupCount=_APP_LOG_BACKUPS,
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
            )
            self._app_logger.addHandler(handler)

    @property
    def app(self) -> logging.Logger:
        return self._app_logger

    @property
    def log_dir(self) -> str:
        return self._log_dir

    def log_operation(
        self,
        session_id: str,
        event_type: str,
        data: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append a search milestone (crossing, root, sensitivity, ...)."""
        self._append(OPERATIONS_FILE, session_id, event_type, {
            "data": data or {},
            "metadata": metadata or {},
        })

    def log_calculation(
        self,
        session_id: str,
        inputs: dict,
        outputs: dict,
        intermediate: Optional[dict] = None,
        metadata: Optional[dict] = None,
        event_type: str = "calculation.completed",
    ) -> None:
        """Append the inputs and outputs of one completed calculation."""
        self._append(CALCULATIONS_FILE, session_id, event_type, {
            "inputs": inputs,
            "outputs": outputs,
            "intermediate": intermediate or {},
            "metadata": metadata or {},
        })

    def _append(self, filename: str, session_id: str, event_type: str, body: dict) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "event_type": event_type,
        }
        record.update(body)
        line = json.dumps(record, ensure_ascii=False, default=_to_json)
        with open(os.path.join(self._log_dir, filename), "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def close(self) -> None:
        """Detach and close the application log handlers."""
        for handler in list(self._app_logger.handlers):
            handler.close()
            self._app_logger.removeHandler(handler)
