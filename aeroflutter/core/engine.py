"""Analysis session context.

The engine is created explicitly by the caller and passed to the analysis
driver; it owns everything whose lifetime is one analysis session: the
configuration, the event bus, the structured logger and every
:class:`~aeroflutter.core.parameters.Parameter`.
"""
from __future__ import annotations

import logging
import os
import uuid
from typing import Optional

from aeroflutter.core.config import AppConfig
from aeroflutter.core.event_bus import WILDCARD, EventBus
from aeroflutter.core.logger import StructuredLogger
from aeroflutter.core.parameters import Parameter, ParameterSet

# Events persisted to operations.jsonl; per-sample progress is not.
_RECORDED_EVENTS = {
    "flutter.sample_failed",
    "flutter.crossing",
    "flutter.root",
    "flutter.no_crossing",
    "flutter.sensitivity",
}


class Engine:
    def __init__(self, config_path: Optional[str] = None, data_dir: str = "data"):
        self._config_path = config_path
        self._data_dir = data_dir
        self.config: Optional[AppConfig] = None
        self.event_bus: Optional[EventBus] = None
        self.logger: Optional[StructuredLogger] = None
        self.parameters: ParameterSet = ParameterSet()
        self._current_session: Optional[str] = None

    def initialize(self) -> None:
        os.makedirs(self._data_dir, exist_ok=True)

        self.config = AppConfig(self._config_path)
        level = str(self.config.get("logging.level", "INFO")).upper()
        logging.getLogger("aeroflutter").setLevel(getattr(logging, level, logging.INFO))

        self.event_bus = EventBus(keep_history=True)
        self.logger = StructuredLogger(
            log_dir=os.path.join(self._data_dir, "logs"), level=level,
        )
        self.event_bus.subscribe(WILDCARD, self._record_event)
        self.logger.app.info("Engine initialized (data_dir=%s)", self._data_dir)

    @property
    def initialized(self) -> bool:
        return self.config is not None

    def add_parameter(self, name: str, value: float = 0.0) -> Parameter:
        return self.parameters.add(name, value)

    def create_session(self) -> str:
        sid = uuid.uuid4().hex
        self._current_session = sid
        if self.event_bus is not None:
            self.event_bus.emit("session.created", {"session_id": sid})
        return sid

    @property
    def current_session(self) -> Optional[str]:
        return self._current_session

    def record_calculation(self, inputs: dict, outputs: dict, **kwargs) -> None:
        if self.logger is not None:
            self.logger.log_calculation(
                session_id=self._current_session or "",
                inputs=inputs,
                outputs=outputs,
                **kwargs,
            )

    def _record_event(self, data: dict) -> None:
        event = data.get("event", "")
        if event not in _RECORDED_EVENTS or self.logger is None:
            return
        self.logger.log_operation(
            session_id=self._current_session or "",
            event_type=event,
            data={k: v for k, v in data.items() if k != "event"},
        )

    def shutdown(self) -> None:
        if self.event_bus is not None:
            self.event_bus.unsubscribe(WILDCARD, self._record_event)
        self.parameters.clear()
        if self.logger:
            self.logger.app.info("Engine shutdown")
            self.logger.close()
        self._current_session = None
