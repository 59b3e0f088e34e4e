from __future__ import annotations
import json
import os
import pytest
from aeroflutter.core.engine import Engine

class TestEngine:
    def test_initialize(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        assert not engine.initialized
        engine.initialize()
        assert engine.initialized
        assert engine.config is not None
        assert engine.event_bus is not None
        assert engine.logger is not None
        engine.shutdown()

    def test_config_file(self, tmp_path):
        cfg = tmp_path / "cfg.yaml"
        cfg.write_text("flutter:\n  v_upper: 400.0\n")
        engine = Engine(config_path=str(cfg), data_dir=str(tmp_path / "data"))
        engine.initialize()
        assert engine.config.get("flutter.v_upper") == 400.0
        engine.shutdown()

    def test_create_session(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        engine.initialize()
        received = []
        engine.event_bus.subscribe("session.created", lambda d: received.append(d))
        sid = engine.create_session()
        assert sid and engine.current_session == sid
        assert received[0]["session_id"] == sid
        engine.shutdown()
        assert engine.current_session is None

    def test_parameters_released_on_shutdown(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        engine.initialize()
        engine.add_parameter("thy", 0.06)
        assert "thy" in engine.parameters
        engine.shutdown()
        assert len(engine.parameters) == 0

    def test_flutter_events_recorded(self, tmp_path):
        data_dir = tmp_path / "data"
        engine = Engine(data_dir=str(data_dir))
        engine.initialize()
        sid = engine.create_session()
        engine.event_bus.emit("flutter.root", {"velocity": 100.0})
        engine.event_bus.emit("flutter.sample", {"velocity": 10.0})
        engine.shutdown()
        with open(os.path.join(data_dir, "logs", "operations.jsonl")) as f:
            records = [json.loads(line) for line in f]
        assert [r["event_type"] for r in records] == ["flutter.root"]
        assert records[0]["session_id"] == sid
        assert records[0]["data"]["velocity"] == 100.0

    def test_record_calculation(self, tmp_path):
        data_dir = tmp_path / "data"
        engine = Engine(data_dir=str(data_dir))
        engine.initialize()
        engine.create_session()
        engine.record_calculation({"a": 1}, {"b": 2}, event_type="calculation.flutter")
        engine.shutdown()
        with open(os.path.join(data_dir, "logs", "calculations.jsonl")) as f:
            record = json.loads(f.readline())
        assert record["event_type"] == "calculation.flutter"
        assert record["outputs"] == {"b": 2}
