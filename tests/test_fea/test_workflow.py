"""End-to-end tests of the beam piston-theory flutter analysis.

Analytical reference: without aerodynamic damping a simply-supported
strip flutters near ``lambda = rho_air V^2 L^3 / (M D) ~ 343``, i.e.
``V* ~ 1.2 km/s`` for the default model; aerodynamic damping raises it.
"""
from __future__ import annotations

import json
import os

import numpy as np
import pytest

from aeroflutter.core.engine import Engine
from aeroflutter.fea.config import BeamConfig, FlutterConfig, ModalConfig
from aeroflutter.fea.exceptions import StaleRootError
from aeroflutter.fea.workflow import (
    DEFAULT_PARAMETERS,
    SENSITIVITY_PARAMETERS,
    BeamPistonTheoryFlutterAnalysis,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _analysis(data_dir, **kwargs):
    engine = Engine(data_dir=str(data_dir))
    engine.initialize()
    kwargs.setdefault("beam", BeamConfig(n_elements=20))
    kwargs.setdefault("flutter", FlutterConfig(v_lower=500.0, v_upper=2500.0, n_divisions=20))
    return BeamPistonTheoryFlutterAnalysis(engine, **kwargs)


@pytest.fixture(scope="module")
def solved(tmp_path_factory):
    data_dir = tmp_path_factory.mktemp("workflow")
    analysis = _analysis(data_dir)
    result = analysis.solve(tol=1e-9)
    yield analysis, result, data_dir
    analysis.engine.shutdown()


class TestBeamFlutterAnalysis:
    def test_flutter_found(self, solved):
        _, result, _ = solved
        assert result.found
        assert result.root.converged
        assert 1000.0 < result.flutter_velocity < 2500.0
        assert abs(result.root.growth_rate) < 1e-9
        assert result.root.frequency > 0.0

    def test_one_bracket_per_conjugate_pair(self, solved):
        _, result, _ = solved
        first = result.sweep.crossings[0]
        same = [b for b in result.sweep.crossings if b.v_lower == first.v_lower]
        assert len(same) == 1
        assert first.upper.frequency > 0.0

    def test_frequencies(self, solved):
        analysis, result, _ = solved
        assert len(result.frequencies_hz) == 3
        D = analysis.assembler.bending_rigidity()
        m = analysis.assembler.mass_per_length()
        f1 = (np.pi / 10.0) ** 2 * np.sqrt(D / m) / (2 * np.pi)
        assert result.frequencies_hz[0] == pytest.approx(f1, rel=1e-4)

    def test_growth_rate_changes_sign_in_bracket(self, solved):
        _, result, _ = solved
        bracket = result.sweep.crossings[0]
        assert bracket.v_lower <= result.flutter_velocity <= bracket.v_upper

    def test_calculation_recorded(self, solved):
        _, result, data_dir = solved
        with open(os.path.join(data_dir, "logs", "calculations.jsonl")) as f:
            records = [json.loads(line) for line in f]
        flutter = [r for r in records if r["event_type"] == "calculation.flutter"]
        assert flutter[0]["outputs"]["root"]["velocity"] == pytest.approx(result.flutter_velocity)
        assert flutter[0]["inputs"]["parameters"]["thy"] == DEFAULT_PARAMETERS["thy"]

    def test_mode_shapes(self, solved):
        analysis, _, _ = solved
        shapes = analysis.mode_shapes()
        mesh = analysis.assembler.mesh
        assert shapes.shape == (mesh.n_dof, 3)
        # simply supported: zero deflection at both ends
        np.testing.assert_array_equal(shapes[[0, mesh.n_dof - 2]], 0.0)

    def test_flutter_mode_shape(self, solved):
        analysis, _, _ = solved
        shape = analysis.flutter_mode_shape()
        mesh = analysis.assembler.mesh
        assert shape.shape == (mesh.n_dof,)
        assert np.iscomplexobj(shape)
        np.testing.assert_array_equal(shape[[0, mesh.n_dof - 2]], 0.0)
        assert np.abs(shape).max() == pytest.approx(1.0)

    def test_flutter_mode_shape_unscaled(self, solved):
        analysis, result, _ = solved
        raw = analysis.flutter_mode_shape(normalize=False)
        q = result.root.eig_vec_right[: analysis.n_modes]
        free = analysis.assembler.expand(analysis.flutter_solver.basis.vectors @ q)
        np.testing.assert_allclose(raw, free)

    def test_as_dict_is_json_serializable(self, solved):
        _, result, _ = solved
        data = json.loads(json.dumps(result.as_dict()))
        assert data["found"] is True
        assert data["root"]["converged"] is True

    def test_get_parameter(self, solved):
        analysis, _, _ = solved
        assert analysis.get_parameter("thy").value == DEFAULT_PARAMETERS["thy"]
        with pytest.raises(KeyError, match="Valid names"):
            analysis.get_parameter("thickness")


class TestSensitivity:
    def test_thickness_matches_finite_difference(self, tmp_path):
        analysis = _analysis(tmp_path)
        thy = analysis.get_parameter("thy")
        h = thy.value
        delta = 1e-3 * h

        velocities = []
        for value in (h + delta, h - delta):
            thy.value = value
            velocities.append(analysis.solve(tol=1e-9).flutter_velocity)
        fd = (velocities[0] - velocities[1]) / (2 * delta)

        thy.value = h
        analysis.solve(tol=1e-9)
        dV = analysis.sensitivity_solve("thy")
        assert dV > 0.0
        assert dV == pytest.approx(fd, rel=1e-3)
        assert analysis.result.sensitivities["thy"] == dV
        analysis.engine.shutdown()

    def test_all_default_parameters(self, tmp_path):
        analysis = _analysis(tmp_path)
        result = analysis.solve(tol=1e-9)
        values = {name: analysis.sensitivity_solve(name) for name in SENSITIVITY_PARAMETERS}
        assert values["E"] > 0.0
        # V* is independent of the strip width: every term scales with b
        assert abs(values["thz"]) < 1e-5 * result.flutter_velocity
        assert set(result.sensitivities) == set(SENSITIVITY_PARAMETERS)
        analysis.engine.shutdown()

    def test_sensitivity_requires_solution(self, tmp_path):
        analysis = _analysis(tmp_path)
        with pytest.raises(StaleRootError):
            analysis.sensitivity_solve("thy")
        with pytest.raises(StaleRootError):
            analysis.flutter_mode_shape()
        analysis.solve()
        analysis.clear()
        assert analysis.result is None
        with pytest.raises(StaleRootError):
            analysis.sensitivity_solve("thy")
        analysis.engine.shutdown()


class TestConfiguration:
    def test_unknown_parameter_override(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown parameters"):
            _analysis(tmp_path, parameter_values={"thickness": 0.1})

    def test_no_flutter_below_range(self, tmp_path):
        analysis = _analysis(
            tmp_path, flutter=FlutterConfig(v_lower=100.0, v_upper=500.0, n_divisions=4),
        )
        result = analysis.solve()
        assert not result.found
        assert result.root is None
        assert result.no_crossing.v_upper == 500.0
        assert "no_crossing" in result.as_dict()
        analysis.engine.shutdown()

    def test_config_file_values(self, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("structure:\n  n_elements: 12\n  n_modes: 2\nparameters:\n  thy: 0.05\n")
        engine = Engine(config_path=str(cfg), data_dir=str(tmp_path / "data"))
        analysis = BeamPistonTheoryFlutterAnalysis(engine)
        assert engine.initialized
        assert analysis.n_modes == 2
        assert analysis.modal_config.sigma == 0.0
        assert analysis.assembler.mesh.n_elements == 12
        assert analysis.get_parameter("thy").value == 0.05
        engine.shutdown()

    def test_modal_settings(self, tmp_path):
        analysis = _analysis(tmp_path, n_modes=2)
        assert analysis.n_modes == 2
        assert len(analysis.solve_modes()) == 2
        custom = _analysis(tmp_path, modal=ModalConfig(n_modes=4, sigma=-1.0))
        assert custom.n_modes == 4
        assert len(custom.solve_modes()) == 4
        analysis.engine.shutdown()
        custom.engine.shutdown()

    def test_invalid_n_modes(self, tmp_path):
        with pytest.raises(ValueError):
            _analysis(tmp_path, n_modes=0)

    def test_parameters_reused_in_engine(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path))
        engine.initialize()
        thy = engine.add_parameter("thy", 0.07)
        analysis = BeamPistonTheoryFlutterAnalysis(engine, beam=BeamConfig(n_elements=10))
        assert analysis.get_parameter("thy") is thy
        assert analysis.assembler.thickness.parameter is thy
        engine.shutdown()
