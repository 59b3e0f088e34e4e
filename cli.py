"""AeroFlutter command-line interface."""
from __future__ import annotations

import argparse
import json
import logging
import sys


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="aeroflutter",
        description="Supersonic panel flutter search with piston theory",
    )
    parser.add_argument("--version", action="version", version="AeroFlutter v0.1.0")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--data-dir", default="data", help="Directory for logs and records")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")

    sub = parser.add_subparsers(dest="command")

    modes = sub.add_parser("modes", help="Compute structural natural frequencies")
    _add_model_args(modes)

    flutter = sub.add_parser("flutter", help="Find the flutter velocity")
    _add_model_args(flutter)
    flutter.add_argument("--v-lower", type=float, help="Lower end of the velocity sweep")
    flutter.add_argument("--v-upper", type=float, help="Upper end of the velocity sweep")
    flutter.add_argument("--divisions", type=int, help="Number of sweep intervals")
    flutter.add_argument("--tol", type=float, help="Bisection tolerance")
    flutter.add_argument("--max-iters", type=int, help="Maximum bisection iterations")
    flutter.add_argument("--policy", choices=["first_bracket", "lowest_velocity"],
                         help="Which crossing bracket to refine")
    flutter.add_argument("--workers", type=int, help="Threads for the coarse sweep")
    flutter.add_argument("--sensitivity", nargs="+", metavar="NAME", default=[],
                         help="Parameters for dV*/dp (e.g. E nu thy thz)")
    flutter.add_argument("--output", help="Write the sorted roots listing to this file")
    flutter.add_argument("--json", action="store_true", help="Print results as JSON")

    return parser


def _add_model_args(p):
    p.add_argument("--n-modes", type=int, help="Number of structural modes")
    p.add_argument("--elements", type=int, help="Number of beam elements")
    p.add_argument("--bc", choices=["simply-supported", "clamped", "cantilever"],
                   help="Boundary conditions")
    p.add_argument("--set", action="append", default=[], metavar="NAME=VALUE",
                   help="Override a model parameter (repeatable)")


def _parse_overrides(items):
    out = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"Expected NAME=VALUE, got {item!r}")
        out[name.strip()] = float(value)
    return out


def _make_analysis(args, engine):
    from aeroflutter.fea.config import BeamConfig, FlutterConfig
    from aeroflutter.fea.workflow import BeamPistonTheoryFlutterAnalysis

    structure = engine.config.section("structure")
    beam = BeamConfig(
        length=float(structure.get("length", 10.0)),
        n_elements=args.elements or int(structure.get("n_elements", 50)),
        boundary_conditions=args.bc or structure.get("boundary_conditions", "simply-supported"),
    )

    flutter = None
    if args.command == "flutter":
        fc = FlutterConfig.from_app_config(engine.config)
        overrides = {
            "v_lower": args.v_lower,
            "v_upper": args.v_upper,
            "n_divisions": args.divisions,
            "tolerance": args.tol,
            "max_bisection_iters": args.max_iters,
            "crossing_policy": args.policy,
            "n_workers": args.workers,
        }
        settings = {
            "v_lower": fc.v_lower,
            "v_upper": fc.v_upper,
            "n_divisions": fc.n_divisions,
            "tolerance": fc.tolerance,
            "max_bisection_iters": fc.max_bisection_iters,
            "crossing_policy": fc.crossing_policy,
            "min_alignment": fc.min_alignment,
            "n_workers": fc.n_workers,
            "output_file": args.output or fc.output_file,
        }
        settings.update({k: v for k, v in overrides.items() if v is not None})
        flutter = FlutterConfig(**settings)

    return BeamPistonTheoryFlutterAnalysis(
        engine,
        beam=beam,
        flutter=flutter,
        n_modes=args.n_modes,
        parameter_values=_parse_overrides(args.set),
    )


def _do_modes(args, engine):
    analysis = _make_analysis(args, engine)
    basis = analysis.solve_modes()
    print("=" * 60)
    print("  Structural Modes (%s, %d elements)" % (
        analysis.assembler.boundary_conditions, analysis.assembler.mesh.n_elements))
    print("=" * 60)
    for i, f in enumerate(basis.frequencies_hz):
        print("  Mode %-3d %14.6f Hz" % (i + 1, f))
    print("=" * 60)
    return 0


def _do_flutter(args, engine):
    analysis = _make_analysis(args, engine)
    result = analysis.solve()

    if result.found and result.root.converged:
        for name in args.sensitivity:
            analysis.sensitivity_solve(name)

    if args.json:
        print(json.dumps(result.as_dict(), indent=2))
        return 0

    print("=" * 60)
    print("  Flutter Search Result")
    print("=" * 60)
    print("  Modes:       %s" % ", ".join("%.4f Hz" % f for f in result.frequencies_hz))
    if result.found:
        root = result.root
        print("  Flutter velocity: %.8g m/s" % root.velocity)
        print("  Growth rate:      %.6e 1/s" % root.growth_rate)
        print("  Frequency:        %.6f rad/s" % root.frequency)
        print("  Converged:        %s (%d iterations)" % (root.converged, root.iterations))
        print("  Bracket:          [%.8g, %.8g]" % root.bracket)
        if result.sensitivities:
            print()
            print("  --- Sensitivities dV*/dp ---")
            for name, value in result.sensitivities.items():
                print("  %-10s %16.8e" % (name, value))
    else:
        print("  %s" % result.no_crossing)
    print("=" * 60)
    return 0


def main(argv=None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.INFO, stream=sys.stderr,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )

    if args.command not in ("modes", "flutter"):
        parser.print_help()
        return 0

    from aeroflutter.core.engine import Engine
    from aeroflutter.fea.exceptions import FlutterError

    engine = Engine(config_path=args.config, data_dir=args.data_dir)
    engine.initialize()
    try:
        if args.command == "modes":
            return _do_modes(args, engine)
        return _do_flutter(args, engine)
    except (FlutterError, ValueError, KeyError) as exc:
        print("Error: %s" % exc, file=sys.stderr)
        return 1
    finally:
        engine.shutdown()


if __name__ == "__main__":
    sys.exit(main())
