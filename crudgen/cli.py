# File: crudgen/cli.py
"""
NexaFlow CrudGen - Command-Line Interface
===========================================

Usage examples::

    # Validate, synthesize and plan; print the report
    python -m crudgen --definitions definitions.yaml

    # Validate only
    python -m crudgen -d definitions.yaml --validate-only

    # Dump the synthesized schemas and routes as JSON
    python -m crudgen -d definitions.yaml --json
    python -m crudgen -d definitions.yaml -o artifacts.json

    # Serve the generated operations (SQLAlchemy reference store)
    python -m crudgen -d definitions.yaml --serve --port 8000 \\
        --database-url sqlite:///./crudgen.db

Exit codes:
    0 — success
    1 — validation error
    2 — generation error (synthesis / planning)
    3 — serve error
    4 — input/argument error
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional, Sequence

# ---------------------------------------------------------------------------
# Logger (configured in _setup_logging)
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen")


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS: int = 0
EXIT_VALIDATION_ERROR: int = 1
EXIT_GENERATION_ERROR: int = 2
EXIT_SERVE_ERROR: int = 3
EXIT_INPUT_ERROR: int = 4


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(verbosity: int) -> None:
    """
    Configure the root crudgen logger based on verbosity level.

    Args:
        verbosity: 0 = WARNING, 1 = INFO, 2+ = DEBUG.
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity >= 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    handler: logging.StreamHandler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    fmt: str = "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"
    datefmt: str = "%H:%M:%S"
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root_logger: logging.Logger = logging.getLogger("crudgen")
    root_logger.setLevel(level)

    # Remove existing handlers to prevent duplication
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.propagate = False


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    from crudgen import __version__

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="crudgen",
        description=(
            "NexaFlow CrudGen — schema and CRUD handler generator.\n\n"
            "Turns type and operation definitions (JSON/YAML) into validated "
            "storage schemas and request handlers, and can serve them with FastAPI."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s -d definitions.yaml\n"
            "  %(prog)s -d definitions.yaml --validate-only\n"
            "  %(prog)s -d definitions.yaml --json\n"
            "  %(prog)s -d definitions.yaml --serve --port 8000\n"
        ),
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"NexaFlow CrudGen v{__version__}",
    )

    # --- Required arguments ---
    parser.add_argument(
        "-d", "--definitions",
        type=str,
        required=True,
        metavar="PATH",
        help="Path to the definitions file (JSON or YAML).",
    )

    # --- Output ---
    parser.add_argument(
        "-o", "--output",
        type=str,
        default=None,
        metavar="FILE",
        help="Write synthesized schemas and routes to FILE as JSON.",
    )

    # --- Modes ---
    mode_group = parser.add_argument_group("operation modes")
    exclusive = mode_group.add_mutually_exclusive_group()
    exclusive.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Only validate the definitions.",
    )
    exclusive.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        default=False,
        help="Print synthesized schemas and routes as JSON instead of the report.",
    )
    exclusive.add_argument(
        "--serve",
        action="store_true",
        default=False,
        help="Serve the generated operations with uvicorn.",
    )
    mode_group.add_argument("--host", type=str, default="127.0.0.1", help="Bind host for --serve.")
    mode_group.add_argument("--port", type=int, default=8000, help="Bind port for --serve.")

    # --- Config overrides ---
    config_group = parser.add_argument_group("configuration overrides")
    config_group.add_argument(
        "--database-url",
        type=str,
        default=None,
        metavar="URL",
        help="Override the database URL.",
    )
    config_group.add_argument(
        "--api-prefix",
        type=str,
        default=None,
        metavar="PREFIX",
        help="Override API URL prefix (e.g. '/api/v1').",
    )
    config_group.add_argument(
        "--page-size",
        type=int,
        default=None,
        metavar="N",
        help="Override the default page size.",
    )
    config_group.add_argument(
        "--max-page-size",
        type=int,
        default=None,
        metavar="N",
        help="Override the maximum page size.",
    )
    config_group.add_argument(
        "--auth",
        type=str,
        default=None,
        choices=["none", "api_key"],
        help="Override the session check strategy.",
    )
    config_group.add_argument(
        "--api-key",
        type=str,
        default=None,
        metavar="KEY",
        help="API key accepted by the 'api_key' strategy.",
    )
    config_group.add_argument(
        "--no-array-defaults",
        action="store_true",
        default=False,
        help="Do not give arrays an implicit empty default.",
    )
    config_group.add_argument(
        "--keep-required-with-default",
        action="store_true",
        default=False,
        help="Honour an explicit 'required: true' even when a default exists.",
    )

    # --- Behaviour flags ---
    behaviour_group = parser.add_argument_group("behaviour flags")
    behaviour_group.add_argument(
        "--no-strict",
        action="store_true",
        default=False,
        help="Continue even if validation has errors.",
    )
    behaviour_group.add_argument(
        "--fail-on-warnings",
        action="store_true",
        default=False,
        help="Treat validation warnings as errors.",
    )

    # --- Verbosity ---
    verbosity_group = parser.add_argument_group("verbosity")
    verbosity_group.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for INFO, -vv for DEBUG).",
    )
    verbosity_group.add_argument(
        "-q", "--quiet",
        action="store_true",
        default=False,
        help="Suppress all output except errors.",
    )

    return parser


# ---------------------------------------------------------------------------
# Config override builder
# ---------------------------------------------------------------------------


def _build_config_overrides(args: argparse.Namespace) -> Dict[str, object]:
    """Build a config override dictionary from CLI arguments."""
    overrides: Dict[str, object] = {}

    if args.database_url is not None:
        overrides["database_url"] = args.database_url
    if args.api_prefix is not None:
        overrides["api_prefix"] = args.api_prefix
    if args.page_size is not None:
        overrides["default_page_size"] = args.page_size
    if args.max_page_size is not None:
        overrides["max_page_size"] = args.max_page_size
    if args.auth is not None:
        overrides["auth_strategy"] = args.auth
    if args.api_key is not None:
        overrides["api_key"] = args.api_key
    if args.no_array_defaults:
        overrides["auto_array_defaults"] = False
    if args.keep_required_with_default:
        overrides["default_relaxes_required"] = False

    return overrides


# ---------------------------------------------------------------------------
# Validate-only mode
# ---------------------------------------------------------------------------


def _run_validate_only(definitions_path: Path, overrides: Dict[str, object]) -> int:
    from crudgen.errors import CrudGenError
    from crudgen.loader import load_definitions
    from crudgen.utils import Timer
    from crudgen.validators import validate_full

    logger.info("Running validation-only mode for: %s", definitions_path)

    try:
        definitions = load_definitions(definitions_path, overrides or None)
    except (FileNotFoundError, CrudGenError) as exc:
        logger.error("Failed to load definitions: %s", exc)
        return EXIT_INPUT_ERROR

    with Timer("validation") as t:
        result = validate_full(definitions)

    print(f"\n{'='*50}")
    print("  Definitions Validation Report")
    print(f"{'='*50}")
    print(f"  File:       {definitions_path.name}")
    print(f"  Models:     {len(definitions.models)}")
    print(f"  Operations: {len(definitions.operations)}")
    print(f"  Time:       {t.elapsed:.3f}s")
    print(f"  Valid:      {'Yes' if result.is_valid else 'No'}")

    if result.errors:
        print(f"\n  Errors ({len(result.errors)}):")
        for err in result.errors:
            print(f"    ✗ {err}")

    if result.warnings:
        print(f"\n  Warnings ({len(result.warnings)}):")
        for warn in result.warnings:
            print(f"    ⚠ {warn}")

    if result.is_valid and not result.warnings:
        print("\n  ✅ All validations passed!")

    print(f"{'='*50}\n")

    return EXIT_SUCCESS if result.is_valid else EXIT_VALIDATION_ERROR


# ---------------------------------------------------------------------------
# Generation mode
# ---------------------------------------------------------------------------


def _artifacts_payload(report: Any) -> Dict[str, Any]:
    return {
        "schemas": {
            name: descriptor.model_dump(mode="json")
            for name, descriptor in report.descriptors.items()
        },
        "fingerprints": {
            name: descriptor.fingerprint() for name, descriptor in report.descriptors.items()
        },
        "routes": [
            {
                "operation": plan.spec.name,
                "method": plan.method,
                "path": plan.path,
                "model": plan.spec.model,
                "action": plan.spec.action,
            }
            for plan in report.plans
        ],
    }


def _exit_code_for(report: Any) -> int:
    if report.success:
        return EXIT_SUCCESS
    if report.load_errors:
        return EXIT_INPUT_ERROR
    # Under --no-strict the pipeline runs past validation; its later failures win.
    if report.synthesis_errors or report.planning_errors:
        return EXIT_GENERATION_ERROR
    return EXIT_VALIDATION_ERROR


def _run_generation(definitions_path: Path, args: argparse.Namespace) -> int:
    from crudgen.generator import ArtifactGenerator, GenerationReport

    overrides: Dict[str, object] = _build_config_overrides(args)
    generator: ArtifactGenerator = ArtifactGenerator(
        strict_validation=not args.no_strict,
        fail_on_warnings=args.fail_on_warnings,
    )
    report: GenerationReport = generator.generate_from_file(
        definitions_path,
        config_overrides=overrides if overrides else None,
    )

    exit_code: int = _exit_code_for(report)

    if args.as_json:
        print(json.dumps(_artifacts_payload(report), indent=2, sort_keys=True))
    else:
        print(report.summary())

    if args.output is not None and report.success:
        output_path: Path = Path(args.output).resolve()
        output_path.write_text(
            json.dumps(_artifacts_payload(report), indent=2, sort_keys=True),
            encoding="utf-8",
        )
        logger.info("Wrote artifacts to %s", output_path)

    if args.serve and exit_code == EXIT_SUCCESS:
        return _serve(report, args)
    return exit_code


# ---------------------------------------------------------------------------
# Serve mode
# ---------------------------------------------------------------------------


def _serve(report: Any, args: argparse.Namespace) -> int:
    import uvicorn

    from crudgen.web import create_app

    try:
        app = create_app(report)
    except Exception as exc:
        logger.error("Could not build the application: %s", exc, exc_info=True)
        return EXIT_SERVE_ERROR

    logger.info("Serving %d route(s) on http://%s:%d", len(report.plans), args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def cli_main(argv: Optional[Sequence[str]] = None) -> NoReturn:
    """
    Main CLI entry point.

    Can be called from ``__main__.py`` or directly for testing.

    Args:
        argv: Optional argument list (defaults to sys.argv[1:]).
    """
    parser: argparse.ArgumentParser = _build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    if args.quiet:
        verbosity: int = -1
        logging.disable(logging.CRITICAL)
    else:
        verbosity = args.verbose

    _setup_logging(verbosity)

    definitions_path: Path = Path(args.definitions).resolve()

    if not definitions_path.exists():
        logger.error("Definitions file not found: %s", definitions_path)
        sys.exit(EXIT_INPUT_ERROR)

    if not definitions_path.is_file():
        logger.error("Definitions path is not a file: %s", definitions_path)
        sys.exit(EXIT_INPUT_ERROR)

    if args.validate_only:
        sys.exit(_run_validate_only(definitions_path, _build_config_overrides(args)))

    logger.info("Definitions: %s", definitions_path)
    logger.info("Strict:      %s", not args.no_strict)

    exit_code: int = _run_generation(definitions_path, args)

    if exit_code == EXIT_SUCCESS:
        logger.info("Generation completed successfully.")
    else:
        logger.error("Generation failed with exit code %d.", exit_code)

    sys.exit(exit_code)


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "cli_main",
    "EXIT_SUCCESS",
    "EXIT_VALIDATION_ERROR",
    "EXIT_GENERATION_ERROR",
    "EXIT_SERVE_ERROR",
    "EXIT_INPUT_ERROR",
]

logger.debug("crudgen.cli loaded.")
