# File: crudgen/generator.py
"""
NexaFlow CrudGen - Master Generation Pipeline (Orchestrator)
==============================================================

Connects every phase together:

    Definitions → Validation → Schema Synthesis → Operation Planning → Handlers

The ``ArtifactGenerator`` class provides both a programmatic API and the
backend for the CLI.

Workflow::

    1. Load definitions from a JSON/YAML file (or accept a ``DefinitionSet``).
    2. Run full semantic validation (validators.py).
    3. Synthesize one ``SchemaDescriptor`` per model (synthesizer.py).
    4. Plan every operation against its descriptor (route, action, schema).
    5. Return a ``GenerationReport`` with descriptors, plans and metrics.
    6. ``build_handlers()`` turns the plans into ``OperationHandler``s once a
       connection provider is available.

Error handling strategy:
    - Validation errors are collected and surfaced, not swallowed.
    - Synthesis errors are isolated per model; operations on a failed model
      are not planned, and the run is reported as failed.
    - The final report gives a clear pass/fail verdict.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from crudgen.errors import CrudGenError, SynthesisError
from crudgen.handler import ConnectionProvider, OperationHandler, ResponseSink
from crudgen.loader import load_definition_file, parse_definitions
from crudgen.models import (
    DefinitionSet,
    GenerationConfig,
    ITEM_ACTIONS,
    OperationSpec,
    SchemaDescriptor,
    SchemaField,
)
from crudgen.synthesizer import SchemaSynthesizer
from crudgen.utils import Timer
from crudgen.validators import ValidationResult, validate_full

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.generator")


# ---------------------------------------------------------------------------
# Generation report
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OperationPlan:
    """One operation bound to its synthesized schema and route."""

    spec: OperationSpec
    descriptor: SchemaDescriptor
    path: str

    @property
    def method(self) -> str:
        return str(self.spec.verb)


@dataclass(frozen=False, slots=True)
class GenerationStepMetric:
    """Timing and outcome for a single pipeline step."""

    step_name: str = ""
    success: bool = True
    elapsed_seconds: float = 0.0
    detail: str = ""


@dataclass(frozen=False, slots=True)
class GenerationReport:
    """
    Report produced by ``ArtifactGenerator.generate()``.

    Holds the generated artifacts (descriptors and operation plans) along
    with timing information and any errors/warnings encountered.
    """

    success: bool = False
    source_file: str = ""

    # Metrics
    total_models: int = 0
    total_operations: int = 0
    total_elapsed_seconds: float = 0.0

    # Artifacts
    config: Optional[GenerationConfig] = None
    descriptors: Dict[str, SchemaDescriptor] = field(default_factory=dict)
    plans: List[OperationPlan] = field(default_factory=list)

    # Sub-reports
    step_metrics: List[GenerationStepMetric] = field(default_factory=list)
    load_errors: List[str] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    validation_warnings: List[str] = field(default_factory=list)
    synthesis_errors: List[str] = field(default_factory=list)
    planning_errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        """Return a human-readable summary string."""
        lines: List[str] = []
        status: str = "✅ SUCCESS" if self.success else "❌ FAILED"
        lines.append(f"{'='*60}")
        lines.append("  NexaFlow CrudGen — Generation Report")
        lines.append(f"{'='*60}")
        lines.append(f"  Status:           {status}")
        lines.append(f"  Source:           {self.source_file or '<in-memory>'}")
        lines.append(f"  Models:           {self.total_models}")
        lines.append(f"  Schemas:          {len(self.descriptors)}")
        lines.append(f"  Operations:       {self.total_operations}")
        lines.append(f"  Planned:          {len(self.plans)}")
        lines.append(f"  Total time:       {self.total_elapsed_seconds:.3f}s")
        lines.append(f"{'─'*60}")

        if self.step_metrics:
            lines.append("  Pipeline Steps:")
            for step in self.step_metrics:
                icon: str = "✓" if step.success else "✗"
                lines.append(
                    f"    {icon} {step.step_name:<28s} "
                    f"{step.elapsed_seconds:>7.3f}s  "
                    f"{step.detail}"
                )

        if self.plans:
            lines.append(f"{'─'*60}")
            lines.append("  Routes:")
            for plan in self.plans:
                lines.append(f"    {plan.method:<7s} {plan.path}  ({plan.spec.name})")

        for title, entries, icon in (
            ("Load Errors", self.load_errors, "✗"),
            ("Validation Errors", self.validation_errors, "✗"),
            ("Validation Warnings", self.validation_warnings, "⚠"),
            ("Synthesis Errors", self.synthesis_errors, "✗"),
            ("Planning Errors", self.planning_errors, "✗"),
        ):
            if entries:
                lines.append(f"{'─'*60}")
                lines.append(f"  {title} ({len(entries)}):")
                for entry in entries:
                    lines.append(f"    {icon} {entry}")

        lines.append(f"{'='*60}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# ArtifactGenerator: master orchestrator
# ---------------------------------------------------------------------------


class ArtifactGenerator:
    """
    Master pipeline orchestrator.

    Usage::

        generator = ArtifactGenerator()

        # From a file
        report = generator.generate_from_file(Path("definitions.yaml"))

        # From in-memory objects
        report = generator.generate(definitions)

        print(report.summary())

    The generator is reusable — create once, call generate() many times.
    """

    def __init__(
        self,
        *,
        strict_validation: bool = True,
        fail_on_warnings: bool = False,
    ) -> None:
        """
        Args:
            strict_validation: If True, abort on any validation error.
            fail_on_warnings: If True, treat validation warnings as errors.
        """
        self._strict_validation: bool = strict_validation
        self._fail_on_warnings: bool = fail_on_warnings

        logger.debug(
            "ArtifactGenerator initialised: strict=%s, fail_on_warnings=%s.",
            strict_validation,
            fail_on_warnings,
        )

    # -----------------------------------------------------------------
    # Public: generate from file
    # -----------------------------------------------------------------

    def generate_from_file(
        self,
        definitions_path: Path,
        *,
        config_overrides: Optional[Dict[str, Any]] = None,
    ) -> GenerationReport:
        """Full pipeline: load file → parse → validate → synthesize → plan."""
        definitions_path = Path(definitions_path)
        report: GenerationReport = GenerationReport(source_file=str(definitions_path))

        with Timer("load_definitions") as t_load:
            try:
                raw_data: Dict[str, Any] = load_definition_file(definitions_path)
                definitions: DefinitionSet = parse_definitions(
                    raw_data, config_overrides, source_file=str(definitions_path)
                )
            except (FileNotFoundError, CrudGenError) as exc:
                load_error: Optional[Exception] = exc
            else:
                load_error = None

        if load_error is not None:
            report.load_errors.append(str(load_error))
            report.step_metrics.append(GenerationStepMetric(
                step_name="Load Definitions",
                success=False,
                elapsed_seconds=t_load.elapsed,
                detail=str(load_error),
            ))
            return self._finalise_report(report, t_load.elapsed)

        report.step_metrics.append(GenerationStepMetric(
            step_name="Load Definitions",
            success=True,
            elapsed_seconds=t_load.elapsed,
            detail=(
                f"{len(definitions.models)} models, "
                f"{len(definitions.operations)} operations from {definitions_path.name}"
            ),
        ))
        return self._run_pipeline(definitions, report, t_load.elapsed)

    # -----------------------------------------------------------------
    # Public: generate from in-memory objects
    # -----------------------------------------------------------------

    def generate(self, definitions: DefinitionSet) -> GenerationReport:
        report: GenerationReport = GenerationReport(source_file=definitions.source_file or "")
        return self._run_pipeline(definitions, report, 0.0)

    # -----------------------------------------------------------------
    # Internal: master pipeline
    # -----------------------------------------------------------------

    def _run_pipeline(
        self,
        definitions: DefinitionSet,
        report: GenerationReport,
        already_elapsed: float,
    ) -> GenerationReport:
        pipeline_start: float = time.perf_counter() - already_elapsed
        report.config = definitions.config
        report.total_models = len(definitions.models)
        report.total_operations = len(definitions.operations)

        validation_ok: bool = self._step_validate(definitions, report)
        if not validation_ok and self._strict_validation:
            return self._finalise_report(report, time.perf_counter() - pipeline_start)

        self._step_synthesize(definitions, report)
        self._step_plan(definitions, report)

        return self._finalise_report(report, time.perf_counter() - pipeline_start)

    # -----------------------------------------------------------------
    # Pipeline step: Validation
    # -----------------------------------------------------------------

    def _step_validate(self, definitions: DefinitionSet, report: GenerationReport) -> bool:
        """Returns True if validation passed (or only warnings and not strict)."""
        with Timer("validation") as t:
            result: ValidationResult = validate_full(definitions)

        report.validation_errors.extend(str(e) for e in result.errors)
        report.validation_warnings.extend(str(w) for w in result.warnings)

        if result.has_errors:
            detail: str = f"{result.error_count} error(s)"
        elif result.has_warnings:
            detail = f"{result.warning_count} warning(s)"
        else:
            detail = "all checks passed"

        report.step_metrics.append(GenerationStepMetric(
            step_name="Validate Definitions",
            success=result.is_valid,
            elapsed_seconds=t.elapsed,
            detail=detail,
        ))

        if result.has_errors:
            logger.error(
                "Validation failed with %d error(s) in %.3fs.",
                result.error_count,
                t.elapsed,
            )
            for err in result.errors:
                logger.error("  ✗ %s", err)
            return False

        if result.has_warnings:
            logger.warning(
                "Validation passed with %d warning(s) in %.3fs.",
                result.warning_count,
                t.elapsed,
            )
            for warn in result.warnings:
                logger.warning("  ⚠ %s", warn)
            if self._fail_on_warnings:
                return False

        return True

    # -----------------------------------------------------------------
    # Pipeline step: Schema synthesis
    # -----------------------------------------------------------------

    def _step_synthesize(self, definitions: DefinitionSet, report: GenerationReport) -> None:
        synthesizer: SchemaSynthesizer = SchemaSynthesizer(definitions.config)

        with Timer("synthesis") as t:
            for model in definitions.models:
                try:
                    report.descriptors[model.name] = synthesizer.synthesize(model)
                except SynthesisError as exc:
                    message: str = f"{type(exc).__name__}: {exc}"
                    report.synthesis_errors.append(message)
                    logger.error("Synthesis of '%s' failed: %s", model.name, message)

        report.step_metrics.append(GenerationStepMetric(
            step_name="Synthesize Schemas",
            success=not report.synthesis_errors,
            elapsed_seconds=t.elapsed,
            detail=f"{len(report.descriptors)}/{len(definitions.models)} schemas",
        ))
        logger.info(
            "Schema synthesis complete: %d/%d in %.3fs.",
            len(report.descriptors),
            len(definitions.models),
            t.elapsed,
        )

    # -----------------------------------------------------------------
    # Pipeline step: Operation planning
    # -----------------------------------------------------------------

    def _step_plan(self, definitions: DefinitionSet, report: GenerationReport) -> None:
        with Timer("planning") as t:
            for op in definitions.operations:
                descriptor: Optional[SchemaDescriptor] = report.descriptors.get(op.model)
                if descriptor is None:
                    report.planning_errors.append(
                        f"Operation '{op.name}' skipped: no schema for model '{op.model}'."
                    )
                    continue
                if op.action in ITEM_ACTIONS:
                    target: Optional[SchemaField] = descriptor.get_field(op.target_field or "")
                    if target is None or not target.repeated or target.sub_schema is None:
                        report.planning_errors.append(
                            f"Operation '{op.name}' skipped: '{op.target_field}' is not "
                            f"an embedded array of '{op.model}'."
                        )
                        continue
                report.plans.append(
                    OperationPlan(spec=op, descriptor=descriptor, path=op.route_path())
                )

        report.step_metrics.append(GenerationStepMetric(
            step_name="Plan Operations",
            success=not report.planning_errors,
            elapsed_seconds=t.elapsed,
            detail=f"{len(report.plans)}/{len(definitions.operations)} operations",
        ))

    # -----------------------------------------------------------------
    # Internal: finalise report
    # -----------------------------------------------------------------

    def _finalise_report(self, report: GenerationReport, total_elapsed: float) -> GenerationReport:
        report.total_elapsed_seconds = total_elapsed
        failed: bool = bool(
            report.load_errors
            or report.validation_errors
            or report.synthesis_errors
            or report.planning_errors
        )
        if self._fail_on_warnings and report.validation_warnings:
            failed = True
        report.success = not failed
        return report


# ---------------------------------------------------------------------------
# Handler construction
# ---------------------------------------------------------------------------


def build_handlers(
    report: GenerationReport,
    provider_factory: Callable[[SchemaDescriptor], ConnectionProvider],
    *,
    sink: Optional[ResponseSink] = None,
) -> List[Tuple[OperationPlan, OperationHandler]]:
    """
    Bind every planned operation to an ``OperationHandler``.

    ``provider_factory`` is called once per descriptor; handlers over the
    same model share its connection provider.
    """
    config: GenerationConfig = report.config or GenerationConfig()
    providers: Dict[str, ConnectionProvider] = {}
    handlers: List[Tuple[OperationPlan, OperationHandler]] = []

    for plan in report.plans:
        name: str = plan.descriptor.name
        if name not in providers:
            providers[name] = provider_factory(plan.descriptor)
        handlers.append(
            (
                plan,
                OperationHandler(
                    plan.spec, plan.descriptor, providers[name], config=config, sink=sink
                ),
            )
        )

    logger.info("Built %d operation handler(s).", len(handlers))
    return handlers


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "ArtifactGenerator",
    "GenerationReport",
    "GenerationStepMetric",
    "OperationPlan",
    "build_handlers",
]

logger.debug("crudgen.generator loaded.")
