from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Optional


def _ensure_backend_on_path() -> None:
    backend_dir = Path(__file__).resolve().parents[1]
    if str(backend_dir) not in sys.path:
        sys.path.insert(0, str(backend_dir))


def _load_document(path: Path) -> Any:
    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            import yaml  # type: ignore
        except ModuleNotFoundError as exc:
            raise SystemExit(
                "PyYAML is required for YAML input. Install it with the `yaml` extra (e.g., `pip install -e .[yaml]`)."
            ) from exc
        with path.open() as handle:
            return yaml.safe_load(handle)
    with path.open() as handle:
        return json.load(handle)


def _parse_period(start: Optional[str], end: Optional[str]):
    _ensure_backend_on_path()
    from common.measure_engine.models import MeasurementPeriod

    if not start and not end:
        return None
    if not start or not end:
        raise SystemExit("--period-start and --period-end must be given together.")
    try:
        return MeasurementPeriod(start=date.fromisoformat(start), end=date.fromisoformat(end))
    except ValueError as exc:
        raise SystemExit(f"Invalid measurement period: {exc}") from exc


def run_patient_validation(
    measure_payload: Any,
    patients_payload: Any,
    *,
    measurement_period=None,
    config=None,
    max_workers: Optional[int] = None,
):
    """Adapt both payloads and evaluate every patient; returns (measure, report)."""
    _ensure_backend_on_path()
    from adapters.ums import measure_spec_from_payload, patients_from_payload
    from common.measure_engine.runner import MeasureRunner

    measure = measure_spec_from_payload(measure_payload)
    patients = patients_from_payload(patients_payload)
    report = MeasureRunner(measure, config).run(
        patients,
        measurement_period=measurement_period,
        max_workers=max_workers,
    )
    return measure, report


def _render_node(node, depth: int, lines: list[str]) -> None:
    indent = "  " * depth
    label = f"[{node.status.value.upper()}] {node.title}"
    if node.operator is not None and node.match_count is not None:
        label = f"{label} ({node.operator.value}, {node.match_count.met}/{node.match_count.total} met)"
    if node.negation:
        label = f"{label} (negated)"
    lines.append(f"{indent}- {label}")
    for fact in node.facts:
        when = f" on {fact.date.isoformat()}" if fact.date else ""
        lines.append(f"{indent}  - {fact.code}: {fact.display}{when}")
    for flag in node.review_flags:
        lines.append(f"{indent}  - review: {flag}")
    for child in node.children:
        _render_node(child, depth + 1, lines)


def _write_markdown(measure, report, out_path: Path) -> None:
    period = report.measurement_period
    lines = [
        f"# Patient Validation {report.measure_id}",
        "",
        measure.title,
        "",
        f"Measurement period: {period.start.isoformat()} to {period.end.isoformat()}",
        "",
        "## Totals",
    ]
    for outcome, count in report.totals.items():
        lines.append(f"- {outcome.value}: {count}")
    lines.append("")
    lines.append("## Patients")
    for trace in report.traces:
        lines.append("")
        lines.append(f"### {trace.patient_name or trace.patient_id} ({trace.patient_id}): {trace.final_outcome.value}")
        lines.append(trace.narrative)
        if trace.how_close:
            lines.append("- How close:")
            for reason in trace.how_close:
                lines.append(f"  - {reason}")
        if trace.review_flags:
            lines.append("- Review flags:")
            for flag in trace.review_flags:
                lines.append(f"  - {flag}")
        for pop in trace.populations:
            if not pop.present and not pop.nodes:
                continue
            suffix = " (informational)" if pop.informational else ""
            lines.append(f"- {pop.type.value}: {'met' if pop.met else 'not met'}{suffix}")
            for node in pop.nodes:
                _render_node(node, 1, lines)
    out_path.write_text("\n".join(lines) + "\n")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Evaluate test patients against a UMS measure and write JSON/MD validation traces."
    )
    parser.add_argument("--measure", required=True, help="Path to a UMS measure spec (.json or .yaml).")
    parser.add_argument("--patients", required=True, help="Path to test patients (.json or .yaml).")
    parser.add_argument(
        "--period-start",
        default=None,
        help="Measurement period start (YYYY-MM-DD); overrides the measure's own period.",
    )
    parser.add_argument("--period-end", default=None, help="Measurement period end (YYYY-MM-DD).")
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Output directory for validation files (defaults to the measure file's directory).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Evaluate patients on this many threads (env: MEASURE_ENGINE_MAX_WORKERS).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (env: MEASURE_ENGINE_LOG_LEVEL, default INFO).",
    )
    args = parser.parse_args(argv)

    _ensure_backend_on_path()
    from adapters.ums import UMSAdapterError
    from common.measure_engine.config import config_from_env
    from common.measure_engine.errors import MeasureEvaluationError

    try:
        settings = config_from_env()
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    measure_path = Path(args.measure).resolve()
    patients_path = Path(args.patients).resolve()
    output_dir = Path(args.output_dir).resolve() if args.output_dir else measure_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        measure, report = run_patient_validation(
            _load_document(measure_path),
            _load_document(patients_path),
            measurement_period=_parse_period(args.period_start, args.period_end),
            config=settings.evaluation,
            max_workers=args.max_workers or settings.max_workers,
        )
    except (UMSAdapterError, MeasureEvaluationError) as exc:
        raise SystemExit(f"Validation failed: {exc}") from exc

    base_name = f"{report.measure_id}_validation"
    out_json = output_dir / f"{base_name}.json"
    out_md = output_dir / f"{base_name}.md"
    out_json.write_text(json.dumps(report.model_dump(mode="json"), indent=2))
    _write_markdown(measure, report, out_md)

    for outcome, count in report.totals.items():
        print(f"{outcome.value}: {count}")
    print(f"Wrote {out_json}")
    print(f"Wrote {out_md}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
