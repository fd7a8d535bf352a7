"""Rendering and persistence of the final pipeline report."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import List

from .schema import ExecutionPlan, PipelineReport
from .utils.slug import slugify

RULE = "=" * 60


def summary_lines(report: PipelineReport) -> List[str]:
    """Plain-text lines echoed to the progress sink when a run ends."""
    lines = ["", RULE, "TASK COMPLETED" if report.success else "TASK FAILED", RULE, ""]
    if report.summary:
        lines.append(report.summary)
        lines.append("")
    if report.pr_number is not None:
        lines.append(f"PR: #{report.pr_number} ({report.pr_url})")
    if report.branch_name:
        lines.append(f"Branch: {report.branch_name}")
    if report.changed_files:
        lines.append("")
        lines.append("Changed files:")
        for change in report.changed_files:
            marker = " (new)" if change.is_new else ""
            lines.append(f"  - {change.path} (+{change.lines_added}, -{change.lines_removed}){marker}")
    lines.extend(
        [
            "",
            "Statistics:",
            f"  - Review iterations: {report.review_iterations}",
            f"  - CI runs: {report.ci_runs}",
            f"  - Duration: {report.total_duration:.0f}s",
        ]
    )
    if report.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in report.errors)
    return lines


def render_markdown(report: PipelineReport) -> str:
    status = "Success" if report.success else "Failed"
    lines = [f"# Pipeline report: {status}", ""]
    if report.summary:
        lines.extend([report.summary, ""])
    lines.append("| Field | Value |")
    lines.append("|---|---|")
    if report.pr_number is not None:
        lines.append(f"| Pull request | [#{report.pr_number}]({report.pr_url}) |")
    if report.branch_name:
        lines.append(f"| Branch | `{report.branch_name}` |")
    lines.append(f"| Review iterations | {report.review_iterations} |")
    lines.append(f"| CI runs | {report.ci_runs} |")
    lines.append(f"| Duration | {report.total_duration:.1f}s |")
    if report.changed_files:
        lines.extend(["", "## Changed files", ""])
        for change in report.changed_files:
            marker = " (new)" if change.is_new else ""
            lines.append(f"- `{change.path}` +{change.lines_added} / -{change.lines_removed}{marker}")
    if report.errors:
        lines.extend(["", "## Errors", ""])
        lines.extend(f"- {error}" for error in report.errors)
    return "\n".join(lines) + "\n"


def render_plan(plan: ExecutionPlan) -> List[str]:
    lines = [f"Plan: {plan.summary}", f"Files: {plan.estimated_files_count}"]
    for change in plan.planned_changes:
        description = f" - {change.description}" if change.description else ""
        lines.append(f"  [{change.change_type.value}] {change.file_path or '(no path)'}{description}")
    return lines


def render_pull_request_body(plan: ExecutionPlan) -> str:
    lines = ["## Summary", plan.summary, "", "## Changes"]
    for change in plan.planned_changes:
        lines.append(f"- `{change.file_path}` ({change.change_type.value.lower()}): {change.description}")
    lines.extend(["", "---", "*Opened automatically by fullcycle.*"])
    return "\n".join(lines)


def write_report_json(report: PipelineReport, directory: Path | str, *, task: str) -> Path:
    """Persist ``report`` as JSON under ``directory`` and return the file path."""
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    name = f"run-{time.strftime('%Y%m%d-%H%M%S')}-{slugify(task, fallback='task', max_length=40)}.json"
    path = target_dir / name
    payload = {"task": task, **report.to_dict()}
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path


__all__ = ["render_markdown", "render_plan", "render_pull_request_body", "summary_lines", "write_report_json"]
