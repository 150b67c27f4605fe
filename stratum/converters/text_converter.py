"""
Human readable rendering of plans and run summaries
"""

from typing import List

from stratum.converters.common import render_value
from stratum.execution import RunSummary
from stratum.planner import ActionKind, Plan, PlanAction

_SYMBOLS = {
    ActionKind.CREATE: "+",
    ActionKind.UPDATE: "~",
    ActionKind.DESTROY: "-",
    ActionKind.NOOP: " ",
}


def _describe(action: PlanAction) -> List[str]:
    symbol = _SYMBOLS[action.kind]
    label = action.kind.value
    if action.replacement:
        label += " (replace, create first)" if action.create_before_destroy else " (replace)"
    if action.deposed:
        label += f" (deposed {action.resource_id})"
    lines = [f"  {symbol} {action.node_id}: {label}"]
    if action.reason and action.kind != ActionKind.NOOP:
        lines[0] += f"  # {action.reason}"
    for name, change in action.changes.items():
        marker = "  (forces replacement)" if change.requires_replacement else ""
        lines.append(f"      {name}: {render_value(change.before)} -> {render_value(change.after)}{marker}")
    if action.kind == ActionKind.CREATE and not action.replacement:
        for name, value in action.desired.items():
            lines.append(f"      {name} = {render_value(value)}")
    return lines


def to_text(plan: Plan) -> str:
    lines: List[str] = []
    if plan.drift:
        lines.append("Drift detected:")
        for node_id, changes in sorted(plan.drift.items()):
            if changes is None:
                lines.append(f"  ! {node_id}: deleted outside stratum")
                continue
            for name, change in changes.items():
                lines.append(
                    f"  ! {node_id}.{name}: {render_value(change.before)} -> {render_value(change.after)}"
                )
        lines.append("")

    if plan.actions:
        lines.append("Actions, in execution order:")
        for action in plan.actions:
            lines.extend(_describe(action))

    if plan.errors:
        lines.append("")
        lines.append("Errors:")
        for error in plan.errors:
            lines.append(f"  {error.classification}: {error}")
    if plan.skipped:
        lines.append("")
        lines.append("Skipped:")
        for node_id, cause in sorted(plan.skipped.items()):
            lines.append(f"  {node_id} (depends on {cause})")

    if plan.outputs:
        lines.append("")
        lines.append("Outputs:")
        for name, value in plan.outputs.items():
            lines.append(f"  {name} = {render_value(value)}")

    counts = plan.summary()
    lines.append("")
    if not plan.has_changes:
        lines.append("No changes.")
    else:
        lines.append(
            f"Plan: {counts['create']} to add, {counts['update']} to change, "
            f"{counts['destroy']} to destroy ({counts['replace']} replacements)."
        )
    return "\n".join(lines)


def summary_to_text(summary: RunSummary) -> str:
    counts = summary.counts()
    described = ", ".join(f"{count} {name}" for name, count in counts.items() if count)
    lines = [f"Apply {summary.status}: {described or 'nothing to do'}"]
    for node_id, classification, message in summary.failures():
        lines.append(f"  FAILED {node_id} [{classification}]: {message}")
    for node_id in summary.skipped:
        lines.append(f"  SKIPPED {node_id}")
    if summary.outputs:
        lines.append("Outputs:")
        for name, value in summary.outputs.items():
            lines.append(f"  {name} = {render_value(value)}")
    return "\n".join(lines)
