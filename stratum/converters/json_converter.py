"""
JSON converter for plans and run summaries
"""

import json
from typing import Any, Dict

from stratum.converters.common import plain
from stratum.execution import RunSummary
from stratum.planner import Plan, PlanAction

PLAN_FORMAT_VERSION = 1


class PlanJSONEncoder(json.JSONEncoder):
    def default(self, o):
        return plain(o)


def _action(action: PlanAction) -> Dict[str, Any]:
    return {
        "key": action.key,
        "kind": action.kind.value,
        "node_id": action.node_id,
        "type": action.resource_type,
        "provider": action.provider,
        "resource_id": action.resource_id,
        "replacement": action.replacement,
        "create_before_destroy": action.create_before_destroy,
        "deposed": action.deposed,
        "reason": action.reason,
        "requires": list(action.requires),
        "changes": plain(action.changes),
        "desired": plain(action.desired),
    }


def _error(error: Any) -> Dict[str, Any]:
    return {
        "node_id": getattr(error, "node_id", None),
        "classification": error.classification,
        "message": error.msg,
    }


def to_json(plan: Plan) -> Dict[str, Any]:
    """Convert a Plan to a JSON-serializable dictionary"""
    return {
        "format_version": PLAN_FORMAT_VERSION,
        "created_at": plan.created_at,
        "destroy": plan.destroy_mode,
        "targets": list(plan.targets),
        "state_serial": plan.state_serial,
        "state_lineage": plan.state_lineage,
        "config_digest": plan.config_digest,
        "summary": plan.summary(),
        "actions": [_action(action) for action in plan.actions],
        "errors": [_error(error) for error in plan.errors],
        "skipped": dict(plan.skipped),
        "drift": {
            node_id: (None if changes is None else plain(changes))
            for node_id, changes in plan.drift.items()
        },
        "variables": plain(plan.variables),
        "outputs": plain(plan.outputs),
    }


def summary_to_json(summary: RunSummary) -> Dict[str, Any]:
    return {
        "status": summary.status,
        "exit_code": summary.exit_code,
        "counts": summary.counts(),
        "nodes": {node_id: status.value for node_id, status in sorted(summary.node_statuses().items())},
        "outcomes": [plain(outcome) for outcome in summary.outcomes],
        "failures": [
            {"node_id": node_id, "classification": classification, "message": message}
            for node_id, classification, message in summary.failures()
        ],
        "outputs": plain(summary.outputs),
    }
