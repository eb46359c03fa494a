"""Human-readable and JSON renderings of run results."""

import json
from dataclasses import asdict
from typing import Any, Dict, List

from newapi_sync.services.types import ResetResult, SyncRunResult


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def run_result_to_dict(result: SyncRunResult) -> Dict[str, Any]:
    """Full run result, including the desired state and the diff."""
    return {
        "success": result.success,
        "elapsed_ms": round(result.elapsed_ms),
        "providers": [asdict(r) for r in result.provider_reports],
        "desired": asdict(result.desired),
        "diff": asdict(result.diff),
        "apply": asdict(result.apply),
    }


def reset_result_to_dict(result: ResetResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "elapsed_ms": round(result.elapsed_ms),
        "diff": asdict(result.diff),
        "apply": asdict(result.apply),
        "tokens_deleted": result.tokens_deleted,
        "token_errors": list(result.token_errors),
    }


def to_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=_json_default)


def format_run_summary(result: SyncRunResult) -> List[str]:
    """Summary lines for a sync run: counts per resource, then every failure."""
    apply = result.apply
    succeeded = sum(1 for r in result.provider_reports if r.success)
    lines = [
        f"Mode: {'dry-run' if apply.dry_run else 'apply'}",
        f"Providers: {succeeded}/{len(result.provider_reports)}",
    ]
    for report in result.provider_reports:
        status = "ok" if report.success else "failed"
        line = (
            f"  {report.name} ({report.type}): {status} | groups {report.groups} | models {report.models} | "
            f"tokens +{report.tokens.created} ={report.tokens.existing} -{report.tokens.deleted}"
        )
        if report.test_cost is not None:
            line += f" | test cost ${report.test_cost:.4f}"
        lines.append(line)
    lines.append(f"Channels: +{apply.channels.created} ~{apply.channels.updated} -{apply.channels.deleted}")
    lines.append(
        f"Models: +{apply.models.created} ~{apply.models.updated} -{apply.models.deleted} "
        f"| Orphans: -{apply.models.orphans_deleted}"
    )
    lines.append(f"Options updated: {len(apply.options_updated)}")

    for report in result.provider_reports:
        if not report.success:
            lines.append(f"[{report.name}] {report.error or 'unknown error'}")
    for error in apply.errors:
        lines.append(f"[{error.phase}/{error.key}] {error.message}")

    elapsed = result.elapsed_ms / 1000
    lines.append(f"Completed in {elapsed:.2f}s" if result.success else f"Completed with errors in {elapsed:.2f}s")
    return lines


def format_reset_summary(result: ResetResult) -> List[str]:
    apply = result.apply
    lines = [
        f"Reset {'complete' if result.success else 'completed with errors'} "
        f"| Channels: -{apply.channels.deleted} | Models: -{apply.models.deleted} "
        f"| Orphans: -{apply.models.orphans_deleted} | Tokens: -{result.tokens_deleted} "
        f"| Options: {len(apply.options_updated)}"
    ]
    for error in apply.errors:
        lines.append(f"[{error.phase}/{error.key}] {error.message}")
    for error in result.token_errors:
        lines.append(f"[tokens] {error}")
    return lines
