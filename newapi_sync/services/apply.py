"""Apply executor: runs a SyncDiff against the target."""

import logging
from typing import Awaitable, Callable, List

from newapi_sync.services.newapi_client import NewApiClient
from newapi_sync.services.types import (
    ApplyError,
    ApplyReport,
    DiffOperation,
    ResourceCounts,
    SyncDiff,
)

logger = logging.getLogger(__name__)

ORPHANS_KEY = "orphaned-models"


def preview_report(diff: SyncDiff) -> ApplyReport:
    """Counts a diff would produce, without touching the target."""
    report = ApplyReport(dry_run=True)
    for counts, operations in ((report.channels, diff.channels), (report.models, diff.models)):
        counts.created = SyncDiff.count(operations, "create")
        counts.updated = SyncDiff.count(operations, "update")
        counts.deleted = SyncDiff.count(operations, "delete")
    report.options_updated = [op.key for op in diff.options if op.type != "delete"]
    return report


async def _run_operations(
    phase: str,
    operations: List[DiffOperation],
    counts: ResourceCounts,
    errors: List[ApplyError],
    create: Callable[[DiffOperation], Awaitable[object]],
    update: Callable[[DiffOperation], Awaitable[object]],
    delete: Callable[[DiffOperation], Awaitable[object]],
) -> None:
    for op in operations:
        if op.type == "delete" and (op.existing is None or not op.existing.id):
            errors.append(ApplyError(phase, op.key, f"missing {phase[:-1]} id for delete"))
            continue
        handler = {"create": create, "update": update, "delete": delete}[op.type]
        try:
            await handler(op)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"[{phase}/{op.key}] {op.type} failed: {message}")
            errors.append(ApplyError(phase, op.key, message))
            continue
        if op.type == "create":
            counts.created += 1
        elif op.type == "update":
            counts.updated += 1
        else:
            counts.deleted += 1
        logger.debug(f"[{phase}/{op.key}] {op.type} ok")


async def apply_sync_diff(target: NewApiClient, diff: SyncDiff, dry_run: bool = False) -> ApplyReport:
    """Execute a diff against the target.

    Order: options, channels, models, then the orphan purge. Every failed
    operation is recorded in ``report.errors`` and the remaining operations
    still run.

    Args:
        target: Opened target client.
        diff: Operations to run.
        dry_run: Only compute the counts.

    Returns:
        ApplyReport with counts and errors.
    """
    if dry_run:
        logger.info("Dry run: no changes applied")
        return preview_report(diff)

    report = ApplyReport(dry_run=False)

    for op in diff.options:
        if op.type == "delete":
            continue
        try:
            await target.update_option(op.key, op.value)
        except Exception as e:
            message = str(e) or "failed to update option"
            logger.error(f"[options/{op.key}] update failed: {message}")
            report.errors.append(ApplyError("options", op.key, message))
            continue
        report.options_updated.append(op.key)

    await _run_operations(
        "channels",
        diff.channels,
        report.channels,
        report.errors,
        create=lambda op: target.create_channel(op.value),
        update=lambda op: target.update_channel(op.value),
        delete=lambda op: target.delete_channel(op.existing.id),
    )

    await _run_operations(
        "models",
        diff.models,
        report.models,
        report.errors,
        create=lambda op: target.create_model(op.value),
        update=lambda op: target.update_model(op.value),
        delete=lambda op: target.delete_model(op.existing.id),
    )

    if diff.cleanup_orphans:
        try:
            report.models.orphans_deleted = await target.cleanup_orphaned_models()
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"[cleanup/{ORPHANS_KEY}] {message}")
            report.errors.append(ApplyError("cleanup", ORPHANS_KEY, message))

    logger.info(
        f"Applied: channels +{report.channels.created} ~{report.channels.updated} -{report.channels.deleted}, "
        f"models +{report.models.created} ~{report.models.updated} -{report.models.deleted}, "
        f"options {len(report.options_updated)}, errors {len(report.errors)}"
    )
    return report
