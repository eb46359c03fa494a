"""Sync service for orchestrating target reconciliation runs."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from newapi_sync.models.sync_record import SyncRecord
from newapi_sync.services.apply import apply_sync_diff
from newapi_sync.services.config_loader import AppConfig, NewApiProviderConfig
from newapi_sync.services.diff import build_sync_diff
from newapi_sync.services.exceptions import SyncInProgressError, TargetUnavailableError
from newapi_sync.services.newapi_client import NewApiClient
from newapi_sync.services.pipeline import run_provider_pipeline
from newapi_sync.services.snapshot import fetch_target_snapshot
from newapi_sync.services.token_manager import delete_provider_tokens
from newapi_sync.services.types import (
    ApplyReport,
    DesiredState,
    ProviderReport,
    ResetResult,
    SyncRunResult,
)

logger = logging.getLogger(__name__)


class SyncService:
    """Service for running syncs and resets against the target instance."""

    # Class-level lock to prevent concurrent runs
    _sync_lock = asyncio.Lock()
    _current_sync_id: Optional[int] = None

    def __init__(self, config: AppConfig):
        """Initialize sync service.

        Args:
            config: Sync configuration (already restricted by ``--only``).
        """
        self.config = config
        self.last_record: Optional[SyncRecord] = None

    def _target_client(self) -> NewApiClient:
        target = self.config.target
        return NewApiClient(target.base_url, target.system_access_token, target.user_id, name="target")

    async def _check_target(self, target: NewApiClient) -> None:
        health = await target.health_check()
        if not health.ok:
            raise TargetUnavailableError(f"Target health check failed: {health.error or 'unknown'}")

    def _start_record(self, db: Optional[Session], mode: str) -> Optional[SyncRecord]:
        if db is None:
            return None
        sync_record = SyncRecord(
            status="in_progress",
            mode=mode,
            providers=",".join(self.config.provider_names()),
            started_at=datetime.utcnow()
        )
        db.add(sync_record)
        db.commit()
        db.refresh(sync_record)
        SyncService._current_sync_id = sync_record.id
        self.last_record = sync_record
        return sync_record

    def _finish_record(
        self,
        db: Optional[Session],
        sync_record: Optional[SyncRecord],
        success: bool,
        summary: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        if db is None or sync_record is None:
            return
        sync_record.status = "success" if success else "failed"
        sync_record.completed_at = datetime.utcnow()
        sync_record.changes_summary = summary
        sync_record.error_message = error_message
        db.commit()
        db.refresh(sync_record)

    async def run_sync(self, db: Optional[Session] = None, dry_run: bool = False) -> SyncRunResult:
        """Run providers, diff against the target and apply the result.

        Steps:
        1. Health-check the target (fatal on failure)
        2. Run the provider pipeline to build the desired state
        3. Snapshot the target and compute the diff
        4. Apply the diff (or only count it in dry-run mode)

        Args:
            db: Optional database session; when given the run is recorded.
            dry_run: Compute the diff without mutating the target.

        Returns:
            SyncRunResult. ``success`` requires at least one successful
            provider (or none configured) and zero apply errors.

        Raises:
            SyncInProgressError: If another run is already in progress.
            TargetUnavailableError: If the target fails its health check.
        """
        if self._sync_lock.locked():
            logger.warning("Sync already in progress")
            raise SyncInProgressError("A sync operation is already in progress")

        async with self._sync_lock:
            sync_record = self._start_record(db, "dry-run" if dry_run else "apply")
            started = time.monotonic()
            logger.info(f"Starting {'dry-run ' if dry_run else ''}sync for: {', '.join(self.config.provider_names())}")

            try:
                async with self._target_client() as target:
                    await self._check_target(target)
                    desired, reports = await run_provider_pipeline(self.config)
                    snapshot = await fetch_target_snapshot(target)
                    diff = build_sync_diff(self.config, desired, snapshot)
                    apply_report = await apply_sync_diff(target, diff, dry_run=dry_run)
            except Exception as e:
                error_message = str(e) or type(e).__name__
                logger.error(f"Sync failed: {error_message}")
                self._finish_record(db, sync_record, False, error_message=error_message)
                raise
            finally:
                SyncService._current_sync_id = None

            providers_ok = any(r.success for r in reports) or not reports
            result = SyncRunResult(
                success=providers_ok and not apply_report.errors,
                provider_reports=reports,
                desired=desired,
                diff=diff,
                apply=apply_report,
                elapsed_ms=(time.monotonic() - started) * 1000,
            )
            self._finish_record(
                db,
                sync_record,
                result.success,
                summary=self._build_changes_summary(apply_report, reports),
                error_message=self._build_error_message(apply_report, reports),
            )
            logger.info(f"Sync {'completed' if result.success else 'completed with errors'} in {result.elapsed_ms / 1000:.2f}s")
            return result

    async def reset(self, db: Optional[Session] = None) -> ResetResult:
        """Remove everything this tool manages for the configured providers.

        Reconciles the target against an empty desired state, so channels,
        models and option entries of other providers are left alone, then
        deletes the provider tokens on every new-api upstream.

        Args:
            db: Optional database session; when given the run is recorded.

        Returns:
            ResetResult.

        Raises:
            SyncInProgressError: If another run is already in progress.
            TargetUnavailableError: If the target fails its health check.
        """
        if self._sync_lock.locked():
            logger.warning("Sync already in progress")
            raise SyncInProgressError("A sync operation is already in progress")

        async with self._sync_lock:
            sync_record = self._start_record(db, "reset")
            started = time.monotonic()
            logger.info(f"Starting reset for: {', '.join(self.config.provider_names())}")

            desired = DesiredState(
                managed_providers=set(self.config.provider_names()),
                mapping_sources=set(self.config.model_mapping),
            )
            try:
                async with self._target_client() as target:
                    await self._check_target(target)
                    snapshot = await fetch_target_snapshot(target)
                    diff = build_sync_diff(self.config, desired, snapshot)
                    apply_report = await apply_sync_diff(target, diff)
                tokens_deleted, token_errors = await self._delete_upstream_tokens()
            except Exception as e:
                error_message = str(e) or type(e).__name__
                logger.error(f"Reset failed: {error_message}")
                self._finish_record(db, sync_record, False, error_message=error_message)
                raise
            finally:
                SyncService._current_sync_id = None

            result = ResetResult(
                success=not apply_report.errors and not token_errors,
                diff=diff,
                apply=apply_report,
                tokens_deleted=tokens_deleted,
                token_errors=token_errors,
                elapsed_ms=(time.monotonic() - started) * 1000,
            )
            summary = self._build_changes_summary(apply_report, [])
            self._finish_record(
                db,
                sync_record,
                result.success,
                summary=f"{summary}; Tokens: -{tokens_deleted}",
                error_message="; ".join(token_errors + [f"{e.phase}/{e.key}: {e.message}" for e in apply_report.errors]) or None,
            )
            return result

    async def _delete_upstream_tokens(self):
        deleted = 0
        errors: List[str] = []
        for provider in self.config.providers:
            if not isinstance(provider, NewApiProviderConfig):
                continue
            client = NewApiClient(provider.base_url, provider.system_access_token, provider.user_id, name=provider.name)
            try:
                async with client:
                    count = await delete_provider_tokens(client, provider.name)
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"[{provider.name}] Token cleanup failed: {e}")
                errors.append(f"{provider.name}: {e}")
                continue
            logger.info(f"[{provider.name}] Deleted {count} tokens")
            deleted += count
        return deleted, errors

    def _build_changes_summary(self, apply_report: ApplyReport, reports: List[ProviderReport]) -> str:
        """Build a human-readable summary of a run.

        Args:
            apply_report: Apply (or dry-run preview) report.
            reports: Provider reports (empty for resets).

        Returns:
            Summary string.
        """
        channels = apply_report.channels
        models = apply_report.models
        summary_parts = []
        if reports:
            succeeded = sum(1 for r in reports if r.success)
            summary_parts.append(f"Providers: {succeeded}/{len(reports)}")
        summary_parts.append(f"Channels: +{channels.created} ~{channels.updated} -{channels.deleted}")
        summary_parts.append(
            f"Models: +{models.created} ~{models.updated} -{models.deleted} | Orphans: -{models.orphans_deleted}"
        )
        summary_parts.append(f"Options updated: {len(apply_report.options_updated)}")
        if apply_report.errors:
            summary_parts.append(f"{len(apply_report.errors)} errors")
        return "; ".join(summary_parts)

    def _build_error_message(self, apply_report: ApplyReport, reports: List[ProviderReport]) -> Optional[str]:
        errors = [f"[{r.name}] {r.error}" for r in reports if not r.success and r.error]
        errors.extend(f"[{e.phase}/{e.key}] {e.message}" for e in apply_report.errors)
        return "; ".join(errors) if errors else None

    def get_sync_status(self, db: Session) -> Optional[Dict[str, Any]]:
        """Get status of current sync operation.

        Args:
            db: Database session.

        Returns:
            Dictionary with sync status information, or None if no sync in progress.
            Format:
                - sync_id: Sync record ID
                - status: Current status
                - mode: apply, dry-run or reset
                - started_at: Start timestamp
                - duration_seconds: Elapsed time in seconds
        """
        if not self._current_sync_id:
            return None

        sync_record = self.get_sync_record(db, self._current_sync_id)
        if not sync_record:
            return None

        duration = (datetime.utcnow() - sync_record.started_at).total_seconds()

        return {
            "sync_id": sync_record.id,
            "status": sync_record.status,
            "mode": sync_record.mode,
            "started_at": sync_record.started_at.isoformat(),
            "duration_seconds": duration
        }

    def get_sync_history(
        self,
        db: Session,
        limit: int = 10,
        offset: int = 0
    ) -> List[SyncRecord]:
        """Get history of past runs, most recent first."""
        return db.query(SyncRecord).order_by(
            SyncRecord.started_at.desc(), SyncRecord.id.desc()
        ).limit(limit).offset(offset).all()

    def get_sync_record(self, db: Session, sync_id: int) -> Optional[SyncRecord]:
        return db.query(SyncRecord).filter(SyncRecord.id == sync_id).first()

    def is_sync_in_progress(self) -> bool:
        """Check if a sync or reset is currently in progress."""
        return self._sync_lock.locked()
