"""
Report reads and updates.

Every report update goes through here so that a report leaving the pending
metrics state always recomputes the stats of the run that owns it.
"""

import logging
from typing import Any, Dict, Optional

from .models import EvaluationReport, MetricsStatus
from .sqlite_service import SQLiteService
from .stats_service import StatsService

logger = logging.getLogger(__name__)


class ReportService:
    def __init__(self, db_service: SQLiteService, stats_service: StatsService):
        self.db = db_service
        self.stats = stats_service

    async def get_report(self, report_id: str) -> Optional[EvaluationReport]:
        return await self.db.get_report(report_id)

    async def update_report(self, report_id: str, updates: Dict[str, Any]) -> Optional[EvaluationReport]:
        """Merge ``updates`` into the report, refreshing run stats when the verdict settles.

        Returns the updated report, or None if it does not exist.
        """
        before = await self.db.get_report(report_id)
        if before is None:
            return None

        updated = await self.db.update_report_fields(report_id, updates)
        if updated is None:
            return None

        verdict_changed = "metrics_status" in updates or "pass_fail_status" in updates
        left_pending = before.metrics_status == MetricsStatus.pending
        if updated.metrics_status != MetricsStatus.pending and (left_pending or verdict_changed):
            logger.info(f"Report {report_id} is {updated.metrics_status.value}; refreshing run stats")
            try:
                await self.stats.refresh_stats_for_report(updated)
            except Exception as e:
                # Backfill on the next benchmark read repairs the stats
                logger.warning(f"Stats refresh after report {report_id} update failed: {e}")
        return updated
