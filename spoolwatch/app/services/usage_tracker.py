"""Automatic filament consumption tracking.

Runs once per finished print session and works out how many grams each AMS
slot consumed, then posts one deduction per slot to the inventory.

Two strategies, one per deployment:
- cloud: the slicer estimate of the printer's latest cloud task, scaled by
  progress for failed prints.
- delta: spool weight or remain% captured at print start versus the last AMS
  report of the session.
"""

import asyncio
import logging

from spoolwatch.app.schemas.cloud import TASK_STATUS_FAILED, CloudFilamentUsage, CloudTask
from spoolwatch.app.services.bambu_cloud import BambuCloudAuthError, BambuCloudError, BambuCloudService
from spoolwatch.app.services.filament_naming import (
    DEFAULT_BRAND,
    ColorTable,
    normalize,
    normalize_color,
)
from spoolwatch.app.services.inventory_client import DeductionResult, InventoryClient, UsageRecord
from spoolwatch.app.services.print_session import SessionSummary
from spoolwatch.app.services.tray_parser import UNKNOWN, TraySnapshot, snapshot_trays

logger = logging.getLogger(__name__)

STRATEGY_CLOUD = "cloud"
STRATEGY_DELTA = "delta"


def scale_by_progress(grams: float, progress_percent: float) -> float:
    """Grams actually printed when a print stopped at progress_percent."""
    return round(grams * (progress_percent / 100), 2)


def tray_delta_grams(start: TraySnapshot, end: TraySnapshot, default_spool_weight: float = 1000.0) -> float | None:
    """Grams consumed between two snapshots of the same slot, or None if not measurable.

    Prefers the spool weight delta; falls back to the remain% delta applied to
    the start weight (or default_spool_weight when the spool weight is unknown).
    """
    if (
        start.spool_weight_grams is not None
        and end.spool_weight_grams is not None
        and start.spool_weight_grams > end.spool_weight_grams
    ):
        return round(start.spool_weight_grams - end.spool_weight_grams, 2)

    if start.remain_percent is not None and end.remain_percent is not None and start.remain_percent > end.remain_percent:
        nominal = start.spool_weight_grams or default_spool_weight
        return round((start.remain_percent - end.remain_percent) / 100 * nominal, 2)

    return None


class UsageReconciler:
    """Turns a finished session into inventory deductions."""

    def __init__(
        self,
        inventory: InventoryClient,
        device_id: str,
        strategy: str = STRATEGY_CLOUD,
        cloud: BambuCloudService | None = None,
        brand: str = DEFAULT_BRAND,
        grace_period: float = 5.0,
        default_spool_weight: float = 1000.0,
        resolve_color_names: bool = False,
        color_table: ColorTable | None = None,
    ):
        if strategy not in (STRATEGY_CLOUD, STRATEGY_DELTA):
            raise ValueError(f"Unknown usage strategy: {strategy}")
        self.inventory = inventory
        self.device_id = device_id
        self.strategy = strategy
        self.cloud = cloud
        self.brand = brand
        self.grace_period = grace_period
        self.default_spool_weight = default_spool_weight
        self.resolve_color_names = resolve_color_names
        self.color_table = color_table
        self._lock = asyncio.Lock()
        self._last_session_id: int | None = None

    async def reconcile(self, summary: SessionSummary) -> list[tuple[UsageRecord, DeductionResult]]:
        """Compute and submit usage for one session. Each session is reconciled at most once."""
        async with self._lock:
            if self._last_session_id is not None and summary.session_id <= self._last_session_id:
                logger.warning("[UsageTracker] Session %d already reconciled, skipping", summary.session_id)
                return []
            self._last_session_id = summary.session_id

            logger.info(
                "[UsageTracker] Print %s, computing usage (strategy=%s)",
                "failed/cancelled" if summary.failed else "completed",
                self.strategy,
            )
            if self.strategy == STRATEGY_CLOUD:
                records = await self.usage_from_cloud_task(summary)
            else:
                records = self.usage_from_tray_deltas(summary)

            results = []
            for record in records:
                results.append((record, await self.inventory.deduct(record)))

            if results:
                succeeded = sum(1 for _, result in results if result.success)
                logger.info("[UsageTracker] Deductions complete: %d/%d succeeded", succeeded, len(results))
            return results

    def _record(self, sub_brand: str | None, filament_type: str | None, color: str, grams: float, slot: int) -> UsageRecord:
        # Snapshot placeholders carry no naming information
        if sub_brand == UNKNOWN:
            sub_brand = None
        if filament_type == UNKNOWN:
            filament_type = None
        name = normalize(sub_brand, filament_type, brand=self.brand)
        if self.resolve_color_names:
            color = normalize_color(color, name.type, table=self.color_table)
        return UsageRecord(brand=name.brand, type=name.type, color=color, grams_used=grams, slot_index=slot)

    # Strategy A: cloud task

    async def usage_from_cloud_task(self, summary: SessionSummary) -> list[UsageRecord]:
        if self.cloud is None:
            logger.warning("[UsageTracker] No cloud service configured, skipping deduction")
            return []

        # Give the cloud time to register the finished task
        if self.grace_period > 0:
            await asyncio.sleep(self.grace_period)

        try:
            task = await self.cloud.get_latest_task(self.device_id)
        except BambuCloudAuthError as e:
            logger.warning("[UsageTracker] Cloud task lookup unavailable (%s), skipping deduction", e)
            return []
        except BambuCloudError as e:
            logger.error("[UsageTracker] Could not fetch task data (%s), skipping deduction", e)
            return []
        if task is None:
            logger.warning("[UsageTracker] Could not fetch task data, skipping deduction")
            return []

        logger.info(
            "[UsageTracker] Task: %r, status: %s, total weight: %sg",
            task.display_title,
            task.status,
            task.total_weight_grams,
        )
        if summary.failed and task.status != TASK_STATUS_FAILED:
            logger.warning(
                "[UsageTracker] Print failed but task status is %s, using slicer estimate scaled by progress",
                task.status,
            )

        if not task.breakdown:
            return self._usage_from_task_total(task, summary)

        logger.info("[UsageTracker] Processing %d filament(s) from slicer data", len(task.breakdown))
        single_filament = len(task.breakdown) == 1
        records = []
        for entry in task.breakdown:
            record = self._usage_from_task_entry(entry, summary, single_filament)
            if record is not None:
                records.append(record)
        return records

    def _usage_from_task_total(self, task: CloudTask, summary: SessionSummary) -> list[UsageRecord]:
        logger.warning("[UsageTracker] No AMS detail mapping in task, attempting single deduction with total weight")
        if not summary.active_slots:
            logger.warning("[UsageTracker] No active tray recorded during print, skipping deduction")
            return []

        slot = summary.active_slots[0]
        tray = summary.trays_at_start.get(slot)
        if tray is None:
            logger.warning("[UsageTracker] No tray snapshot for slot %d, skipping deduction", slot)
            return []

        grams = task.total_grams
        if summary.failed:
            grams = scale_by_progress(grams, summary.last_progress_percent)
            logger.info("[UsageTracker] Failed print, scaling weight by %s%%: %sg", summary.last_progress_percent, grams)
        if not grams > 0:
            logger.info("[UsageTracker] Task reports %sg used, nothing to deduct", grams)
            return []

        return [self._record(tray.sub_brand, tray.filament_type, tray.color_code, grams, slot)]

    def _usage_from_task_entry(
        self, entry: CloudFilamentUsage, summary: SessionSummary, single_filament: bool
    ) -> UsageRecord | None:
        grams = entry.grams
        if summary.failed:
            grams = scale_by_progress(grams, summary.last_progress_percent)
            logger.info(
                "[UsageTracker] Failed print, scaling %s weight by %s%%: %sg",
                entry.filament_type,
                summary.last_progress_percent,
                grams,
            )
        if not grams > 0:
            logger.info("[UsageTracker] Skipping %s, 0g used", entry.filament_type)
            return None

        cloud_slot = entry.slot_index
        if single_filament and len(summary.active_slots) == 1:
            # The loaded spool may differ from the one the file was sliced for
            slot = summary.active_slots[0]
            tray = summary.trays_at_start.get(slot)
            color = tray.color_code if tray else entry.source_color
            if slot != cloud_slot:
                logger.info(
                    "[UsageTracker] Using active tray %d (A%d) instead of cloud tray %d (A%d)",
                    slot,
                    slot + 1,
                    cloud_slot,
                    cloud_slot + 1,
                )
        else:
            slot = cloud_slot
            tray = summary.trays_at_start.get(slot)
            color = entry.source_color or (tray.color_code if tray else None)

        filament_type = entry.filament_type or (tray.filament_type if tray else None)
        if tray is None and not filament_type:
            logger.warning("[UsageTracker] No tray snapshot or cloud filament type for slot %d, skipping", slot)
            return None

        sub_brand = tray.sub_brand if tray else entry.filament_type
        record = self._record(sub_brand, filament_type, color or UNKNOWN, grams, slot)
        logger.info(
            "[UsageTracker] Tray %d (A%d): %sg %s (%s), source: slicer estimate",
            slot,
            slot + 1,
            grams,
            record.type,
            record.brand,
        )
        return record

    # Strategy B: tray deltas

    def usage_from_tray_deltas(self, summary: SessionSummary) -> list[UsageRecord]:
        end_trays = snapshot_trays(summary.ams_data_at_end)
        if not end_trays:
            logger.warning("[UsageTracker] No AMS data captured at end of print, skipping deduction")
            return []

        records = []
        for slot in summary.active_slots:
            start = summary.trays_at_start.get(slot)
            end = end_trays.get(slot)
            if start is None or end is None:
                logger.warning("[UsageTracker] Missing tray data for slot %d, skipping", slot)
                continue

            grams = tray_delta_grams(start, end, self.default_spool_weight)
            if grams is None or not grams > 0:
                logger.info("[UsageTracker] Tray %d (A%d): no measurable usage", slot, slot + 1)
                continue

            logger.info("[UsageTracker] Tray %d (A%d): %sg used, source: AMS delta", slot, slot + 1, grams)
            records.append(self._record(start.sub_brand, start.filament_type, start.color_code, grams, slot))
        return records
