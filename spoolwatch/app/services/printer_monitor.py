"""Per-printer wiring: session state, MQTT listener and usage reconciliation.

Reports are processed on paho's network thread, strictly in arrival order.
A finished session is reconciled on the application's event loop so the
cloud lookup and deductions never hold up the next report.
"""

import asyncio
import logging
from concurrent.futures import Future

from spoolwatch.app.core.config import Settings
from spoolwatch.app.services.bambu_cloud import BambuCloudService
from spoolwatch.app.services.bambu_mqtt import BambuMQTTListener
from spoolwatch.app.services.filament_naming import ColorTable
from spoolwatch.app.services.inventory_client import InventoryClient
from spoolwatch.app.services.print_session import PrintSessionTracker, SessionSummary
from spoolwatch.app.services.usage_tracker import STRATEGY_CLOUD, UsageReconciler

logger = logging.getLogger(__name__)


class PrinterMonitor:
    """Owns one printer's SessionState and everything that reads or acts on it."""

    def __init__(self, settings: Settings):
        self.serial_number = settings.printer_serial
        strategy = settings.effective_usage_strategy

        self.inventory = InventoryClient(
            settings.tracker_api_url,
            settings.tracker_api_key,
            timeout=settings.deduction_timeout,
        )
        self.cloud = (
            BambuCloudService(
                access_token=settings.cloud_mqtt_token,
                base_url=settings.bambu_api_base,
                timeout=settings.cloud_request_timeout,
            )
            if strategy == STRATEGY_CLOUD
            else None
        )
        self.reconciler = UsageReconciler(
            self.inventory,
            device_id=self.serial_number,
            strategy=strategy,
            cloud=self.cloud,
            brand=settings.filament_brand,
            grace_period=settings.cloud_task_grace_period,
            default_spool_weight=settings.default_spool_weight,
            resolve_color_names=settings.resolve_color_names,
            color_table=ColorTable.load(extra_path=settings.color_names_file) if settings.resolve_color_names else None,
        )
        self.tracker = PrintSessionTracker(self.serial_number, on_session_end=self.schedule_reconcile)
        self.listener = BambuMQTTListener(
            self.serial_number,
            self.tracker.handle_payload,
            ip_address=settings.printer_ip,
            access_code=settings.printer_access_code,
            use_cloud=settings.use_cloud_mqtt,
            cloud_server=settings.cloud_mqtt_server,
            cloud_uid=settings.cloud_mqtt_uid,
            cloud_token=settings.cloud_mqtt_token,
            reconnect_initial_delay=settings.reconnect_initial_delay,
            reconnect_max_delay=settings.reconnect_max_delay,
        )
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def state(self):
        return self.tracker.state

    async def start(self) -> None:
        """Connect the listener; reconciliations run on the calling event loop."""
        self._loop = asyncio.get_running_loop()
        self.listener.connect()

    def schedule_reconcile(self, summary: SessionSummary) -> Future | None:
        """Queue reconciliation of a finished session on the event loop (thread-safe)."""
        if self._loop is None or self._loop.is_closed():
            logger.error("[%s] No event loop to reconcile session %d on", self.serial_number, summary.session_id)
            return None
        future = asyncio.run_coroutine_threadsafe(self.reconciler.reconcile(summary), self._loop)
        future.add_done_callback(self._log_reconcile_outcome)
        return future

    def _log_reconcile_outcome(self, future: Future) -> None:
        if future.cancelled():
            logger.warning("[%s] Usage reconciliation cancelled", self.serial_number)
            return
        error = future.exception()
        if error is not None:
            logger.error("[%s] Error handling print end: %s", self.serial_number, error, exc_info=error)

    async def stop(self, grace_period: float = 5.0) -> bool:
        """Disconnect within grace_period and close HTTP clients. Returns False on timeout."""
        clean = True
        try:
            await asyncio.wait_for(asyncio.to_thread(self.listener.disconnect), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning("[%s] MQTT disconnect did not finish within %ss", self.serial_number, grace_period)
            clean = False

        await self.inventory.close()
        if self.cloud is not None:
            await self.cloud.close()
        return clean
