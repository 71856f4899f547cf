"""Tests for PrinterMonitor wiring and the thread to event loop hand-off."""

import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from spoolwatch.app.core.config import Settings
from spoolwatch.app.services.print_session import SessionSummary
from spoolwatch.app.services.printer_monitor import PrinterMonitor


def make_settings(**overrides):
    values = {
        "printer_serial": "TEST123",
        "printer_ip": "192.168.1.100",
        "printer_access_code": "12345678",
        "cloud_mqtt_token": "",
        "usage_strategy": "auto",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_summary(session_id=1):
    now = datetime.now(timezone.utc)
    return SessionSummary(
        session_id=session_id,
        final_state="FINISH",
        started_at=now,
        ended_at=now,
        active_slots=(0,),
        trays_at_start={},
        last_progress_percent=100,
        ams_data_at_end=None,
    )


class TestWiring:
    """Tests for strategy selection."""

    def test_delta_without_token(self):
        monitor = PrinterMonitor(make_settings())

        assert monitor.reconciler.strategy == "delta"
        assert monitor.cloud is None
        assert monitor.listener.broker_host == "192.168.1.100"

    def test_cloud_with_token(self):
        monitor = PrinterMonitor(make_settings(cloud_mqtt_token="tok"))

        assert monitor.reconciler.strategy == "cloud"
        assert monitor.cloud is not None
        assert monitor.cloud.access_token == "tok"

    def test_explicit_strategy_overrides_token(self):
        monitor = PrinterMonitor(make_settings(cloud_mqtt_token="tok", usage_strategy="delta"))
        assert monitor.reconciler.strategy == "delta"

    def test_cloud_relay_needs_full_config(self):
        monitor = PrinterMonitor(make_settings(cloud_mqtt_enabled=True, cloud_mqtt_token="tok"))
        assert monitor.listener.use_cloud is False

        monitor = PrinterMonitor(make_settings(cloud_mqtt_enabled=True, cloud_mqtt_uid="42", cloud_mqtt_token="tok"))
        assert monitor.listener.use_cloud is True
        assert monitor.listener.credentials == ("u_42", "tok")

    def test_state_is_tracker_state(self):
        monitor = PrinterMonitor(make_settings())
        monitor.tracker.handle_payload(b'{"print": {"gcode_state": "RUNNING"}}')

        assert monitor.state.is_print_running is True


class TestScheduling:
    """Tests for reconciling sessions on the event loop."""

    @pytest.fixture
    def monitor(self):
        monitor = PrinterMonitor(make_settings())
        monitor.listener = MagicMock()
        monitor.reconciler = MagicMock()
        monitor.reconciler.reconcile = AsyncMock(return_value=[])
        return monitor

    def test_without_loop_returns_none(self, monitor):
        assert monitor.schedule_reconcile(make_summary()) is None

    @pytest.mark.asyncio
    async def test_start_connects_listener(self, monitor):
        await monitor.start()
        monitor.listener.connect.assert_called_once()

    @pytest.mark.asyncio
    async def test_reconcile_runs_on_loop_from_other_thread(self, monitor):
        await monitor.start()
        summary = make_summary()
        futures = []

        thread = threading.Thread(target=lambda: futures.append(monitor.schedule_reconcile(summary)))
        thread.start()
        await asyncio.to_thread(thread.join)

        await asyncio.wrap_future(futures[0])
        monitor.reconciler.reconcile.assert_awaited_once_with(summary)

    @pytest.mark.asyncio
    async def test_reconcile_error_is_logged(self, monitor, caplog):
        monitor.reconciler.reconcile.side_effect = RuntimeError("inventory exploded")
        await monitor.start()

        future = monitor.schedule_reconcile(make_summary())
        with pytest.raises(RuntimeError):
            await asyncio.wrap_future(future)
        await asyncio.sleep(0)

        assert "inventory exploded" in caplog.text

    @pytest.mark.asyncio
    async def test_stop_closes_clients(self, monitor):
        monitor.inventory = MagicMock(close=AsyncMock())

        assert await monitor.stop(grace_period=1) is True
        monitor.listener.disconnect.assert_called_once()
        monitor.inventory.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_reports_timeout(self, monitor):
        monitor.inventory = MagicMock(close=AsyncMock())
        monitor.listener.disconnect.side_effect = lambda: threading.Event().wait(0.5)

        assert await monitor.stop(grace_period=0.05) is False
        monitor.inventory.close.assert_awaited_once()
