"""Integration tests for BatterySchedulerManager with a mock device controller."""

import json
import logging
import threading
from datetime import datetime, timedelta

import pytest

from core.battery_scheduler import BatterySchedulerManager
from core.battery_scheduler.cost_ledger import create_charge_lot
from core.battery_scheduler.models import (
    BatteryMode,
    ChargeLot,
    ChargeSplit,
    DemandHistory,
    KickstartTimer,
    MeterReading,
    Plan,
    PlannedCharge,
    PlannedDischarge,
)
from core.battery_scheduler.time_utils import TIMEZONE

DAY = datetime(2025, 1, 15, 0, 0, tzinfo=TIMEZONE)


def at(hour, minute=0):
    return DAY + timedelta(hours=hour, minutes=minute)


def price_series():
    """Provider-style prices: cheap night, expensive evening peak."""
    prices = []
    for i in range(96):
        if i == 0:
            price = 0.01
        elif i < 16:
            price = 0.05
        elif 68 <= i < 84:
            price = 0.40
        else:
            price = 0.20
        prices.append(
            {"startsAt": (DAY + timedelta(minutes=15 * i)).isoformat(), "total": price}
        )
    return prices


@pytest.fixture
def controller(mock_controller, evening_peak_history):
    mock_controller.prices = price_series()
    mock_controller.history = evening_peak_history
    return mock_controller


@pytest.fixture
def manager(controller):
    system = BatterySchedulerManager(controller=controller)
    assert system.update_prices()
    return system


class TestPlanning:
    def test_full_cycle(self, manager, controller):
        """Prices -> plan -> tick issues the planned charge."""
        assert manager.update_plan(now=at(0, 5))

        plan = manager.plan
        assert plan is not None
        assert plan.strategy == "lp"
        assert plan.charge_for(at(0)) is not None
        assert all(d.starts_at >= at(17) for d in plan.discharge_intervals)
        assert plan.discharge_intervals

        decision = manager.execute_tick(now=at(0, 5))

        assert decision.mode == BatteryMode.CHARGE
        assert controller.applied_modes == [BatteryMode.CHARGE]
        assert manager.last_mode == BatteryMode.CHARGE

    def test_plan_without_prices(self, mock_controller, caplog):
        system = BatterySchedulerManager(controller=mock_controller)

        with caplog.at_level(logging.WARNING):
            assert not system.update_plan(now=at(0))

        assert system.plan is None
        assert "No price data available from 2025-01-15T00:00:00+01:00" in caplog.text

    def test_plan_without_soc(self, manager, controller):
        controller.settings["battery_soc"] = None

        assert not manager.update_plan(now=at(0))

    def test_update_prices_failures(self, mock_controller):
        system = BatterySchedulerManager(controller=mock_controller)

        assert not system.update_prices()

        mock_controller.fail_on.add("get_price_data")
        assert not system.update_prices()

    def test_cost_basis_estimates_untracked_energy(self, manager):
        manager.ledger = [create_charge_lot(2.0, grid_price=0.30)]

        basis = manager.cost_basis()

        # SoC 50 % of 9.9 kWh
        assert basis.total_kwh == pytest.approx(4.95)
        assert basis.tracked_kwh == pytest.approx(2.0)
        assert basis.is_estimated


class TestControlTick:
    def test_idle_without_plan(self, manager, controller):
        decision = manager.execute_tick(now=at(12))

        assert decision.mode == BatteryMode.IDLE
        assert controller.applied_modes == []
        assert manager.last_mode is None

    def test_modes_follow_plan(self, manager, controller):
        manager.plan = Plan(
            charge_intervals=[
                PlannedCharge(starts_at=at(1), price=0.05, source=ChargeSplit(grid_kwh=1.5))
            ],
            discharge_intervals=[PlannedDischarge(starts_at=at(18), energy_kwh=0.5)],
        )

        for now in (at(1, 5), at(12), at(18, 1)):
            manager.execute_tick(now=now)

        assert controller.applied_modes == [
            BatteryMode.CHARGE,
            BatteryMode.CONSTANT,
            BatteryMode.NORMAL,
        ]

    def test_mode_reapplied_every_tick(self, manager, controller):
        manager.plan = Plan()

        manager.execute_tick(now=at(12))
        manager.execute_tick(now=at(12, 15))

        assert controller.applied_modes == [BatteryMode.CONSTANT, BatteryMode.CONSTANT]

    def test_device_error_is_contained(self, manager, controller):
        manager.plan = Plan()
        controller.fail_on.add("apply_battery_mode")

        assert manager.execute_tick(now=at(12)) is None
        assert manager.last_mode is None

    def test_overlapping_tick_is_skipped(self, manager, controller):
        manager.plan = Plan()

        manager._guards["control tick"].acquire()
        try:
            assert manager.execute_tick(now=at(12)) is None
            # Other operations are not blocked by a running tick guard
            assert manager.track_energy(now=at(12))
        finally:
            manager._guards["control tick"].release()

        assert controller.applied_modes == []
        assert manager.execute_tick(now=at(12)).mode == BatteryMode.CONSTANT

    def test_tick_gives_up_when_state_stays_busy(self, controller):
        system = BatterySchedulerManager(controller=controller, lock_timeout_s=0.05)
        system.plan = Plan()

        system._state_lock.acquire()
        try:
            assert system.execute_tick(now=at(12)) is None
            assert not system.update_plan(now=at(12))
            assert not system.record_samples(now=at(12))
        finally:
            system._state_lock.release()

        assert controller.applied_modes == []

    def test_tick_waits_for_energy_tracking(self, manager, controller):
        """A tick that collides with a slow meter read is delayed, not dropped."""
        manager.plan = Plan()
        reading_started = threading.Event()
        release = threading.Event()

        def slow_meter_reading():
            reading_started.set()
            release.wait(5)
            return MeterReading(battery_charged_kwh=1.0)

        controller.get_meter_reading = slow_meter_reading
        tracker = threading.Thread(target=manager.track_energy, kwargs={"now": at(14)})
        tracker.start()
        assert reading_started.wait(5)

        timer = threading.Timer(0.1, release.set)
        timer.start()
        try:
            decision = manager.execute_tick(now=at(14))
        finally:
            release.set()
            tracker.join(5)
            timer.cancel()

        assert decision.mode == BatteryMode.CONSTANT
        assert controller.applied_modes == [BatteryMode.CONSTANT]
        assert manager.last_reading.battery_charged_kwh == 1.0


class TestSampleRecording:
    def test_house_load_rebuilt_from_power_readings(self, manager, controller):
        controller.settings.update(grid_power=1200.0, solar_power=800.0, battery_power=500.0)

        assert manager.record_samples(now=at(14, 20))

        # 14:20 is slot 57
        assert manager.history.production == {57: [800.0]}
        assert manager.history.consumption == {57: [1500.0]}
        assert manager.history.battery == {57: [500.0]}

    def test_grid_net_samples_stored_raw(self, manager, controller):
        manager.optimizer_settings.consumption_is_grid_net = True
        controller.settings.update(grid_power=-300.0, solar_power=2000.0, battery_power=1000.0)

        assert manager.record_samples(now=at(12))

        assert manager.history.consumption == {48: [-300.0]}

    def test_samples_trimmed_to_forecast_days(self, manager, controller):
        manager.optimizer_settings.forecast_days = 3

        for day in range(5):
            controller.settings["solar_power"] = 100.0 * day
            manager.record_samples(now=at(12) + timedelta(days=day))

        assert manager.history.production[48] == [200.0, 300.0, 400.0]
        assert len(manager.history.consumption[48]) == 3

    def test_missing_readings_are_skipped(self, manager, controller):
        controller.settings.update(grid_power=None, solar_power=float("nan"), battery_power=None)

        assert manager.record_samples(now=at(12))

        assert manager.history.is_empty

    def test_recorded_samples_feed_the_plan(self, manager, controller):
        controller.history = DemandHistory()
        controller.settings.update(grid_power=2000.0, solar_power=0.0, battery_power=0.0)
        for slot in range(96):
            manager.record_samples(now=at(0) + timedelta(minutes=15 * slot))

        assert manager.demand_history() is manager.history
        assert manager.update_plan(now=at(0, 5))
        # 0.5 kWh of evening demand per interval caps the discharge
        for discharge in manager.plan.discharge_intervals:
            assert discharge.energy_kwh <= 0.5 + 1e-6

    def test_controller_history_takes_precedence(self, manager, controller):
        manager.record_samples(now=at(12))

        assert manager.demand_history() is controller.history


class TestEnergyTracking:
    def test_tracking_builds_ledger(self, manager, controller):
        controller.meter = MeterReading(battery_charged_kwh=1.0)
        assert manager.track_energy(now=at(1))
        assert manager.ledger == []

        controller.meter = MeterReading(battery_charged_kwh=2.5)
        assert manager.track_energy(now=at(1, 10))

        assert len(manager.ledger) == 1
        lot = manager.ledger[0]
        assert lot.total_kwh == pytest.approx(1.5)
        assert lot.grid_price == pytest.approx(0.05)
        assert lot.timestamp == at(1, 10)

    def test_missing_meter_reading(self, manager, controller):
        controller.meter = None

        assert not manager.track_energy(now=at(1))


class TestStatePersistence:
    def test_export_restore_round_trip(self, manager, controller):
        manager.ledger = [create_charge_lot(3.0, solar_kwh=1.0, grid_price=0.25)]
        manager.plan = Plan(
            charge_intervals=[PlannedCharge(starts_at=at(1), source=ChargeSplit(grid_kwh=1.5))]
        )
        manager.kickstart = KickstartTimer(active_for_date=DAY.date(), active_until=at(7, 35))
        manager.last_mode = BatteryMode.CONSTANT
        manager.last_reading = MeterReading(battery_charged_kwh=4.0, timestamp=at(1))
        manager.history = DemandHistory(consumption={4: [1500.0, 1600.0]})

        # Must be plain JSON
        state = json.loads(json.dumps(manager.export_state()))

        restored = BatterySchedulerManager(controller=controller)
        restored.restore_state(state)

        assert isinstance(restored.ledger[0], ChargeLot)
        assert restored.ledger[0].solar_kwh == pytest.approx(1.0)
        assert restored.plan.charge_for(at(1)).planned_grid_energy_kwh == pytest.approx(1.5)
        assert restored.kickstart == manager.kickstart
        assert restored.last_mode == BatteryMode.CONSTANT
        assert restored.last_reading.battery_charged_kwh == 4.0
        assert restored.history.consumption == {4: [1500.0, 1600.0]}

    def test_restore_tolerates_broken_state(self, controller):
        system = BatterySchedulerManager(controller=controller)

        system.restore_state({"ledger": [{"type": "bogus"}], "lastMode": "TURBO"})

        assert system.ledger == []
        assert system.plan is None
        assert system.last_mode is None
        assert system.history.is_empty

        system.restore_state(None)
        assert system.kickstart == KickstartTimer()


class TestSettings:
    def test_update_settings(self, manager):
        manager.update_settings(
            {"battery": {"min_soc": 10}, "optimizer": {"use_lp_solver": False}}
        )

        assert manager.battery_settings.min_soc == 10
        assert manager.decision_settings.min_soc == 10
        assert not manager.optimizer_settings.use_lp_solver
        assert manager.get_settings()["battery"]["min_soc"] == 10

    def test_invalid_settings_raise(self, manager):
        with pytest.raises(ValueError, match="Invalid settings"):
            manager.update_settings({"battery": {"total_capacity": 0}})

    def test_controller_required(self):
        system = BatterySchedulerManager()

        with pytest.raises(RuntimeError, match="Controller not initialized"):
            system.controller  # noqa: B018

        # Device access failures inside a tick are logged, not raised
        assert system.execute_tick(now=at(12)) is None
