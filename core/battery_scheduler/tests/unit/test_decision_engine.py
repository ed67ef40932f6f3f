"""Tests for the per-tick battery mode decision."""

from datetime import date, datetime, timedelta

import pytest

from core.battery_scheduler.decision_engine import decide, has_mode_changed
from core.battery_scheduler.models import (
    BatteryMode,
    ChargeSplit,
    KickstartTimer,
    Plan,
    PlannedCharge,
    PlannedDischarge,
    Telemetry,
)
from core.battery_scheduler.time_utils import TIMEZONE

DAY = datetime(2025, 6, 15, 0, 0, tzinfo=TIMEZONE)


def at(hour, minute=0, days=0):
    return DAY + timedelta(days=days, hours=hour, minutes=minute)


@pytest.fixture
def horizon(horizon_factory):
    """Two days of quarter-hour prices."""
    return horizon_factory(DAY, [0.20] * 192)


def charge_plan(start, source):
    return Plan(charge_intervals=[PlannedCharge(starts_at=start, price=0.20, source=source)])


class TestInvalidInput:
    def test_invalid_timestamp(self, horizon):
        decision, _ = decide("now", horizon, Plan(), Telemetry(), None, KickstartTimer())

        assert decision.mode == BatteryMode.IDLE
        assert decision.interval_index == -1
        assert decision.reason == "Invalid timestamp"

    @pytest.mark.parametrize("prices", [[], None, "garbage"])
    def test_no_price_data(self, prices):
        decision, _ = decide(at(10), prices, Plan(), Telemetry(), None, KickstartTimer())

        assert decision.mode == BatteryMode.IDLE
        assert decision.reason == "No price data available"

    def test_no_plan(self, horizon):
        decision, _ = decide(at(10), horizon, None, Telemetry(), None, KickstartTimer())

        assert decision.mode == BatteryMode.IDLE
        assert decision.reason == "No plan available"

    def test_time_outside_horizon(self, horizon):
        decision, timer = decide(
            at(0, days=5), horizon, Plan(), Telemetry(), None, KickstartTimer()
        )

        assert decision.mode == BatteryMode.IDLE
        assert decision.reason == "Current time not in any price interval"
        assert timer == KickstartTimer()


class TestPlannedCharge:
    def test_grid_charge(self, horizon):
        plan = charge_plan(at(10), ChargeSplit(grid_kwh=1.0))

        decision, _ = decide(at(10, 5), horizon, plan, Telemetry(solar_power_w=0), None, None)

        assert decision.mode == BatteryMode.CHARGE
        assert decision.interval_index == 40
        assert decision.reason.startswith("Planned grid charge interval")

    def test_unspecified_source_is_grid_charge(self, horizon):
        plan = charge_plan(at(10), None)

        decision, _ = decide(at(10, 5), horizon, plan, Telemetry(), None, None)

        assert decision.mode == BatteryMode.CHARGE

    def test_solar_only_charge_without_pv_blocks_discharge(self, horizon):
        plan = charge_plan(at(10), ChargeSplit(solar_kwh=1.2))

        decision, _ = decide(at(10, 5), horizon, plan, Telemetry(solar_power_w=0), None, None)

        assert decision.mode == BatteryMode.CONSTANT

    def test_solar_only_charge_with_pv_runs_normal(self, horizon):
        plan = charge_plan(at(10), ChargeSplit(solar_kwh=1.2))

        decision, _ = decide(
            at(10, 5), horizon, plan, Telemetry(solar_power_w=800), None, None
        )

        assert decision.mode == BatteryMode.NORMAL
        assert "solar-only" in decision.reason

    def test_solar_only_charge_with_missing_pv_reading(self, horizon):
        plan = charge_plan(at(10), ChargeSplit(grid_kwh=0.0, solar_kwh=1.2))

        decision, _ = decide(at(10, 5), horizon, plan, Telemetry(), None, None)

        assert decision.mode == BatteryMode.CONSTANT


class TestPlannedDischarge:
    def test_discharge(self, horizon):
        plan = Plan(discharge_intervals=[PlannedDischarge(starts_at=at(18), energy_kwh=0.5)])

        decision, _ = decide(
            at(18, 14), horizon, plan, Telemetry(soc_percent=60), BatteryMode.CONSTANT, None
        )

        assert decision.mode == BatteryMode.NORMAL
        assert decision.reason.startswith("Planned discharge interval")

    def test_low_soc_still_normal(self, horizon):
        plan = Plan(discharge_intervals=[PlannedDischarge(starts_at=at(18), energy_kwh=0.5)])

        decision, _ = decide(at(18), horizon, plan, Telemetry(soc_percent=5), None, None)

        assert decision.mode == BatteryMode.NORMAL
        assert decision.reason.startswith("Low SoC")


class TestDefaultAndKickstart:
    def test_kickstart_in_morning_window(self, horizon):
        decision, timer = decide(
            at(7, 30),
            horizon,
            Plan(),
            Telemetry(solar_power_w=0),
            BatteryMode.CONSTANT,
            KickstartTimer(),
        )

        assert decision.mode == BatteryMode.NORMAL
        assert decision.kickstart
        assert "kickstart" in decision.reason
        assert timer.active_for_date == date(2025, 6, 15)
        assert timer.active_until == at(7, 35)

    def test_outside_window_is_constant(self, horizon):
        decision, timer = decide(
            at(14),
            horizon,
            Plan(),
            Telemetry(solar_power_w=0, grid_power_w=350),
            BatteryMode.CONSTANT,
            KickstartTimer(),
        )

        assert decision.mode == BatteryMode.CONSTANT
        assert decision.reason == "Default interval (gridPower 350 W) -> CONSTANT to prevent discharge"
        assert timer == KickstartTimer()

    def test_kickstart_runs_once_per_day(self, horizon):
        telemetry = Telemetry(solar_power_w=0)

        first, timer = decide(at(7, 30), horizon, Plan(), telemetry, BatteryMode.CONSTANT, None)
        during, timer = decide(at(7, 33), horizon, Plan(), telemetry, BatteryMode.NORMAL, timer)
        after, timer = decide(at(7, 36), horizon, Plan(), telemetry, BatteryMode.NORMAL, timer)
        later, timer = decide(at(9, 0), horizon, Plan(), telemetry, BatteryMode.CONSTANT, timer)
        next_day, timer = decide(
            at(7, 30, days=1), horizon, Plan(), telemetry, BatteryMode.CONSTANT, timer
        )

        assert first.mode == BatteryMode.NORMAL
        assert during.mode == BatteryMode.NORMAL
        assert during.reason == "PV kickstart active until 07:35"
        assert after.mode == BatteryMode.CONSTANT
        assert later.mode == BatteryMode.CONSTANT
        assert next_day.mode == BatteryMode.NORMAL
        assert timer.active_for_date == date(2025, 6, 16)

    def test_no_kickstart_when_pv_already_running(self, horizon):
        decision, timer = decide(
            at(8), horizon, Plan(), Telemetry(solar_power_w=400), BatteryMode.CONSTANT, None
        )

        assert decision.mode == BatteryMode.CONSTANT
        assert not timer.used_on(date(2025, 6, 15))

    def test_no_kickstart_after_other_mode(self, horizon):
        decision, _ = decide(
            at(8), horizon, Plan(), Telemetry(solar_power_w=0), BatteryMode.CHARGE, None
        )

        assert decision.mode == BatteryMode.CONSTANT

    def test_kickstart_ends_when_pv_starts(self, horizon):
        _, timer = decide(
            at(7, 30), horizon, Plan(), Telemetry(solar_power_w=0), BatteryMode.CONSTANT, None
        )

        decision, _ = decide(
            at(7, 32), horizon, Plan(), Telemetry(solar_power_w=300), BatteryMode.NORMAL, timer
        )

        assert decision.mode == BatteryMode.CONSTANT

    def test_planned_slots_take_precedence_over_kickstart(self, horizon):
        plan = charge_plan(at(7, 30), ChargeSplit(grid_kwh=1.5))

        decision, timer = decide(
            at(7, 30), horizon, plan, Telemetry(solar_power_w=0), BatteryMode.CONSTANT, None
        )

        assert decision.mode == BatteryMode.CHARGE
        assert timer == KickstartTimer()

    def test_decision_is_repeatable(self, horizon):
        args = (at(14), horizon, Plan(), Telemetry(solar_power_w=0), BatteryMode.CONSTANT, None)

        assert decide(*args) == decide(*args)


class TestMixedTimestamps:
    """Feeds that mix offset and naive start times are read as local time."""

    SERIES = [
        {"startsAt": "2025-06-15T10:00:00+02:00", "total": 0.20},
        {"startsAt": "2025-06-15T10:15:00", "total": 0.22},
        {"startsAt": "2025-06-15T10:30:00+02:00", "total": 0.24},
    ]

    def test_current_interval_found(self):
        decision, _ = decide(
            at(10, 5), self.SERIES, Plan(), Telemetry(solar_power_w=500), None, None
        )

        assert decision.mode == BatteryMode.CONSTANT
        assert decision.interval_index == 0

        decision, _ = decide(
            at(10, 20), self.SERIES, Plan(), Telemetry(solar_power_w=500), None, None
        )
        assert decision.interval_index == 1

    def test_naive_now(self):
        plan = charge_plan(at(10, 15), ChargeSplit(grid_kwh=1.0))

        decision, _ = decide(
            datetime(2025, 6, 15, 10, 20), self.SERIES, plan, Telemetry(), None, None
        )

        assert decision.mode == BatteryMode.CHARGE
        assert decision.interval_index == 1


class TestIndexFallback:
    def test_charge_without_start_matches_index(self, horizon):
        plan = Plan.from_dict(
            {"chargeIntervals": [{"index": 40, "plannedGridEnergyKWh": 1.0}]}
        )

        decision, _ = decide(at(10, 5), horizon, plan, Telemetry(), None, None)

        assert decision.mode == BatteryMode.CHARGE
        assert decision.interval_index == 40

    def test_discharge_without_start_matches_index(self, horizon):
        plan = Plan(discharge_intervals=[PlannedDischarge(starts_at=None, index=72)])

        decision, _ = decide(at(18), horizon, plan, Telemetry(soc_percent=60), None, None)
        other, _ = decide(at(18, 15), horizon, plan, Telemetry(solar_power_w=500), None, None)

        assert decision.mode == BatteryMode.NORMAL
        assert decision.reason.startswith("Planned discharge interval")
        assert other.mode == BatteryMode.CONSTANT


def test_has_mode_changed():
    assert not has_mode_changed(BatteryMode.CONSTANT, None)
    assert has_mode_changed(BatteryMode.CHARGE, BatteryMode.CONSTANT)
    assert not has_mode_changed(BatteryMode.NORMAL, BatteryMode.NORMAL)
