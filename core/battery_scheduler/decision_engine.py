"""
Battery mode decision for the current control tick.

``decide`` is a pure function: the only state carried between ticks is the
``KickstartTimer``, which is passed in and returned explicitly. The first
matching rule wins:

1. Invalid input (timestamp, empty horizon, missing plan, no current
   interval) gives IDLE and nothing is sent to the device.
2. A planned charge gives CHARGE if any grid energy is planned (or the source
   is unspecified). Solar-only charges give NORMAL while PV produces above the
   start threshold, CONSTANT otherwise.
3. A planned discharge gives NORMAL. At low SoC the inverter's own protection
   stops the discharge.
4. Anything else is CONSTANT, except for the once-per-day PV kickstart: in
   the morning window, with PV still at or below the threshold and the last
   mode CONSTANT or unknown, NORMAL is forced for a few minutes so that
   inverters which do not start PV while discharge is blocked can ramp up.

Plan entries without a start time are matched by their horizon index.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any

from .models import BatteryMode, Decision, KickstartTimer, Plan, PriceInterval, Telemetry
from .settings import DecisionSettings
from .time_utils import (
    INTERVAL_MINUTES,
    ensure_aware,
    find_current_interval_index,
    format_time,
    local_date,
    minutes_since_midnight,
)

logger = logging.getLogger(__name__)

# Planned energy below this does not count as planned
PLANNED_ENERGY_EPSILON_KWH = 0.001


def _finite(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def has_mode_changed(new_mode: BatteryMode, last_mode: BatteryMode | None) -> bool:
    """True if a mode differs from the last issued one (first mode is no change)."""
    return last_mode is not None and new_mode != last_mode


def _in_kickstart_window(now: datetime, settings: DecisionSettings) -> bool:
    minutes = minutes_since_midnight(now)
    return settings.kickstart_window_start_min <= minutes <= settings.kickstart_window_end_min


def _kickstart(
    now: datetime,
    solar_w: float | None,
    last_mode: BatteryMode | None,
    kickstart: KickstartTimer,
    settings: DecisionSettings,
) -> tuple[str, KickstartTimer] | None:
    """Return (reason, timer) if the PV kickstart applies to this tick."""
    if not _in_kickstart_window(now, settings):
        return None
    if (solar_w or 0.0) > settings.solar_start_threshold_w:
        return None

    today = local_date(now)
    if kickstart.is_active(now, today):
        return (
            f"PV kickstart active until {format_time(kickstart.active_until)}",
            kickstart,
        )

    # Once per calendar day
    if kickstart.used_on(today):
        return None

    if last_mode not in (None, BatteryMode.CONSTANT):
        return None

    timer = KickstartTimer(
        active_for_date=today,
        active_until=now + timedelta(minutes=settings.kickstart_duration_min),
    )
    reason = (
        f"PV kickstart (PV <= {settings.solar_start_threshold_w:.0f} W, morning window) "
        f"-> NORMAL for {settings.kickstart_duration_min} min"
    )
    return reason, timer


def decide(
    now: Any,
    price_horizon: Any,
    plan: Plan | None,
    telemetry: Telemetry | None,
    last_mode: BatteryMode | None,
    kickstart: KickstartTimer | None,
    settings: DecisionSettings | None = None,
    interval_minutes: int = INTERVAL_MINUTES,
) -> tuple[Decision, KickstartTimer]:
    """Decide the battery mode for ``now``.

    Args:
        now: Current time; a naive value is read as local time
        price_horizon: Price intervals covering now
        plan: Current plan
        telemetry: Live readings; missing values count as unavailable
        last_mode: Mode issued on the previous tick, None after startup
        kickstart: Kickstart timer returned by the previous call
        settings: Thresholds and kickstart window
        interval_minutes: Interval length

    Returns:
        Tuple of (decision, kickstart timer to pass to the next call)
    """
    settings = settings or DecisionSettings()
    kickstart = kickstart if isinstance(kickstart, KickstartTimer) else KickstartTimer()
    telemetry = telemetry or Telemetry()

    if not isinstance(now, datetime):
        return Decision(BatteryMode.IDLE, -1, "Invalid timestamp"), kickstart
    now = ensure_aware(now)

    horizon = PriceInterval.from_series(price_horizon)
    if not horizon:
        return Decision(BatteryMode.IDLE, -1, "No price data available"), kickstart

    if plan is None:
        return Decision(BatteryMode.IDLE, -1, "No plan available"), kickstart

    index = find_current_interval_index(now, horizon, interval_minutes)
    if index == -1:
        return (
            Decision(BatteryMode.IDLE, -1, "Current time not in any price interval"),
            kickstart,
        )

    current = horizon[index]
    solar_w = _finite(telemetry.solar_power_w)
    soc = _finite(telemetry.soc_percent)
    solar_active = solar_w is not None and solar_w > settings.solar_start_threshold_w

    planned_charge = plan.charge_for(current.starts_at, index)
    if planned_charge is not None:
        grid_kwh = planned_charge.planned_grid_energy_kwh
        solar_kwh = planned_charge.planned_solar_energy_kwh
        has_grid = grid_kwh is not None and grid_kwh > PLANNED_ENERGY_EPSILON_KWH
        has_solar = solar_kwh is not None and solar_kwh > PLANNED_ENERGY_EPSILON_KWH

        # An unspecified source means grid charge
        if has_grid or not has_solar:
            return (
                Decision(
                    BatteryMode.CHARGE,
                    index,
                    f"Planned grid charge interval (price: {current.price:.4f}/kWh)",
                ),
                kickstart,
            )
        if solar_active:
            return (
                Decision(
                    BatteryMode.NORMAL,
                    index,
                    f"Planned solar-only charge (PV {solar_w:.0f} W > "
                    f"{settings.solar_start_threshold_w:.0f} W) -> NORMAL to ensure PV operation",
                ),
                kickstart,
            )
        return (
            Decision(
                BatteryMode.CONSTANT,
                index,
                "Planned solar-only charge (no grid charge planned) -> CONSTANT to prevent discharge",
            ),
            kickstart,
        )

    if plan.discharge_for(current.starts_at, index) is not None:
        if soc is not None and soc <= settings.min_soc:
            return (
                Decision(
                    BatteryMode.NORMAL,
                    index,
                    f"Low SoC ({soc:.1f}% <= {settings.min_soc:.1f}%) -> NORMAL "
                    "(battery will not discharge below threshold)",
                ),
                kickstart,
            )
        return (
            Decision(
                BatteryMode.NORMAL,
                index,
                f"Planned discharge interval (price: {current.price:.4f}/kWh)",
            ),
            kickstart,
        )

    kick = _kickstart(now, solar_w, last_mode, kickstart, settings)
    if kick is not None:
        reason, timer = kick
        return Decision(BatteryMode.NORMAL, index, reason, kickstart=True), timer

    grid_w = _finite(telemetry.grid_power_w)
    grid_text = f"{grid_w:.0f}" if grid_w is not None else "n/a"
    return (
        Decision(
            BatteryMode.CONSTANT,
            index,
            f"Default interval (gridPower {grid_text} W) -> CONSTANT to prevent discharge",
        ),
        kickstart,
    )
