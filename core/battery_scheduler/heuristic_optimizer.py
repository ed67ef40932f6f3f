"""Greedy fallback strategy used when the linear program yields no plan."""

import logging

import numpy as np

from .demand_forecast import HouseSignals
from .models import BatteryState, ChargeSplit, Plan, PlannedCharge, PlannedDischarge, PriceInterval
from .settings import OptimizerSettings
from .time_utils import INTERVAL_MINUTES, interval_minutes_to_hours

logger = logging.getLogger(__name__)

MIN_ACTION_KWH = 0.01


def _stored_trajectory(
    charge_kwh: np.ndarray, discharge_kwh: np.ndarray, start_kwh: float, eta: float
) -> np.ndarray:
    """Stored energy at the end of every interval."""
    return start_kwh + np.cumsum(charge_kwh * eta - discharge_kwh / eta)


def optimize_with_heuristic(
    intervals: list[PriceInterval],
    battery: BatteryState,
    signals: HouseSignals,
    charge_allowed: np.ndarray,
    discharge_allowed: np.ndarray,
    reference_price: float,
    settings: OptimizerSettings | None = None,
    interval_minutes: int = INTERVAL_MINUTES,
) -> Plan | None:
    """Pick the cheapest intervals to charge and the most expensive to discharge.

    Charging fills the headroom up to the target SoC, cheapest first, and
    stops at intervals priced above ``avg_price * expensive_price_factor``.
    Discharging serves the forecast demand in intervals priced at or above that
    threshold, most expensive first, as long as a forward simulation keeps the
    battery above its minimum energy. Equal prices are taken earliest first.

    Returns:
        Plan with strategy "heuristic", or None if nothing was selected
    """
    settings = settings or OptimizerSettings()

    n = len(intervals)
    if n == 0 or not battery.is_valid():
        return None

    hours = interval_minutes_to_hours(interval_minutes)
    energy_per_interval = battery.energy_per_interval(hours)
    eta = 1.0 - battery.efficiency_loss
    if eta <= 0:
        eta = 1.0

    prices = np.array([p.price for p in intervals], dtype=float)
    avg_price = float(prices.mean())
    threshold = avg_price * settings.expensive_price_factor

    # Charging: cheapest first until the headroom is filled
    charge_kwh = np.zeros(n)
    headroom = battery.headroom_kwh
    for t in sorted(range(n), key=lambda i: (prices[i], intervals[i].starts_at)):
        if headroom < MIN_ACTION_KWH or prices[t] > threshold:
            break
        if not charge_allowed[t]:
            continue
        amount = min(energy_per_interval, headroom / eta)
        charge_kwh[t] = amount
        headroom -= amount * eta

    # Discharging: most expensive first, capped by demand and simulated SoC
    discharge_kwh = np.zeros(n)
    candidates = [
        t
        for t in range(n)
        if discharge_allowed[t] and prices[t] >= threshold and charge_kwh[t] == 0
    ]
    min_energy = battery.min_energy_kwh
    for t in sorted(candidates, key=lambda i: (-prices[i], intervals[i].starts_at)):
        stored = _stored_trajectory(
            charge_kwh, discharge_kwh, battery.current_energy_kwh, eta
        )
        # Energy taken at t is missing from every later interval as well
        spare = float(np.min(stored[t:]) - min_energy) * eta
        amount = min(
            energy_per_interval,
            float(signals.import_demand_kwh[t]),
            max(0.0, spare),
        )
        if amount >= MIN_ACTION_KWH:
            discharge_kwh[t] = amount

    if not charge_kwh.any() and not discharge_kwh.any():
        logger.info("Heuristic: no profitable charge or discharge intervals")
        return None

    total_charge = float(charge_kwh.sum())
    if total_charge > 0:
        charge_price = float(np.dot(charge_kwh, prices) / total_charge)
        effective_charge_price = charge_price * (1 + battery.efficiency_loss)
    else:
        effective_charge_price = reference_price

    charges = [
        PlannedCharge(
            starts_at=interval.starts_at,
            price=interval.price,
            index=interval.index,
            interval_of_day=interval.interval_of_day,
            source=ChargeSplit(grid_kwh=float(charge_kwh[t]), solar_kwh=0.0),
        )
        for t, interval in enumerate(intervals)
        if charge_kwh[t] > 0
    ]

    # Attribute discharges to previously stored energy first, in time order
    existing_left = max(0.0, battery.current_energy_kwh - min_energy) * eta
    discharges = []
    for t, interval in enumerate(intervals):
        if discharge_kwh[t] <= 0:
            continue
        from_existing = min(float(discharge_kwh[t]), existing_left)
        existing_left -= from_existing
        discharges.append(
            PlannedDischarge(
                starts_at=interval.starts_at,
                price=interval.price,
                index=interval.index,
                interval_of_day=interval.interval_of_day,
                energy_kwh=float(discharge_kwh[t]),
                energy_from_existing_kwh=from_existing,
                energy_from_new_kwh=float(discharge_kwh[t]) - from_existing,
            )
        )

    savings = float(np.dot(prices - effective_charge_price, discharge_kwh))
    baseline_cost = float(
        np.dot(signals.import_demand_kwh, prices)
        - signals.solar_surplus_kwh.sum() * settings.solar_feed_in_tariff
    )

    logger.info(
        f"Heuristic: {len(charges)} charge and {len(discharges)} discharge intervals, "
        f"threshold {threshold:.4f}, savings = {savings:.2f}"
    )

    return Plan(
        charge_intervals=charges,
        discharge_intervals=discharges,
        total_charge_kwh=total_charge,
        total_discharge_kwh=float(discharge_kwh.sum()),
        estimated_savings=savings,
        strategy="heuristic",
        avg_price=avg_price,
        baseline_cost=baseline_cost,
    )
