"""
Battery schedule optimization entry point.

``compute_plan`` turns a price horizon, a battery snapshot and historical
demand samples into a ``Plan``. The linear program is the primary strategy;
when it declines, the greedy heuristic takes over (if enabled). Both
strategies share the economic feasibility filter defined here:

- The reference cost is the ledger's blended cost basis when the battery holds
  meaningful energy, otherwise the average horizon price.
- An interval is charge-eligible if its price, grossed up by the round-trip
  efficiency loss, plus the minimum profit still does not exceed
  ``max(reference, avg_horizon_price)``.
- An interval is discharge-eligible if its price is at least the reference
  plus the minimum profit.

Malformed or empty horizons never raise: they produce an empty plan.
"""

import logging
import math
from typing import Any

import numpy as np

from .demand_forecast import forecast_house_signals
from .heuristic_optimizer import optimize_with_heuristic
from .lp_optimizer import optimize_with_lp
from .models import (
    BatteryState,
    BlendedCost,
    DemandHistory,
    Plan,
    PriceInterval,
    plan_entry_key,
)
from .settings import OptimizerSettings
from .time_utils import INTERVAL_MINUTES, enrich_price_data, format_time

logger = logging.getLogger(__name__)

# Stored energy below this is too little to carry a cost basis
MIN_BASIS_ENERGY_KWH = 0.01


def _basis_price(cost_basis: BlendedCost | float | None) -> float | None:
    if isinstance(cost_basis, BlendedCost):
        if cost_basis.total_kwh >= MIN_BASIS_ENERGY_KWH:
            return cost_basis.avg_price_per_kwh
        return None
    if isinstance(cost_basis, (int, float)) and not isinstance(cost_basis, bool):
        if math.isfinite(cost_basis) and cost_basis >= 0:
            return float(cost_basis)
    return None


def economic_reference_price(
    cost_basis: BlendedCost | float | None, avg_horizon_price: float
) -> float:
    """Price the stored energy is measured against.

    Args:
        cost_basis: Ledger cost basis, a plain price per kWh, or None
        avg_horizon_price: Average price of the planning horizon

    Returns:
        The blended cost basis, or the average horizon price when the battery
        holds negligible energy
    """
    basis = _basis_price(cost_basis)
    return basis if basis is not None else avg_horizon_price


def charge_eligible(
    price: float,
    reference_price: float,
    avg_horizon_price: float,
    settings: OptimizerSettings,
    efficiency_loss: float,
) -> bool:
    effective_price = price * (1 + efficiency_loss)
    ceiling = max(reference_price, avg_horizon_price)
    return effective_price + settings.min_profit_per_kwh <= ceiling


def discharge_eligible(
    price: float, reference_price: float, settings: OptimizerSettings
) -> bool:
    return price >= reference_price + settings.min_profit_per_kwh


def _clean_horizon(intervals: Any, interval_minutes: int) -> list[PriceInterval]:
    if not isinstance(intervals, (list, tuple)):
        return []
    series = PriceInterval.from_series(intervals)
    series = [p for p in series if math.isfinite(p.price)]
    return enrich_price_data(series, interval_minutes)


def compute_plan(
    intervals: Any,
    battery: BatteryState | None,
    history: DemandHistory | None = None,
    cost_basis: BlendedCost | float | None = None,
    settings: OptimizerSettings | None = None,
    interval_minutes: int = INTERVAL_MINUTES,
) -> Plan:
    """Compute the charge/discharge plan for a price horizon.

    Args:
        intervals: Current and future price intervals (PriceInterval objects or
            provider dicts)
        battery: Battery snapshot; an invalid snapshot yields an empty plan
        history: Historical production/consumption/battery samples
        cost_basis: Ledger cost basis of the energy already stored
        settings: Economic parameters
        interval_minutes: Interval length

    Returns:
        Plan; empty when there is nothing worth doing
    """
    settings = settings or OptimizerSettings()

    horizon = _clean_horizon(intervals, interval_minutes)
    if not horizon:
        logger.info("No price data for optimization, returning empty plan")
        return Plan.empty()

    prices = np.array([p.price for p in horizon], dtype=float)
    avg_price = float(prices.mean())

    if battery is None or not battery.is_valid():
        logger.warning(f"Invalid battery state, returning empty plan: {battery}")
        return Plan.empty(avg_price)

    signals = forecast_house_signals(horizon, history, settings, interval_minutes)
    reference = economic_reference_price(cost_basis, avg_price)
    charge_mask = np.array(
        [
            charge_eligible(p, reference, avg_price, settings, battery.efficiency_loss)
            for p in prices
        ],
        dtype=bool,
    )
    discharge_mask = np.array(
        [discharge_eligible(p, reference, settings) for p in prices], dtype=bool
    )

    logger.debug(
        f"Optimizing {len(horizon)} intervals: avg price {avg_price:.4f}, "
        f"reference {reference:.4f}, {int(charge_mask.sum())} charge-eligible, "
        f"{int(discharge_mask.sum())} discharge-eligible"
    )

    plan = optimize_with_lp(
        horizon,
        battery,
        signals,
        charge_mask,
        discharge_mask,
        basis_price=_basis_price(cost_basis) or 0.0,
        settings=settings,
        interval_minutes=interval_minutes,
    )

    if plan is None and settings.fallback_to_heuristic:
        logger.info("LP returned no plan, using heuristic fallback")
        plan = optimize_with_heuristic(
            horizon,
            battery,
            signals,
            charge_mask,
            discharge_mask,
            reference,
            settings=settings,
            interval_minutes=interval_minutes,
        )

    if plan is None:
        logger.info("No economically beneficial plan found")
        return Plan.empty(avg_price)

    return plan


def _row_label(entry) -> str:
    # Restored entries may only carry their horizon index
    if entry.starts_at is None:
        return f"#{entry.index}"
    return format_time(entry.starts_at)


def log_plan(plan: Plan) -> None:
    """Log a table of the planned charge and discharge intervals."""
    output = []
    output.append(f"\nBattery Plan ({plan.strategy}):")
    output.append("╔═══════╦═══════════╦═══════╦═══════╦═══════╗")
    output.append("║ Time  ║  Action   ║ Price ║ Grid  ║ Solar ║")
    output.append("║       ║           ║(/kWh) ║ (kWh) ║ (kWh) ║")
    output.append("╠═══════╬═══════════╬═══════╬═══════╬═══════╣")

    rows = [("charge", c) for c in plan.charge_intervals] + [
        ("discharge", d) for d in plan.discharge_intervals
    ]
    for action, entry in sorted(rows, key=lambda r: plan_entry_key(r[1])):
        if action == "charge":
            grid = entry.planned_grid_energy_kwh or 0.0
            solar = entry.planned_solar_energy_kwh or 0.0
        else:
            grid = -entry.energy_kwh
            solar = 0.0
        output.append(
            f"║ {_row_label(entry):5s} ║ {action:9s} ║{entry.price:6.3f} ║{grid:6.2f} ║{solar:6.2f} ║"
        )

    output.append("╚═══════╩═══════════╩═══════╩═══════╩═══════╝")
    output.append("\n      Summary:")
    output.append(f"      Total charge:        {plan.total_charge_kwh:.2f} kWh")
    output.append(f"      Total discharge:     {plan.total_discharge_kwh:.2f} kWh")
    output.append(f"      Average price:       {plan.avg_price:.4f} /kWh")
    output.append(f"      Estimated savings:   {plan.estimated_savings:.2f}")

    logger.info("\n".join(output))
