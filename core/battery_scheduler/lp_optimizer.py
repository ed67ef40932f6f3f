"""
Linear program battery optimization.

Variables per interval t (6 * n total, stacked block-wise):
    c[t]   grid energy used for charging (kWh)
    sc[t]  solar surplus used for charging (kWh), costs the lost feed-in
    d0[t]  delivered discharge drawn from energy stored before the horizon
    d1[t]  delivered discharge drawn from energy charged within the horizon
    s[t]   stored energy at the end of the interval
    e[t]   part of s[t] that was already stored before the horizon

Dynamics with eta = 1 - efficiency_loss:
    s[t] = s[t-1] + eta * (c[t] + sc[t]) - (d0[t] + d1[t]) / eta
    e[t] = e[t-1] - d0[t] / eta

Energy stored before the horizon carries the ledger's cost basis, new energy
carries the price it was bought at. A minimum margin per delivered kWh keeps
the solver away from marginal trades.
"""

import logging

import numpy as np
from scipy.optimize import linprog

from .demand_forecast import HouseSignals
from .models import BatteryState, ChargeSplit, Plan, PlannedCharge, PlannedDischarge, PriceInterval
from .settings import OptimizerSettings
from .time_utils import INTERVAL_MINUTES, interval_minutes_to_hours

logger = logging.getLogger(__name__)

# Solution values below this are treated as no action
ACTION_EPSILON_KWH = 0.01

C, SC, D0, D1, S, E = range(6)
NUM_BLOCKS = 6


def optimize_with_lp(
    intervals: list[PriceInterval],
    battery: BatteryState,
    signals: HouseSignals,
    charge_allowed: np.ndarray,
    discharge_allowed: np.ndarray,
    basis_price: float = 0.0,
    settings: OptimizerSettings | None = None,
    interval_minutes: int = INTERVAL_MINUTES,
) -> Plan | None:
    """Solve the charge/discharge schedule as a linear program.

    Args:
        intervals: Enriched price horizon
        battery: Battery snapshot
        signals: Forecast import demand and solar surplus per interval
        charge_allowed: Grid charge eligibility per interval
        discharge_allowed: Discharge eligibility per interval
        basis_price: Cost per stored kWh of the energy already in the battery
        settings: Economic parameters
        interval_minutes: Interval length

    Returns:
        Plan with strategy "lp", or None if the solver is disabled, fails,
        finds no feasible solution or the optimum takes no action
    """
    settings = settings or OptimizerSettings()

    if not settings.use_lp_solver:
        logger.debug("LP solver disabled")
        return None

    n = len(intervals)
    if n == 0:
        logger.info("LP: No price data available")
        return None

    if not battery.is_valid():
        logger.warning(f"LP: Invalid battery parameters: {battery}")
        return None

    hours = interval_minutes_to_hours(interval_minutes)
    energy_per_interval = battery.energy_per_interval(hours)
    current_energy = battery.current_energy_kwh
    max_energy = battery.max_energy_kwh
    min_energy = battery.min_energy_kwh

    if battery.headroom_kwh < ACTION_EPSILON_KWH and current_energy < ACTION_EPSILON_KWH:
        logger.info("LP: No usable battery capacity (empty and no headroom)")
        return None

    eta = 1.0 - battery.efficiency_loss
    if eta <= 0:
        eta = 1.0

    prices = np.array([p.price for p in intervals], dtype=float)
    demand = signals.import_demand_kwh
    surplus = signals.solar_surplus_kwh
    feed_in = settings.solar_feed_in_tariff
    min_profit = max(0.0, settings.min_profit_per_kwh)
    basis_per_delivered = max(0.0, basis_price) / eta

    def col(block: int, t: int) -> int:
        return block * n + t

    # Objective: net cost change relative to running without the battery
    cost = np.zeros(NUM_BLOCKS * n)
    cost[C * n : (C + 1) * n] = prices
    cost[SC * n : (SC + 1) * n] = feed_in
    cost[D0 * n : (D0 + 1) * n] = -prices + min_profit + basis_per_delivered
    cost[D1 * n : (D1 + 1) * n] = -prices + min_profit

    # Equality constraints: energy and existing-energy dynamics
    a_eq = np.zeros((2 * n, NUM_BLOCKS * n))
    b_eq = np.zeros(2 * n)
    for t in range(n):
        row = t
        a_eq[row, col(S, t)] = 1.0
        a_eq[row, col(C, t)] = -eta
        a_eq[row, col(SC, t)] = -eta
        a_eq[row, col(D0, t)] = 1.0 / eta
        a_eq[row, col(D1, t)] = 1.0 / eta
        if t > 0:
            a_eq[row, col(S, t - 1)] = -1.0
        else:
            b_eq[row] = current_energy

        row = n + t
        a_eq[row, col(E, t)] = 1.0
        a_eq[row, col(D0, t)] = 1.0 / eta
        if t > 0:
            a_eq[row, col(E, t - 1)] = -1.0
        else:
            b_eq[row] = current_energy

    # Inequality constraints: existing energy within stored energy, power caps
    a_ub = np.zeros((3 * n, NUM_BLOCKS * n))
    b_ub = np.zeros(3 * n)
    for t in range(n):
        a_ub[t, col(E, t)] = 1.0
        a_ub[t, col(S, t)] = -1.0

        a_ub[n + t, col(D0, t)] = 1.0
        a_ub[n + t, col(D1, t)] = 1.0
        # Never export while discharging
        b_ub[n + t] = min(energy_per_interval, max(0.0, float(demand[t])))

        a_ub[2 * n + t, col(C, t)] = 1.0
        a_ub[2 * n + t, col(SC, t)] = 1.0
        b_ub[2 * n + t] = energy_per_interval

    bounds = []
    for t in range(n):
        bounds.append((0.0, energy_per_interval if charge_allowed[t] else 0.0))
    for t in range(n):
        bounds.append((0.0, max(0.0, float(surplus[t]))))
    for _ in (D0, D1):
        for t in range(n):
            bounds.append((0.0, energy_per_interval if discharge_allowed[t] else 0.0))
    for t in range(n):
        bounds.append((min_energy, max_energy))
    for t in range(n):
        bounds.append((0.0, current_energy))

    logger.debug(
        f"Solving LP: {n} intervals, {NUM_BLOCKS * n} variables, "
        f"battery {current_energy:.2f} / {max_energy:.2f} kWh, min {min_energy:.2f} kWh"
    )

    try:
        result = linprog(
            cost,
            A_ub=a_ub,
            b_ub=b_ub,
            A_eq=a_eq,
            b_eq=b_eq,
            bounds=bounds,
            method="highs",
            options={"time_limit": settings.solver_time_limit_s},
        )
    except ValueError as e:
        logger.warning(f"LP solver rejected the problem: {e}")
        return None

    if not result.success or result.x is None:
        logger.warning(f"LP solver status: {result.message}")
        return None

    x = np.maximum(result.x, 0.0)
    grid_charge = x[C * n : (C + 1) * n]
    solar_charge = x[SC * n : (SC + 1) * n]
    from_existing = x[D0 * n : (D0 + 1) * n]
    from_new = x[D1 * n : (D1 + 1) * n]

    charges = []
    discharges = []
    for t, interval in enumerate(intervals):
        grid = float(grid_charge[t])
        solar = float(solar_charge[t])
        if grid + solar > ACTION_EPSILON_KWH:
            charges.append(
                PlannedCharge(
                    starts_at=interval.starts_at,
                    price=interval.price,
                    index=interval.index,
                    interval_of_day=interval.interval_of_day,
                    source=ChargeSplit(
                        grid_kwh=grid if grid > ACTION_EPSILON_KWH else 0.0,
                        solar_kwh=solar if solar > ACTION_EPSILON_KWH else 0.0,
                    ),
                )
            )

        delivered = float(from_existing[t] + from_new[t])
        if delivered > ACTION_EPSILON_KWH:
            discharges.append(
                PlannedDischarge(
                    starts_at=interval.starts_at,
                    price=interval.price,
                    index=interval.index,
                    interval_of_day=interval.interval_of_day,
                    energy_kwh=delivered,
                    energy_from_existing_kwh=float(from_existing[t]),
                    energy_from_new_kwh=float(from_new[t]),
                )
            )

    if not charges and not discharges:
        logger.info("LP: optimum takes no action")
        return None

    baseline_cost = float(np.dot(demand, prices) - surplus.sum() * feed_in)
    # Report savings without the artificial margin
    margin = min_profit * float(from_existing.sum() + from_new.sum())
    savings = max(0.0, -(float(result.fun) - margin))

    plan = Plan(
        charge_intervals=charges,
        discharge_intervals=discharges,
        total_charge_kwh=float(grid_charge.sum() + solar_charge.sum()),
        total_discharge_kwh=float(from_existing.sum() + from_new.sum()),
        estimated_savings=savings,
        strategy="lp",
        avg_price=float(prices.mean()),
        baseline_cost=baseline_cost,
    )

    logger.info(
        f"LP: baseline cost = {baseline_cost:.2f}, savings = {savings:.2f}, "
        f"charge = {plan.total_charge_kwh:.2f} kWh, "
        f"discharge = {plan.total_discharge_kwh:.2f} kWh"
    )
    return plan
