"""Price-driven home battery scheduling: planner, cost ledger and mode decision."""

# Define public API - only include what users should directly access
__all__ = [
    "BatteryMode",
    "BatterySchedulerManager",  # Main facade
    "BatterySettings",  # Public settings classes
    "BatteryState",
    "BlendedCost",
    "Decision",
    "DecisionSettings",
    "DemandHistory",
    "DeviceController",
    "KickstartTimer",
    "LedgerSettings",
    "OptimizerSettings",
    "Plan",
    "PriceInterval",
    "Telemetry",
    "blended_cost",
    "compute_plan",
    "create_charge_lot",
    "create_discharge_event",
    "decide",
    "record_charge_event",
    "record_discharge_event",
]

# Import settings used by other modules
from .settings import (  # noqa: I001
    BatterySettings,
    DecisionSettings,
    LedgerSettings,
    OptimizerSettings,
)

from .models import (
    BatteryMode,
    BatteryState,
    BlendedCost,
    Decision,
    DemandHistory,
    KickstartTimer,
    Plan,
    PriceInterval,
    Telemetry,
)

# Core operations
from .cost_ledger import (
    blended_cost,
    create_charge_lot,
    create_discharge_event,
    record_charge_event,
    record_discharge_event,
)
from .decision_engine import decide
from .optimizer import compute_plan

# Import main facade class (the primary entry point to the system)
from .scheduler_manager import BatterySchedulerManager, DeviceController
