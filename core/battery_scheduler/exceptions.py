"""Custom exception classes for battery scheduler components.

The pure core (planner, ledger, decision engine) degrades to safe defaults
instead of raising. These exceptions are for caller-level problems such as
broken configuration or a price feed that never delivered data.
"""

from datetime import datetime


def _describe(moment) -> str:
    return moment.isoformat() if isinstance(moment, datetime) else str(moment)


class BatterySchedulerException(Exception):
    """Base exception for all battery scheduler components."""
    pass


class PriceDataUnavailableError(BatterySchedulerException):
    """Raised when no usable price intervals cover the requested time range.

    ``start``/``end`` bound the range the caller needed prices for; either may
    be omitted for an open range.
    """

    def __init__(self, start=None, end=None, message=None):
        if message is None:
            if start is not None and end is not None:
                message = (
                    f"No price data available from {_describe(start)} "
                    f"to {_describe(end)}"
                )
            elif start is not None:
                message = f"No price data available from {_describe(start)}"
            else:
                message = "Price feed returned no usable intervals"
        super().__init__(message)
        self.start = start
        self.end = end


class SystemConfigurationError(BatterySchedulerException):
    """Raised for invalid settings or an unusable options file.

    ``component`` names the settings section or service part at fault
    (``"battery"``, ``"options"``, ``"controller"``).
    """

    def __init__(self, component=None, message=None):
        if message is None:
            message = (
                f"Configuration error in {component}"
                if component
                else "System configuration error"
            )
        elif component:
            message = f"Configuration error in {component}: {message}"
        super().__init__(message)
        self.component = component
