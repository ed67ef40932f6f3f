import importlib
import json
import os
import time
from pathlib import Path

import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv
from loguru import logger

from backend import log_config  # noqa: F401
from core.battery_scheduler.exceptions import SystemConfigurationError
from core.battery_scheduler.scheduler_manager import (
    BatterySchedulerManager,
    DeviceController,
)
from core.battery_scheduler.settings import BatterySettings

DEFAULT_OPTIONS_PATHS = ("/data/options.json", "/app/config.yaml")
DEFAULT_ENV_FILE = "/data/options.env"

# Sections passed on to the manager's settings
SETTINGS_SECTIONS = ("battery", "optimizer", "decision", "ledger")


def load_options(path: str | os.PathLike) -> dict:
    """Load options from a JSON or YAML file.

    A YAML file with an ``options`` section (add-on config.yaml) yields that
    section only.

    Raises:
        SystemConfigurationError: If the file is missing or cannot be parsed
    """
    path = Path(path)
    try:
        with open(path) as f:
            if path.suffix == ".json":
                options = json.load(f)
            else:
                options = yaml.safe_load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise SystemConfigurationError("options", f"cannot read {path}: {e}") from e

    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise SystemConfigurationError("options", f"{path} does not contain a mapping")

    if "options" in options and isinstance(options["options"], dict):
        logger.info(f"Loaded options from {path} (options section)")
        return options["options"]

    logger.info(f"Loaded options from {path}")
    return options


def find_options(paths=DEFAULT_OPTIONS_PATHS) -> dict:
    """Load the first existing options file, or return empty options."""
    for path in paths:
        if os.path.exists(path):
            return load_options(path)
    logger.warning("No configuration options found, using defaults")
    return {}


def load_controller(reference: str) -> DeviceController:
    """Create a device controller from a ``module:factory`` reference."""
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise SystemConfigurationError(
            "controller", f"expected 'module:factory', got {reference!r}"
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise SystemConfigurationError("controller", f"cannot load {reference}: {e}") from e
    return factory()


class SchedulerController:
    """Runs the battery scheduler on a fixed cadence."""

    def __init__(self, controller: DeviceController, options: dict | None = None):
        options = options or {}

        battery_settings = BatterySettings().from_config(options)
        battery_settings.validate()

        self.system = BatterySchedulerManager(controller, battery_settings=battery_settings)
        settings = {k: options[k] for k in SETTINGS_SECTIONS if k in options and k != "battery"}
        if settings:
            self.system.update_settings(settings)

        self.state_file = options.get("state_file")
        self._restore_state()

        self.scheduler = BackgroundScheduler(
            {
                "apscheduler.job_defaults": {
                    "misfire_grace_time": 30,  # Allow 30 seconds of misfire before warning
                    "coalesce": True,
                    "max_instances": 1,
                },
            }
        )

        logger.info("Scheduler controller initialized")

    def _restore_state(self) -> None:
        if not self.state_file or not os.path.exists(self.state_file):
            return
        try:
            with open(self.state_file) as f:
                self.system.restore_state(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading state from {self.state_file}: {e!s}")

    def save_state(self) -> None:
        """Write the manager state to the state file, if one is configured."""
        if not self.state_file:
            return
        tmp_path = f"{self.state_file}.tmp"
        try:
            with open(tmp_path, "w") as f:
                json.dump(self.system.export_state(), f)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            logger.error(f"Error saving state to {self.state_file}: {e!s}")

    def refresh_plan(self) -> None:
        """Fetch prices and recompute the plan."""
        if self.system.update_prices():
            self.system.update_plan()
        self.save_state()

    def tick(self) -> None:
        """Record demand samples, then decide and apply the mode for the current interval."""
        self.system.record_samples()
        self.system.execute_tick()
        self.save_state()

    def track(self) -> None:
        self.system.track_energy()

    def configure_jobs(self) -> None:
        """Configure scheduler jobs."""

        # Mode decision at every interval boundary
        self.scheduler.add_job(
            self.tick,
            CronTrigger(minute=f"*/{self.system.interval_minutes}"),
            id="control_tick",
            max_instances=1,
        )

        # Ledger tracking from meter readings (every minute)
        self.scheduler.add_job(
            self.track,
            CronTrigger(minute="*"),
            id="energy_tracking",
            max_instances=1,
        )

        # Prices and plan (every hour shortly before the tick)
        self.scheduler.add_job(
            self.refresh_plan,
            CronTrigger(minute=59),
            id="plan_refresh",
            max_instances=1,
        )

    def start(self) -> None:
        """Compute an initial plan and start the scheduler."""
        self.refresh_plan()
        self.tick()
        self.configure_jobs()
        self.scheduler.start()
        logger.info("Scheduler started successfully")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
        self.save_state()
        logger.info("Scheduler stopped")


def main() -> None:
    load_dotenv(os.environ.get("SCHEDULER_ENV_FILE", DEFAULT_ENV_FILE))

    options_path = os.environ.get("SCHEDULER_OPTIONS")
    options = load_options(options_path) if options_path else find_options()

    controller_ref = options.get("controller") or os.environ.get("SCHEDULER_CONTROLLER")
    if not controller_ref:
        raise SystemConfigurationError(
            "controller", "no device controller configured ('controller' option)"
        )

    app = SchedulerController(load_controller(controller_ref), options)
    app.start()

    try:
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        app.stop()


if __name__ == "__main__":
    main()
