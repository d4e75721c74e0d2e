"""
WiCare entry point.

Run with: python -m wicare
Or: wicare (if installed)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from wicare import __version__
from wicare.core.config import Config, ConfigChange, DeviceConfig, SettingsStore, TransportMode
from wicare.core.notifiers.base import BaseNotifier
from wicare.core.notifiers.push import PushNotifier
from wicare.dashboard.server import DashboardServer
from wicare.detectors.base import MockFallDetector
from wicare.session import MonitorSession
from wicare.transport.base import BaseTransport
from wicare.transport.http import HttpTransport
from wicare.transport.mock import MockTransport

logger = logging.getLogger(__name__)


def apply_device_overrides(
    settings: SettingsStore,
    host: str | None = None,
    port: int | None = None,
    mode: str | None = None,
) -> DeviceConfig:
    """Persist command-line device overrides so the session picks them up."""
    current = settings.load_device_config()
    if host is None and port is None and mode is None:
        return current

    device = DeviceConfig(
        host=host if host is not None else current.host,
        port=port if port is not None else current.port,
        transport_mode=mode if mode is not None else current.transport_mode,
    )
    settings.save_device_config(device)
    return device


def device_banner(settings: SettingsStore) -> str:
    """Describe the device the session will connect to on start."""
    device = settings.load_device_config()
    return f"📡 Device: {device.host}:{device.port} ({device.transport_mode.value})"


def on_config_change(config: Config, changes: list[ConfigChange]) -> None:
    """Log edits to the config file and apply the ones that take effect live."""
    for change in changes:
        logger.info(f"Config changed: {change.path} = {change.new_value!r}")
        if change.path == "system.log_level":
            logging.getLogger().setLevel(config.system.log_level)
        elif change.path.startswith("device."):
            logger.warning("Device address changes take effect through the device settings file")


async def run_wicare(
    config: Config,
    settings: SettingsStore,
    mock_device: bool = False,
    debug: bool = False,
    enable_dashboard: bool = True,
) -> None:
    """Run the monitoring session until interrupted."""
    print(f"🛟 WiCare v{__version__}")
    print("=" * 40)

    transport: BaseTransport
    detector = None
    if mock_device:
        transport = MockTransport()
        detector = MockFallDetector()
        print("🎛️  Using mock device")
    else:
        transport = HttpTransport(timeout=config.connectivity.probe_timeout_seconds)

    notifiers: list[BaseNotifier] = []
    if config.notifiers.push.enabled:
        notifiers.append(PushNotifier(
            config.notifiers.push,
            emergency_number=config.alerts.emergency_number,
        ))
        print(f"📱 Push notifications via {config.notifiers.push.provider}")

    session = MonitorSession(
        transport,
        detector=detector,
        settings=settings,
        config=config,
        debug_enabled=debug or config.alerts.debug_enabled,
        notifiers=notifiers,
        watch_settings=True,
    )

    dashboard = None
    if enable_dashboard:
        dashboard = DashboardServer(session, config=config.dashboard)
        print(f"📊 Dashboard enabled at http://{config.dashboard.host}:{config.dashboard.port}")
    if session.alerts.debug_enabled:
        print("🧪 Debug overrides enabled")

    # Handle shutdown
    shutdown_event = asyncio.Event()

    def signal_handler():
        print("\n🛑 Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    # The dashboard starts and closes the session through its app lifespan
    if dashboard:
        await dashboard.start()
    else:
        await session.start()

    print(device_banner(settings))
    print("=" * 40)
    print("✅ Monitoring started")
    print("Press Ctrl+C to stop")
    print()

    await shutdown_event.wait()

    if dashboard:
        await dashboard.stop()
    else:
        await session.close()

    print("👋 Shutdown complete")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="wicare",
        description="Fall-detection device monitoring and alerts",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Configuration file path",
    )
    parser.add_argument(
        "--mock-device",
        action="store_true",
        help="Use a simulated device for development/testing",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug overrides (force safe / force fall)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Device host (saved to device settings)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Device port (saved to device settings)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in TransportMode],
        default=None,
        help="Preferred transport mode",
    )
    parser.add_argument(
        "--no-dashboard",
        action="store_true",
        help="Disable the built-in dashboard server",
    )

    args = parser.parse_args()

    mock_device = args.mock_device or os.environ.get("WICARE_MOCK", "").lower() in ("1", "true", "yes")

    # Find configuration file
    config_paths = [
        args.config,
        Path("config/default.yaml"),
        Path("/etc/wicare/config.yaml"),
        Path.home() / ".config/wicare/config.yaml",
    ]

    config = None
    for path in config_paths:
        if path and path.exists():
            print(f"Loading config from: {path}")
            config = Config.load_directory(path) if path.is_dir() else Config.load(path)
            break

    if config is None:
        print("No config file found, using defaults")
        config = Config.default()

    # Validate config
    errors = config.validate()
    if errors:
        print("Configuration errors:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.system.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = SettingsStore(
        Path(config.system.settings_path).expanduser(),
        defaults=config.device,
    )
    try:
        apply_device_overrides(settings, host=args.host, port=args.port, mode=args.mode)
    except ValidationError as e:
        print("Invalid device settings:")
        for error in e.errors():
            loc = ".".join(str(p) for p in error["loc"])
            print(f"  - {loc}: {error['msg']}")
        sys.exit(1)

    if config.source_path:
        config.enable_hot_reload(lambda changes: on_config_change(config, changes))

    try:
        asyncio.run(run_wicare(
            config,
            settings,
            mock_device=mock_device,
            debug=args.debug,
            enable_dashboard=not args.no_dashboard,
        ))
    except KeyboardInterrupt:
        pass
    finally:
        config.disable_hot_reload()


if __name__ == "__main__":
    main()
