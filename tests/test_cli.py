"""
Tests for the command line entry point.

Covers:
- Device overrides persisted before the session starts
- Argument parsing (version, invalid settings)
- Live application of config file edits
"""

from __future__ import annotations

import logging
import time
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from wicare.__main__ import apply_device_overrides, device_banner, main, on_config_change
from wicare.core.config import Config, ConfigChange, DeviceConfig, SettingsStore, TransportMode


class TestApplyDeviceOverrides:
    """Tests for apply_device_overrides."""

    def test_no_overrides_keeps_stored(self, settings_store):
        """Without flags the stored config is returned untouched."""
        settings_store.save_device_config(DeviceConfig(host="10.0.0.3"))

        device = apply_device_overrides(settings_store)

        assert device.host == "10.0.0.3"

    def test_overrides_are_saved(self, settings_store):
        """Flags are merged with the stored config and saved."""
        settings_store.save_device_config(DeviceConfig(host="10.0.0.3", port=8181))

        device = apply_device_overrides(settings_store, port=9000, mode="streaming")

        assert device == DeviceConfig(host="10.0.0.3", port=9000, transport_mode=TransportMode.STREAMING)
        assert SettingsStore(settings_store.path).load_device_config() == device

    def test_invalid_override_raises(self, settings_store):
        """Invalid values are rejected before anything is saved."""
        with pytest.raises(ValidationError):
            apply_device_overrides(settings_store, port=0)

        assert not settings_store.path.exists()

    def test_banner_shows_saved_device(self, settings_store):
        """The startup banner reports the address the session will load."""
        apply_device_overrides(settings_store, host="192.168.1.50", port=8081, mode="streaming")

        assert device_banner(settings_store) == "📡 Device: 192.168.1.50:8081 (streaming)"

    def test_banner_falls_back_to_defaults(self, tmp_path):
        """Without a settings file the configured defaults are shown."""
        store = SettingsStore(tmp_path / "device.yaml", defaults=DeviceConfig(host="10.0.0.3"))

        assert "10.0.0.3:8080 (polling)" in device_banner(store)


class TestMain:
    """Tests for argument handling."""

    def test_version(self, capsys):
        """--version prints the version and exits."""
        with patch("sys.argv", ["wicare", "--version"]):
            with pytest.raises(SystemExit) as exc:
                main()

        assert exc.value.code == 0
        assert "wicare" in capsys.readouterr().out

    def test_invalid_port_exits(self, tmp_path, capsys):
        """An invalid --port is reported and exits with status 1."""
        config = tmp_path / "config.yaml"
        config.write_text(f"system:\n  settings_path: {tmp_path / 'device.yaml'}\n")

        with patch("sys.argv", ["wicare", "--config", str(config), "--port", "70000"]):
            with patch("wicare.__main__.asyncio.run") as run:
                with pytest.raises(SystemExit) as exc:
                    main()

        assert exc.value.code == 1
        assert "Invalid device settings" in capsys.readouterr().out
        run.assert_not_called()


class TestConfigHotReload:
    """Tests for on_config_change."""

    def test_log_level_applied(self):
        """A log level edit updates the root logger."""
        config = Config.from_dict({"system": {"log_level": "warning"}})
        root = logging.getLogger()
        previous = root.level

        try:
            on_config_change(config, [ConfigChange("system.log_level", "INFO", "warning", time.time())])
            assert root.level == logging.WARNING
        finally:
            root.setLevel(previous)

    def test_device_change_only_logged(self, caplog):
        """Device edits in the main config are not applied live."""
        config = Config.default()

        with caplog.at_level(logging.WARNING, logger="wicare.__main__"):
            on_config_change(config, [ConfigChange("device.port", 8080, 9000, time.time())])

        assert "device settings file" in caplog.text
