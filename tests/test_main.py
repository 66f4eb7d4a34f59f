"""
Tests for livecopy.main module.

This test suite covers:
- Size argument parsing
- The plan, list, install, upgrade and reset commands
- Error reporting for storage errors
"""

import argparse

import pytest
from conftest import live_layout, make_device

from livecopy import main
from livecopy.config import settings
from livecopy.domain import MEGA, DeviceListMode, Phase


@pytest.fixture
def cli(mocker, registry, fake_backend):
    """Run main() against the fake registry without touching log files."""
    mocker.patch.object(main, "setup_logging")
    mocker.patch.object(main, "DeviceRegistry", return_value=registry)
    mocker.patch.object(main, "ScriptBackend", return_value=fake_backend)
    return main.main


class TestParseSize:
    """Tests for parse_size() function."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("8G", 8_000_000_000),
            ("8GB", 8_000_000_000),
            ("512m", 512 * MEGA),
            ("1.5G", 1_500_000_000),
            ("4096", 4096),
            ("2T", 2_000_000_000_000),
        ],
    )
    def test_valid_sizes(self, value, expected):
        assert main.parse_size(value) == expected

    @pytest.mark.parametrize("value", ["", "G", "-1G", "8X", "eight"])
    def test_invalid_sizes(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            main.parse_size(value)


class TestPlanCommand:
    def test_prints_partition_sizes(self, cli, capsys):
        exit_code = cli(["plan", "8G", "--system-size", "3000M", "--exchange-mb", "1000"])

        output = capsys.readouterr().out
        assert exit_code == 0
        assert "State: exchange" in output
        assert "Exchange:    1000 MB" in output
        assert "System:      3300 MB" in output
        assert "Persistence: 3444 MB" in output

    def test_too_small_device(self, cli, capsys):
        exit_code = cli(["plan", "2G", "--system-size", "3000M"])
        assert exit_code == 1
        assert "State: too_small" in capsys.readouterr().out


class TestListCommand:
    def test_lists_devices(self, cli, capsys, fake_resolvers):
        fake_resolvers.add(make_device("sdb", vendor="SanDisk"), live_layout())

        exit_code = cli(["list", "--mode", "reset"])

        output = capsys.readouterr().out
        assert exit_code == 0
        assert "/dev/sdb" in output
        assert "[live system]" in output

    def test_no_devices(self, cli, capsys):
        assert cli(["list"]) == 0
        assert "No devices found" in capsys.readouterr().out


class TestBatchCommands:
    def test_install(self, cli, capsys, fake_resolvers, fake_backend):
        fake_resolvers.add(make_device("sdb"))
        fake_resolvers.add(make_device("sdc"))

        exit_code = cli(
            ["install", "sdb", "/dev/sdc", "--system-size", "3000M", "--exchange-mb", "500"]
        )

        assert exit_code == 0
        assert fake_backend.phases_for("/dev/sdc")[-1] is Phase.WRITING_BOOT_SECTOR
        assert fake_backend.tasks[0].sizes.exchange_mb == 500
        assert "Install finished: 2 of 2" in capsys.readouterr().out

    def test_install_exchange_size_from_settings(self, cli, fake_resolvers, fake_backend):
        fake_resolvers.add(make_device("sdb"))
        settings.set_setting("explicit_exchange_size_mb", 700)

        assert cli(["install", "sdb", "--system-size", "3000M"]) == 0
        assert fake_backend.tasks[0].sizes.exchange_mb == 700

    def test_unknown_device_exits(self, cli, fake_resolvers):
        fake_resolvers.add(make_device("sdb"))
        with pytest.raises(SystemExit):
            cli(["install", "sdx", "--system-size", "3000M"])

    def test_preflight_error_returns_2(self, cli, capsys, fake_resolvers, fake_backend):
        fake_resolvers.add(make_device("sdb", size=2000 * MEGA))

        exit_code = cli(["install", "sdb", "--system-size", "3000M"])

        assert exit_code == 2
        assert "too small" in capsys.readouterr().err
        assert fake_backend.calls == []

    def test_upgrade(self, cli, fake_resolvers, fake_backend, registry):
        fake_resolvers.add(make_device("sdb"), live_layout())

        exit_code = cli(["upgrade", "sdb", "--system-size", "2000M"])

        assert exit_code == 0
        assert fake_backend.phases_for("/dev/sdb")[0] is Phase.RESETTING_SYSTEM_PARTITION
        assert registry.devices(DeviceListMode.UPGRADE)

    def test_reset_failure_returns_1(self, cli, capsys, fake_resolvers, fake_backend):
        fake_resolvers.add(make_device("sdb"), live_layout())
        fake_backend.failures["/dev/sdb"] = Phase.FORMATTING_DATA_PARTITION

        exit_code = cli(["reset", "sdb", "--format-data"])

        assert exit_code == 1
        assert "FAILED: FormattingDataPartition failed" in capsys.readouterr().out


def test_command_is_required(capsys):
    with pytest.raises(SystemExit):
        main.main([])
