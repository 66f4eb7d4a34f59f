"""
Tests for livecopy.batch.backend module.
"""

import json

import pytest
from conftest import make_device

from livecopy.batch.backend import DeviceTask, ScriptBackend, task_environment
from livecopy.domain import (
    BatchJob,
    BatchKind,
    EfiUpgradeVariant,
    InstallConfig,
    PartitionSizes,
    Phase,
    SystemUpgradeVariant,
    UpgradeConfig,
    UpgradeDecision,
)
from livecopy.storage.exceptions import CommandError, PhaseError


def install_task(**kwargs):
    device = make_device("sdb")
    job = BatchJob(
        kind=BatchKind.INSTALL,
        devices=(device,),
        config=InstallConfig(exchange_mb=500, transfer_source=make_device("sdc")),
    )
    return DeviceTask(device=device, job=job, index=1, **kwargs)


class TestTaskEnvironment:
    """Tests for task_environment() function."""

    def test_minimal_environment(self):
        env = task_environment(install_task())

        assert env["LIVECOPY_KIND"] == "install"
        assert env["LIVECOPY_DEVICE"] == "/dev/sdb"
        assert env["LIVECOPY_DEVICE_INDEX"] == "1"
        assert "LIVECOPY_EXCHANGE_MB" not in env

    def test_config_is_json(self):
        config = json.loads(task_environment(install_task())["LIVECOPY_CONFIG"])

        assert config["exchange_mb"] == 500
        assert config["data_partition_mode"] == "read_write"
        assert config["transfer_source"]["device"] == "/dev/sdc"
        assert config["transfer_source"]["device_type"] == "usbflashdrive"

    def test_sizes_and_label(self):
        sizes = PartitionSizes(boot_mb=256, system_mb=3300, exchange_mb=500, persistent_mb=3944)
        env = task_environment(install_task(sizes=sizes, exchange_label="Stick 01"))

        assert env["LIVECOPY_BOOT_MB"] == "256"
        assert env["LIVECOPY_SYSTEM_MB"] == "3300"
        assert env["LIVECOPY_EXCHANGE_MB"] == "500"
        assert env["LIVECOPY_PERSISTENT_MB"] == "3944"
        assert env["LIVECOPY_EXCHANGE_LABEL"] == "Stick 01"

    def test_upgrade_decision(self):
        device = make_device("sdb")
        job = BatchJob(
            kind=BatchKind.UPGRADE,
            devices=(device,),
            config=UpgradeConfig(enlarged_system_size=1, overwrite_list=("/a",)),
        )
        decision = UpgradeDecision(
            system_variant=SystemUpgradeVariant.BACKUP,
            efi_variant=EfiUpgradeVariant.REGULAR,
            backup_required=True,
            repartition_required=True,
            possible=True,
        )

        env = task_environment(DeviceTask(device=device, job=job, index=2, decision=decision))

        assert env["LIVECOPY_SYSTEM_VARIANT"] == "backup"
        assert env["LIVECOPY_EFI_VARIANT"] == "regular"
        assert env["LIVECOPY_BACKUP_REQUIRED"] == "1"
        assert json.loads(env["LIVECOPY_CONFIG"])["overwrite_list"] == ["/a"]


class TestScriptBackend:
    def test_runs_script_with_phase_and_device(self, mocker):
        checked = mocker.patch(
            "livecopy.batch.backend.storage_devices.run_checked_command", return_value=""
        )
        backend = ScriptBackend("/opt/backend")

        backend.run_phase(Phase.COPYING_FILES, install_task())

        command = checked.call_args.args[0]
        env = checked.call_args.kwargs["env"]
        assert command == ["/opt/backend", "CopyingFiles", "/dev/sdb"]
        assert env["LIVECOPY_DEVICE"] == "/dev/sdb"
        assert "PATH" in env

    def test_script_from_settings(self):
        assert ScriptBackend().script == "/usr/lib/livecopy/backend"

    def test_command_failure_becomes_phase_error(self, mocker):
        mocker.patch(
            "livecopy.batch.backend.storage_devices.run_checked_command",
            side_effect=CommandError(["/opt/backend"], 1, "rsync: write failed"),
        )

        with pytest.raises(PhaseError) as exc_info:
            ScriptBackend("/opt/backend").run_phase(Phase.COPYING_FILES, install_task())

        assert str(exc_info.value) == "rsync: write failed"
        assert exc_info.value.phase == "CopyingFiles"
        assert exc_info.value.device == "/dev/sdb"

    def test_missing_script_becomes_phase_error(self, mocker):
        mocker.patch(
            "livecopy.batch.backend.storage_devices.run_checked_command",
            side_effect=FileNotFoundError("/opt/missing"),
        )

        with pytest.raises(PhaseError, match="Cannot run backend /opt/missing"):
            ScriptBackend("/opt/missing").run_phase(Phase.WRITING_BOOT_SECTOR, install_task())
