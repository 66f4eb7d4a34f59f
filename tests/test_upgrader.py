"""
Tests for livecopy.batch.upgrader module.
"""

import pytest
from conftest import live_layout, make_device

from livecopy.batch.upgrader import SYSTEM_PHASES, Upgrader, upgrade_phases
from livecopy.domain import (
    MEGA,
    EfiUpgradeVariant,
    Phase,
    RepartitionStrategy,
    SystemUpgradeVariant,
    UpgradeConfig,
    UpgradeDecision,
)


BOOT = 256 * MEGA


def decision(backup=False, repartition=False):
    return UpgradeDecision(
        system_variant=SystemUpgradeVariant.REGULAR,
        efi_variant=EfiUpgradeVariant.REGULAR,
        backup_required=backup,
        repartition_required=repartition,
        possible=True,
    )


@pytest.fixture
def upgrader(registry, fake_backend, recording_sink):
    return Upgrader(registry, fake_backend, recording_sink, required_boot_size=BOOT)


class TestUpgradePhases:
    """Tests for upgrade_phases() function."""

    def test_regular_upgrade_only_replaces_system(self):
        config = UpgradeConfig(enlarged_system_size=2500 * MEGA)
        assert upgrade_phases(config, decision()) == list(SYSTEM_PHASES)

    def test_required_backup_wraps_the_upgrade(self):
        config = UpgradeConfig(enlarged_system_size=2500 * MEGA, automatic_backup=True)
        phases = upgrade_phases(config, decision(backup=True, repartition=True))
        assert phases[:2] == [Phase.BACKING_UP_USER_DATA, Phase.CHANGING_PARTITION_SIZES]
        assert phases[-1] is Phase.RESTORING_USER_DATA

    def test_voluntary_backup_is_not_restored(self):
        config = UpgradeConfig(enlarged_system_size=2500 * MEGA, automatic_backup=True)
        phases = upgrade_phases(config, decision())
        assert phases[0] is Phase.BACKING_UP_USER_DATA
        assert Phase.RESTORING_USER_DATA not in phases

    def test_resize_strategy_changes_partitions(self):
        config = UpgradeConfig(
            enlarged_system_size=2500 * MEGA,
            repartition_strategy=RepartitionStrategy.RESIZE,
            exchange_mb=500,
        )
        assert Phase.CHANGING_PARTITION_SIZES in upgrade_phases(config, decision())

    def test_data_reset_and_file_removal(self):
        config = UpgradeConfig(
            enlarged_system_size=2500 * MEGA,
            reset_data_partition=True,
            overwrite_list=("/home/user/.bashrc",),
            upgrade_system_partition=False,
        )
        assert upgrade_phases(config, decision()) == [
            Phase.RESETTING_DATA_PARTITION,
            Phase.REMOVING_FILES,
        ]


class TestUpgrader:
    def test_regular_upgrade(self, upgrader, fake_resolvers, fake_backend):
        device = fake_resolvers.add(make_device("sdb"), live_layout())
        config = UpgradeConfig(enlarged_system_size=2500 * MEGA)

        results = upgrader.run([device], config)

        assert results[0].succeeded
        assert fake_backend.phases_for("/dev/sdb") == list(SYSTEM_PHASES)
        assert fake_backend.tasks[0].decision.system_variant is SystemUpgradeVariant.REGULAR

    def test_repartition_when_data_partition_has_room(
        self, upgrader, fake_resolvers, fake_backend
    ):
        partitions = live_layout()
        device = fake_resolvers.add(make_device("sdb"), partitions)
        fake_resolvers.used[partitions[2].device] = 500 * MEGA

        upgrader.run([device], UpgradeConfig(enlarged_system_size=3500 * MEGA))

        assert fake_backend.phases_for("/dev/sdb")[0] is Phase.CHANGING_PARTITION_SIZES

    def test_impossible_device_fails_before_any_phase(
        self, upgrader, fake_resolvers, fake_backend
    ):
        broken = fake_resolvers.add(make_device("sdb"), live_layout(data_size=None))
        good = fake_resolvers.add(make_device("sdc"), live_layout("/dev/sdc"))
        # sdb has no data partition to take space from
        config = UpgradeConfig(enlarged_system_size=3500 * MEGA, automatic_backup=True)
        fake_resolvers.used["/dev/sdc3"] = 0

        results = upgrader.run([broken, good], config)

        assert results[0].succeeded is False
        assert "Cannot upgrade /dev/sdb" in results[0].error_message
        assert fake_backend.phases_for("/dev/sdb") == []
        assert results[1].succeeded is True

    def test_missing_backup_selection_is_not_possible(
        self, upgrader, fake_resolvers, fake_backend
    ):
        partitions = live_layout(boot_size=100 * MEGA, exchange_size=None)
        device = fake_resolvers.add(make_device("sdb"), partitions)

        results = upgrader.run([device], UpgradeConfig(enlarged_system_size=2500 * MEGA))

        assert "backup" in results[0].error_message
        assert fake_backend.calls == []
