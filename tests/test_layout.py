"""
Tests for livecopy.planning.layout module.

This test suite covers:
- Capacity classification of devices
- Partition size planning and the exchange/persistence split
- Enlarged system size headroom
- Exchange slider limits for an install selection
"""

import pytest
from conftest import make_device

from livecopy.config import settings
from livecopy.domain import MEGA, PartitionState
from livecopy.planning import layout
from livecopy.storage.exceptions import DeviceTooSmallError, PlanningError


BOOT = 256 * MEGA
SYSTEM = 3000 * MEGA
CAPACITY = 8_000_000_000


class TestClassify:
    """Tests for classify() function."""

    @pytest.mark.parametrize("device_size", [0, 1, BOOT + SYSTEM - 1])
    def test_too_small_below_required(self, device_size):
        assert layout.classify(device_size, BOOT + SYSTEM) is PartitionState.TOO_SMALL

    def test_exact_fit_is_only_system(self):
        assert layout.classify(BOOT + SYSTEM, BOOT + SYSTEM) is PartitionState.ONLY_SYSTEM

    def test_overhead_below_minimum_is_only_system(self):
        size = BOOT + SYSTEM + 200 * MEGA - 1
        assert layout.classify(size, BOOT + SYSTEM) is PartitionState.ONLY_SYSTEM

    def test_overhead_at_minimum_offers_exchange(self):
        size = BOOT + SYSTEM + 200 * MEGA
        assert layout.classify(size, BOOT + SYSTEM) is PartitionState.EXCHANGE

    def test_without_exchange_is_persistence(self):
        state = layout.classify(CAPACITY, BOOT + SYSTEM, allow_exchange=False)
        assert state is PartitionState.PERSISTENCE

    def test_minimum_size_from_settings(self):
        settings.settings_store.values["minimum_partition_size_mb"] = 1000
        size = BOOT + SYSTEM + 500 * MEGA
        assert layout.classify(size, BOOT + SYSTEM) is PartitionState.ONLY_SYSTEM


class TestPlan:
    """Tests for plan() function."""

    def test_requested_exchange_below_maximum_leaves_persistence(self):
        sizes = layout.plan(CAPACITY, SYSTEM, 1000, BOOT)

        max_exchange_mb = (CAPACITY - BOOT - SYSTEM) // MEGA
        assert max_exchange_mb == 4744
        assert sizes.exchange_mb == 1000
        assert sizes.persistent_mb == max_exchange_mb - 1000

    def test_request_of_4000_mb_keeps_leftover_as_persistence(self):
        sizes = layout.plan(CAPACITY, SYSTEM, 4000, BOOT)
        assert sizes.exchange_mb == 4000
        assert sizes.persistent_mb == 744

    @pytest.mark.parametrize("requested", [4744, 5000, 100_000])
    def test_request_at_or_above_maximum_takes_everything(self, requested):
        sizes = layout.plan(CAPACITY, SYSTEM, requested, BOOT)
        assert sizes.exchange_mb == 4744
        assert sizes.persistent_mb == 0
        assert sizes.persistent_bytes == 0

    def test_no_sliver_when_overhead_is_not_a_whole_mb(self):
        capacity = BOOT + SYSTEM + 1234 * MEGA + 999_999
        sizes = layout.plan(capacity, SYSTEM, 1234, BOOT)
        assert sizes.exchange_mb == 1234
        assert sizes.persistent_mb == 0
        assert sizes.persistent_bytes == 0

    def test_negative_request_is_clamped_to_zero(self):
        sizes = layout.plan(CAPACITY, SYSTEM, -50, BOOT)
        assert sizes.exchange_mb == 0
        assert sizes.persistent_mb == 4744

    def test_selection_maximum_limits_exchange(self):
        sizes = layout.plan(CAPACITY, SYSTEM, 4744, BOOT, max_exchange_mb=3000)
        assert sizes.exchange_mb == 3000
        assert sizes.persistent_mb == 1744

    def test_too_small_raises(self):
        with pytest.raises(DeviceTooSmallError) as exc_info:
            layout.plan(BOOT + SYSTEM - 1, SYSTEM, 0, BOOT)
        assert exc_info.value.required_size == BOOT + SYSTEM
        assert isinstance(exc_info.value, PlanningError)

    def test_reports_boot_and_system_in_mb(self):
        sizes = layout.plan(CAPACITY, SYSTEM, 0, BOOT)
        assert sizes.boot_mb == 256
        assert sizes.system_mb == 3000

    @pytest.mark.parametrize(
        "capacity,requested",
        [
            (BOOT + SYSTEM, 0),
            (BOOT + SYSTEM + 1, 10),
            (CAPACITY, 0),
            (CAPACITY, 2372),
            (CAPACITY + 123_457, 4744),
            (64_000_000_000, 32_000),
        ],
    )
    def test_sizes_never_exceed_capacity(self, capacity, requested):
        sizes = layout.plan(capacity, SYSTEM, requested, BOOT)
        total_bytes = (
            BOOT + SYSTEM + sizes.exchange_mb * MEGA + sizes.persistent_bytes
        )
        assert total_bytes <= capacity
        assert min(sizes.boot_mb, sizes.system_mb, sizes.exchange_mb, sizes.persistent_mb) >= 0
        assert sizes.total_mb * MEGA <= capacity


class TestEnlargedSystemSize:
    def test_default_factor(self):
        assert layout.enlarged_system_size(1000 * MEGA) == 1100 * MEGA

    def test_factor_from_settings(self):
        settings.settings_store.values["system_size_factor"] = 1.5
        assert layout.enlarged_system_size(1000 * MEGA) == 1500 * MEGA

    def test_explicit_factor(self):
        assert layout.enlarged_system_size(1000, factor=1.0) == 1000


class TestInstallPartitionSizes:
    def test_uses_enlarged_system_and_configured_boot(self):
        device = make_device(size=CAPACITY)
        sizes = layout.install_partition_sizes(2000 * MEGA, device, 0)
        assert sizes.system_mb == 2200
        assert sizes.boot_mb == settings.DEFAULT_BOOT_PARTITION_SIZE_MB
        assert sizes.persistent_mb == (CAPACITY - BOOT - 2200 * MEGA) // MEGA


class TestExchangeLimit:
    """Tests for exchange_limit() function."""

    def test_empty_selection_disables_slider(self):
        limit = layout.exchange_limit([], SYSTEM, 1000, BOOT)
        assert limit.enabled is False

    def test_maximum_is_smallest_overhead(self):
        small = make_device("sdb", size=6_000_000_000)
        large = make_device("sdc", size=16_000_000_000)
        limit = layout.exchange_limit([large, small], SYSTEM, 100_000, BOOT)

        required = BOOT + layout.enlarged_system_size(SYSTEM)
        assert limit.enabled is True
        assert limit.maximum_mb == (6_000_000_000 - required) // MEGA
        assert limit.value_mb == limit.maximum_mb

    def test_value_clamped_to_request(self):
        device = make_device(size=CAPACITY)
        limit = layout.exchange_limit([device], SYSTEM, 500, BOOT)
        assert limit.value_mb == 500

    def test_device_without_room_disables_slider(self):
        required = BOOT + layout.enlarged_system_size(SYSTEM)
        cramped = make_device("sdb", size=required + 10 * MEGA)
        roomy = make_device("sdc", size=CAPACITY)
        limit = layout.exchange_limit([cramped, roomy], SYSTEM, 500, BOOT)
        assert limit.enabled is False
        assert limit.maximum_mb == 0
