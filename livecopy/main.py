import argparse
import re
import sys
import time

from livecopy.app.context import AppContext
from livecopy.app.selection import install_selection
from livecopy.batch.backend import ScriptBackend
from livecopy.batch.installer import Installer
from livecopy.batch.resetter import Resetter
from livecopy.batch.results import LoggingResultSink
from livecopy.batch.upgrader import Upgrader
from livecopy.config import settings
from livecopy.domain import (
    MEGA,
    BatchKind,
    DataPartitionMode,
    DeviceListMode,
    InstallConfig,
    PartitionState,
    RepartitionStrategy,
    ResetConfig,
    UpgradeConfig,
    WizardState,
)
from livecopy.logging import setup_logging
from livecopy.planning import layout, preflight
from livecopy.services.hotplug import HotplugMonitor
from livecopy.services.registry import DeviceRegistry
from livecopy.services.system_source import RunningSystemSource, StaticSystemSource
from livecopy.storage.devices import human_size
from livecopy.storage.exceptions import StorageError


SIZE_UNITS = {"": 1, "K": 1000, "M": MEGA, "G": 1000 * MEGA, "T": 1000 * 1000 * MEGA}

SELECTION_STATES = {
    DeviceListMode.INSTALL: WizardState.INSTALL_SELECTION,
    DeviceListMode.UPGRADE: WizardState.UPGRADE_SELECTION,
    DeviceListMode.RESET: WizardState.RESET_SELECTION,
}


def parse_size(value):
    """Parse "8G", "512M" or a plain byte count (decimal units)."""
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([KMGT]?)B?\s*", value.upper())
    if not match:
        raise argparse.ArgumentTypeError(f"invalid size: {value}")
    return int(float(match.group(1)) * SIZE_UNITS[match.group(2)])


def build_parser():
    parser = argparse.ArgumentParser(
        prog="livecopy", description="Install, upgrade and reset live system media"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument(
        "--show-hard-disks", action="store_true", help="Also offer internal hard disks"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_parser = commands.add_parser("list", help="List candidate devices")
    list_parser.add_argument(
        "--mode", choices=[m.value for m in SELECTION_STATES], default="install"
    )

    plan_parser = commands.add_parser("plan", help="Show the partition plan for a device size")
    plan_parser.add_argument("device_size", type=parse_size)
    plan_parser.add_argument("--system-size", type=parse_size, required=True)
    plan_parser.add_argument("--exchange-mb", type=int, default=0)

    commands.add_parser("monitor", help="Follow hotplug events")

    install_parser = commands.add_parser("install", help="Install the live system")
    install_parser.add_argument("devices", nargs="+")
    install_parser.add_argument("--system-size", type=parse_size)
    install_parser.add_argument("--medium", help="Live medium mount point")
    install_parser.add_argument(
        "--exchange-mb", type=int, help="Exchange size in MB (default from settings)"
    )
    install_parser.add_argument("--exchange-label")
    install_parser.add_argument("--auto-number-pattern", default="")
    install_parser.add_argument("--copy-exchange", action="store_true")
    install_parser.add_argument("--copy-data", action="store_true")
    install_parser.add_argument(
        "--data-mode",
        choices=[m.value for m in DataPartitionMode],
        default=DataPartitionMode.READ_WRITE.value,
    )
    install_parser.add_argument("--backend")

    upgrade_parser = commands.add_parser("upgrade", help="Upgrade existing live media")
    upgrade_parser.add_argument("devices", nargs="+")
    upgrade_parser.add_argument("--system-size", type=parse_size)
    upgrade_parser.add_argument("--medium", help="Live medium mount point")
    upgrade_parser.add_argument("--backup", metavar="DIR", help="Back up user data to DIR")
    upgrade_parser.add_argument(
        "--repartition",
        choices=[s.value for s in RepartitionStrategy],
        default=RepartitionStrategy.KEEP.value,
    )
    upgrade_parser.add_argument("--exchange-mb", type=int, default=0)
    upgrade_parser.add_argument("--reset-data", action="store_true")
    upgrade_parser.add_argument("--backend")

    reset_parser = commands.add_parser("reset", help="Reset existing live media")
    reset_parser.add_argument("devices", nargs="+")
    reset_parser.add_argument("--format-exchange", action="store_true")
    reset_parser.add_argument("--clean-exchange", action="store_true")
    reset_parser.add_argument("--format-data", action="store_true")
    reset_parser.add_argument("--keep-data", action="store_true")
    reset_parser.add_argument("--backend")
    return parser


def system_source_for(args):
    if getattr(args, "system_size", None):
        return StaticSystemSource(size=args.system_size)
    return RunningSystemSource(medium_path=getattr(args, "medium", None))


def select_devices(registry, mode, names):
    registry.set_state(SELECTION_STATES[mode])
    registry.scan(mode)
    selected = []
    for name in names:
        device = registry.find(mode, name)
        if device is None:
            raise SystemExit(f"{name} is not a candidate device for {mode.value}")
        selected.append(device)
    return selected


def print_results(orchestrator, sink):
    for result in orchestrator.results:
        status = "ok" if result.succeeded else f"FAILED: {result.error_message}"
        print(f"{result.device.format_label()}: {status} ({result.duration():.0f}s)")
    if sink.last_message:
        print(sink.last_message)
    return 0 if all(result.succeeded for result in orchestrator.results) else 1


def command_list(args, registry):
    mode = DeviceListMode(args.mode)
    registry.set_state(SELECTION_STATES[mode])
    devices = registry.scan(mode)
    if not devices:
        print("No devices found")
    for device in devices:
        live = ""
        if mode is not DeviceListMode.INSTALL and registry.is_live_system(device):
            live = " [live system]"
        print(f"{device.format_label()} {device.device_type.value}{live}")
    return 0


def command_plan(args, registry):
    boot_size = settings.boot_partition_size()
    system_size = layout.enlarged_system_size(args.system_size)
    state = layout.classify(args.device_size, boot_size + system_size)
    print(f"State: {state.value}")
    if state is PartitionState.TOO_SMALL:
        return 1
    sizes = layout.plan(args.device_size, system_size, args.exchange_mb, boot_size)
    print(f"Boot:        {sizes.boot_mb} MB")
    print(f"Exchange:    {sizes.exchange_mb} MB")
    print(f"Persistence: {sizes.persistent_mb} MB ({human_size(sizes.persistent_bytes)})")
    print(f"System:      {sizes.system_mb} MB")
    return 0


def command_monitor(args, registry):
    registry.set_state(WizardState.INSTALL_SELECTION)
    registry.scan(DeviceListMode.INSTALL)

    def changed(mode):
        if mode is DeviceListMode.INSTALL:
            names = ", ".join(d.device for d in registry.devices(mode)) or "none"
            print(f"Devices: {names}")

    registry.add_listener(changed)
    monitor = HotplugMonitor(registry.on_device_added, registry.on_device_removed)
    monitor.start()
    try:
        while monitor.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()
    return 0


def command_install(args, registry, app_context):
    source = system_source_for(args)
    devices = select_devices(registry, DeviceListMode.INSTALL, args.devices)
    boot_size = settings.boot_partition_size()
    exchange_mb = args.exchange_mb
    if exchange_mb is None:
        exchange_mb = settings.get_int("explicit_exchange_size_mb", 0)
    selection = install_selection(
        registry, devices, source.system_size(), exchange_mb, boot_size
    )
    config = InstallConfig(
        exchange_mb=selection.exchange.value_mb if selection.exchange.enabled else 0,
        exchange_file_system=settings.get_setting("exchange_file_system", "exfat"),
        data_file_system=settings.get_setting("data_file_system", "ext4"),
        exchange_label=args.exchange_label
        or settings.get_setting("exchange_partition_label", "Exchange"),
        auto_number_pattern=args.auto_number_pattern,
        copy_exchange=args.copy_exchange,
        copy_data=args.copy_data,
        data_partition_mode=DataPartitionMode(args.data_mode),
    )
    preflight.check_install(devices, config, source, registry, boot_size)

    sink = LoggingResultSink(BatchKind.INSTALL)
    installer = Installer(registry, ScriptBackend(args.backend), source, sink=sink)
    registry.set_state(WizardState.INSTALLATION)
    app_context.operation_active = True
    try:
        installer.run(devices, config)
    finally:
        app_context.operation_active = False
    return print_results(installer, sink)


def command_upgrade(args, registry, app_context):
    source = system_source_for(args)
    devices = select_devices(registry, DeviceListMode.UPGRADE, args.devices)
    boot_size = settings.boot_partition_size()
    config = UpgradeConfig(
        enlarged_system_size=layout.enlarged_system_size(source.system_size()),
        repartition_strategy=RepartitionStrategy(args.repartition),
        exchange_mb=args.exchange_mb,
        automatic_backup=bool(args.backup),
        backup_destination=args.backup or "",
        reset_data_partition=args.reset_data,
    )
    preflight.check_upgrade(devices, config, registry, boot_size)

    sink = LoggingResultSink(BatchKind.UPGRADE)
    upgrader = Upgrader(
        registry,
        ScriptBackend(args.backend),
        sink=sink,
        source_device_type=source.device_type(),
        required_boot_size=boot_size,
    )
    registry.set_state(WizardState.UPGRADE)
    app_context.operation_active = True
    try:
        upgrader.run(devices, config)
    finally:
        app_context.operation_active = False
    return print_results(upgrader, sink)


def command_reset(args, registry, app_context):
    devices = select_devices(registry, DeviceListMode.RESET, args.devices)
    config = ResetConfig(
        format_exchange_partition=args.format_exchange,
        clean_exchange_partition=args.clean_exchange,
        format_data_partition=args.format_data,
        clean_data_partition=not args.keep_data,
    )
    sink = LoggingResultSink(BatchKind.RESET)
    resetter = Resetter(registry, ScriptBackend(args.backend), sink=sink)
    registry.set_state(WizardState.RESET)
    app_context.operation_active = True
    try:
        resetter.run(devices, config)
    finally:
        app_context.operation_active = False
    return print_results(resetter, sink)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    app_context = AppContext()
    setup_logging(app_context, debug=args.debug, trace=args.trace)

    registry = DeviceRegistry(show_hard_disks=args.show_hard_disks or None)
    try:
        if args.command == "list":
            return command_list(args, registry)
        if args.command == "plan":
            return command_plan(args, registry)
        if args.command == "monitor":
            return command_monitor(args, registry)
        if args.command == "install":
            return command_install(args, registry, app_context)
        if args.command == "upgrade":
            return command_upgrade(args, registry, app_context)
        if args.command == "reset":
            return command_reset(args, registry, app_context)
    except StorageError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 2
    parser.error(f"unknown command {args.command}")


if __name__ == "__main__":
    sys.exit(main())
