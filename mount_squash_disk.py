#!/usr/bin/env python3
"""
Mount Squash Disk - Attaches a container built by squash-disk for reading

The container is attached as a read-only loop device and mounted, then the
disk.img inside it is attached as a second loop device so its partitions
show up as /dev/loopNpM. Optionally one partition is mounted as well.
Everything stays attached until the process receives SIGINT, SIGTERM or
SIGHUP, and is then released in reverse order.
"""

import argparse
import signal
import sys
from functools import partial
from pathlib import Path
from typing import NamedTuple, Optional

from disk_utils import (
    INNER_IMAGE_NAME,
    OperationError,
    lsblk_json,
    settle_devices,
    timestamped,
)
from teardown import TeardownStack
from udisks import Udisks

PARTITION_COLUMNS = ['PATH', 'SIZE', 'FSTYPE', 'LABEL', 'UUID']

UNATTACHED = 'unattached'
OUTER_ATTACHED = 'outer-attached'
OUTER_MOUNTED = 'outer-mounted'
INNER_ATTACHED = 'inner-attached'
PARTITION_ATTACHED = 'partition-attached'
TORN_DOWN = 'torn-down'


class MountConfig(NamedTuple):
    container: Path
    partition: Optional[int] = None  # 0 selects the inner image itself
    udisksctl: str = 'udisksctl'
    verbose: bool = False


class SquashDiskMounter:
    """
    Two-level loop mount of a squash disk container.

    States advance unattached -> outer-attached -> outer-mounted ->
    inner-attached (-> partition-attached). Each step pushes its release
    onto self.teardown, so whatever has been set up is undone in reverse
    order when the stack unwinds.
    """

    def __init__(self, config: MountConfig, udisks: Optional[Udisks] = None,
                 output_stream=None, lsblk: str = 'lsblk'):
        self.config = config
        self.verbose = config.verbose
        self.udisks = udisks if udisks is not None else Udisks(config.udisksctl, verbose=config.verbose)
        self.output_stream = output_stream
        self.lsblk = lsblk
        self.teardown = TeardownStack(verbose=config.verbose)
        self.state = UNATTACHED
        self.outer_loop: Optional[str] = None
        self.outer_mount: Optional[str] = None
        self.inner_loop: Optional[str] = None
        self.partition_device: Optional[str] = None
        self.partition_mount: Optional[str] = None

    def _log(self, message: str):
        if self.verbose:
            print(timestamped(message), file=sys.stderr)

    def _report(self, key: str, value: str):
        print(f"{key}: {value}", file=self.output_stream or sys.stdout, flush=True)

    def attach_outer(self):
        container = self.config.container
        if not container.is_file():
            raise OperationError(f"Container does not exist: {container}")

        with self.teardown.acquiring():
            self.outer_loop = self.udisks.loop_setup(container, read_only=True)
            self.teardown.push(f"loop device {self.outer_loop}", partial(self.udisks.loop_delete, self.outer_loop))
        self.state = OUTER_ATTACHED
        self._report('outer-loop', self.outer_loop)

    def mount_outer(self):
        with self.teardown.acquiring():
            self.outer_mount = self.udisks.mount(self.outer_loop, read_only=True)
            self.teardown.push(f"mount {self.outer_mount}", partial(self.udisks.unmount, self.outer_loop))
        self.state = OUTER_MOUNTED
        self._report('outer-mount', self.outer_mount)

    def attach_inner(self):
        inner_image = Path(self.outer_mount) / INNER_IMAGE_NAME
        if not inner_image.is_file():
            raise OperationError(f"{self.config.container} does not contain {INNER_IMAGE_NAME}")

        with self.teardown.acquiring():
            self.inner_loop = self.udisks.loop_setup(inner_image, read_only=True)
            self.teardown.push(f"loop device {self.inner_loop}", partial(self.udisks.loop_delete, self.inner_loop))
        self.state = INNER_ATTACHED
        self._report('inner-loop', self.inner_loop)

    def list_partitions(self) -> list[dict]:
        """Block devices of the inner image, the loop device itself first."""
        settle_devices()
        return lsblk_json(self.inner_loop, PARTITION_COLUMNS, lsblk=self.lsblk)

    @staticmethod
    def partition_path(loop_device: str, number: int) -> str:
        """Device node of partition number on loop_device; 0 is the device itself."""
        if number == 0:
            return loop_device
        return f"{loop_device}p{number}"

    def mount_partition(self):
        """
        Mount the requested partition of the inner image.

        Raises:
            OperationError: If the inner image has no such partition
        """
        number = self.config.partition
        device = self.partition_path(self.inner_loop, number)
        available = [entry.get('path') for entry in self.list_partitions()]
        if device not in available:
            raise OperationError(
                f"Partition {number} not found on {self.inner_loop} "
                f"(available: {', '.join(str(path) for path in available) or 'none'})"
            )

        self.partition_device = device
        with self.teardown.acquiring():
            self.partition_mount = self.udisks.mount(device, read_only=True)
            self.teardown.push(f"mount {self.partition_mount}", partial(self.udisks.unmount, device))
        self.state = PARTITION_ATTACHED
        self._report('partition', device)
        self._report('partition-mount', self.partition_mount)

    def report_partitions(self):
        for entry in self.list_partitions():
            fields = ' '.join(
                f"{column.lower()}={entry.get(column.lower()) or ''}"
                for column in PARTITION_COLUMNS[1:]
            )
            self._report('device', f"{entry.get('path')} {fields}")

    def setup(self):
        """Advance through the states up to the deepest one requested."""
        self._log(f"Attaching {self.config.container}")
        self.attach_outer()
        self.mount_outer()
        self.attach_inner()
        if self.config.partition is not None:
            self.mount_partition()
        else:
            self.report_partitions()

    def close(self) -> list[tuple[str, Exception]]:
        """Release everything set up so far. Safe to call more than once."""
        failures = self.teardown.unwind()
        self.state = TORN_DOWN
        return failures

    def wait(self):
        while True:
            signal.pause()

    def run(self):
        """Set up, then hold the mounts open until a termination signal."""
        try:
            self.teardown.install_signal_handlers()
            self.setup()
            self._log("Ready; send SIGINT or SIGTERM to unmount")
            self.wait()
        finally:
            self.close()


def partition_argument(text: str) -> int:
    """argparse type: non-negative partition number."""
    try:
        number = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"partition must be a non-negative integer: {text}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"partition must be a non-negative integer: {text}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mount-squash-disk',
        description='Attach a squash disk container and keep it mounted until interrupted',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Device paths and mount points are printed to stdout as "key: value" lines
as soon as they exist.

Examples:
  # Expose the partitions of the inner {INNER_IMAGE_NAME}
  %(prog)s backup.disk.sqsh

  # Also mount its second partition
  %(prog)s backup.disk.sqsh 2

  # The container holds a single partition: mount the image itself
  %(prog)s home.disk.sqsh 0
        """
    )

    parser.add_argument(
        'container',
        type=Path,
        metavar='CONTAINER',
        help='Container built by squash-disk'
    )

    parser.add_argument(
        'partition',
        type=partition_argument,
        nargs='?',
        metavar='PARTITION',
        help=f'Partition of {INNER_IMAGE_NAME} to mount (0 mounts the image itself)'
    )

    parser.add_argument(
        '--udisksctl',
        default='udisksctl',
        metavar='PATH',
        help='udisksctl binary to use'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped progress messages to stderr'
    )

    return parser


def main():
    """Main entry point for mount-squash-disk."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.container.exists():
        parser.error(f"Container does not exist: {args.container}")

    if not args.container.is_file():
        parser.error(f"Container path is not a file: {args.container}")

    config = MountConfig(
        container=args.container,
        partition=args.partition,
        udisksctl=args.udisksctl,
        verbose=args.verbose,
    )

    mounter = SquashDiskMounter(config)

    try:
        mounter.run()
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
