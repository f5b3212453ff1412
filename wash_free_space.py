#!/usr/bin/env python3
"""
Wash Free Space - Overwrites the free space of every filesystem on a device

Deleted file contents linger in free blocks and bloat compressed images of
the device. For each writable partition with a filesystem, a temporary file
full of zeros is grown until only a safety margin of free space is left,
synced, deleted and synced again.
"""

import argparse
import os
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import NamedTuple, Optional

from rich.console import Console
from rich.markup import escape

from disk_utils import (
    MiB,
    OperationError,
    SquashDiskError,
    format_size,
    lsblk_flag,
    lsblk_json,
    needs_privilege,
    privileged,
    require_tools,
    size_argument,
    validate_sudo,
)
from teardown import TeardownStack
from udisks import Udisks

DEFAULT_MARGIN = 64 * MiB
MIN_WASH_SIZE = MiB
TEMP_PREFIX = '.wash-free-space-'

# Filesystem signatures that lsblk reports but that cannot be mounted
UNMOUNTABLE_FSTYPES = {
    'swap',
    'crypto_LUKS',
    'LVM2_member',
    'linux_raid_member',
    'zfs_member',
    'bcache',
}

WASHED = 'washed'
SKIPPED = 'skipped'
FAILED = 'failed'


class WashConfig(NamedTuple):
    device: str
    margin: int = DEFAULT_MARGIN
    sudo: bool = True
    pv: str = 'pv'
    udisksctl: str = 'udisksctl'
    verbose: bool = False


class PartitionResult(NamedTuple):
    path: str
    status: str
    detail: str = ''
    size: int = 0


def wash_size(free: int, margin: int) -> int:
    """
    Number of bytes to zero given the free space of a filesystem.

    The free space minus the margin is rounded down to whole MiB; anything
    under MIN_WASH_SIZE is not worth a pass and yields 0.
    """
    size = (free - margin) // MiB * MiB
    return size if size >= MIN_WASH_SIZE else 0


class FreeSpaceWasher:
    """Zeroes the free space of each writable filesystem on a device."""

    def __init__(self, config: WashConfig, udisks: Optional[Udisks] = None,
                 console: Optional[Console] = None, error_console: Optional[Console] = None):
        self.config = config
        self.udisks = udisks if udisks is not None else Udisks(config.udisksctl, verbose=config.verbose)
        self.console = console if console is not None else Console()
        self.error_console = error_console if error_console is not None else Console(stderr=True)
        self._sudo_validated = False

    def _log(self, message: str):
        if self.config.verbose:
            self.console.log(escape(message))

    def _error(self, message: str):
        self.error_console.print(f"[bold red]ERROR[/] {escape(message)}")

    def check_prerequisites(self):
        require_tools([self.config.pv, self.config.udisksctl, 'lsblk', 'sync'])

    def partitions(self) -> list[dict]:
        """
        Writable block devices on the target that carry a mountable filesystem.

        Returns:
            lsblk entries with path, fstype, ro and mountpoint keys
        """
        devices = lsblk_json(self.config.device, ['PATH', 'FSTYPE', 'RO', 'MOUNTPOINT', 'TYPE'])
        return [
            device for device in devices
            if device.get('fstype')
            and device['fstype'] not in UNMOUNTABLE_FSTYPES
            and not lsblk_flag(device.get('ro'))
        ]

    def free_space(self, mountpoint: Path) -> int:
        stats = os.statvfs(mountpoint)
        return stats.f_bavail * stats.f_frsize

    def _escalate(self, mountpoint: Path) -> bool:
        """Decide whether writes into mountpoint need sudo, validating it once."""
        if not needs_privilege(mountpoint, os.W_OK):
            return False
        if not self.config.sudo:
            raise OperationError(f"{mountpoint} is not writable and privilege escalation is disabled")
        if not self._sudo_validated:
            validate_sudo()
            self._sudo_validated = True
        return True

    def _create_temp_file(self, mountpoint: Path, escalate: bool) -> Path:
        if not escalate:
            fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=mountpoint)
            os.close(fd)
            return Path(name)

        argv = privileged(['mktemp', '-p', str(mountpoint), TEMP_PREFIX + 'XXXXXXXX'], True)
        result = subprocess.run(argv, capture_output=True, text=True, check=True)
        return Path(result.stdout.strip())

    def _remove_file(self, path: Path, escalate: bool):
        if escalate:
            subprocess.run(privileged(['rm', '-f', str(path)], True), check=True)
        else:
            path.unlink(missing_ok=True)

    def _sync(self, path: Path):
        subprocess.run(['sync', '--file-system', str(path)], check=True)

    def _write_zeros(self, path: Path, size: int, escalate: bool):
        """
        Stream size zero bytes into path with pv showing progress.

        Raises:
            OperationError: If pv or the privileged writer fails
        """
        pv_argv = [self.config.pv, '--name', path.name, '--stop-at-size', '--size', str(size), '/dev/zero']
        self._log(f"Writing {format_size(size)} of zeros to {path}")

        if not escalate:
            with open(path, 'wb') as output:
                result = subprocess.run(pv_argv, stdout=output)
            if result.returncode != 0:
                raise OperationError(f"pv exited with status {result.returncode} while writing {path}")
            return

        writer_argv = privileged(['dd', f'of={path}', 'bs=1M', 'status=none'], True)
        with subprocess.Popen(writer_argv, stdin=subprocess.PIPE) as writer:
            result = subprocess.run(pv_argv, stdout=writer.stdin)
            writer.stdin.close()
        if result.returncode != 0:
            raise OperationError(f"pv exited with status {result.returncode} while writing {path}")
        if writer.returncode != 0:
            raise OperationError(f"dd exited with status {writer.returncode} while writing {path}")

    def zero_fill(self, mountpoint: Path, size: int, teardown: TeardownStack):
        """
        Fill size bytes of free space under mountpoint and release them again.

        The temporary file is deleted between two syncs so the zeroed blocks
        end up on disk as free space rather than as an unlinked open file.
        """
        escalate = self._escalate(mountpoint)
        with teardown.acquiring():
            path = self._create_temp_file(mountpoint, escalate)
            teardown.push(f"temporary file {path}", lambda: self._remove_file(path, escalate))

        self._write_zeros(path, size, escalate)
        self._sync(path)
        self._remove_file(path, escalate)
        self._sync(mountpoint)

    def _wash_mounted(self, path: str, mountpoint: Path, teardown: TeardownStack) -> PartitionResult:
        free = self.free_space(mountpoint)
        size = wash_size(free, self.config.margin)
        if not size:
            return PartitionResult(path, SKIPPED,
                                   f"only {format_size(free)} free, margin is {format_size(self.config.margin)}")

        self.console.print(f"[bold blue]{escape(path)}[/] zeroing {format_size(size)} "
                           f"of {format_size(free)} free at {escape(str(mountpoint))}")
        self.zero_fill(mountpoint, size, teardown)
        return PartitionResult(path, WASHED, str(mountpoint), size)

    def wash_partition(self, partition: dict) -> PartitionResult:
        """
        Wash one partition, mounting and unmounting it if needed.

        Errors are turned into a FAILED result instead of propagating, so
        the remaining partitions still get processed.
        A termination signal raises SystemExit where the work was
        interrupted; the mount and temporary file are released on leaving
        the with block, once the writer and its file are closed.
        """
        path = partition['path']
        with TeardownStack(verbose=self.config.verbose) as teardown:
            teardown.install_signal_handlers(unwind=False)
            try:
                mountpoint = partition.get('mountpoint')
                if not mountpoint:
                    self._log(f"Mounting {path}")
                    with teardown.acquiring():
                        mountpoint = self.udisks.mount(path, read_only=False)
                        teardown.push(f"mount {mountpoint}", lambda: self.udisks.unmount(path))
                result = self._wash_mounted(path, Path(mountpoint), teardown)
            except (SquashDiskError, OSError, subprocess.SubprocessError) as e:
                result = PartitionResult(path, FAILED, str(e))

            failures = teardown.unwind()

        if failures and result.status != FAILED:
            description, error = failures[0]
            result = PartitionResult(path, FAILED, f"cannot release {description}: {error}", result.size)
        return result

    def _report(self, result: PartitionResult):
        if result.status == WASHED:
            self.console.print(f"[green]OK[/] {escape(result.path)}: zeroed {format_size(result.size)}")
        elif result.status == SKIPPED:
            self.console.print(f"[yellow]SKIP[/] {escape(result.path)}: {escape(result.detail)}")
        else:
            self._error(f"{result.path}: {result.detail}")

    def run(self) -> list[PartitionResult]:
        """Wash every eligible partition and return one result per partition."""
        self.check_prerequisites()
        partitions = self.partitions()
        if not partitions:
            self.console.print(f"[yellow]No writable filesystems found on {escape(self.config.device)}[/]")
            return []

        results = []
        for partition in partitions:
            result = self.wash_partition(partition)
            self._report(result)
            results.append(result)

        counts = {status: sum(1 for r in results if r.status == status) for status in (WASHED, SKIPPED, FAILED)}
        style = 'red' if counts[FAILED] else 'green'
        self.console.print(f"[{style}]Washed {counts[WASHED]}, skipped {counts[SKIPPED]}, "
                           f"failed {counts[FAILED]} of {len(results)} filesystems[/]")
        return results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wash-free-space',
        description='Overwrite the free space of every filesystem on a device with zeros',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit status is 1 if any filesystem could not be washed.

Examples:
  # Wash all partitions of a USB stick before imaging it
  %(prog)s /dev/sdb

  # Leave 1 GiB free on each filesystem
  %(prog)s --margin 1Gi /dev/sdb
        """
    )

    parser.add_argument(
        'device',
        metavar='DEVICE',
        help='Disk or partition whose filesystems are washed'
    )

    parser.add_argument(
        '-m', '--margin',
        type=size_argument,
        default=DEFAULT_MARGIN,
        metavar='SIZE',
        help=f'Free space left untouched on each filesystem (default: {format_size(DEFAULT_MARGIN)})'
    )

    parser.add_argument(
        '-n', '--no-sudo',
        action='store_true',
        help='Never use sudo to write into mounted filesystems'
    )

    parser.add_argument(
        '--pv',
        default='pv',
        metavar='PATH',
        help='pv binary to use for writing'
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
        help='Log every step'
    )

    return parser


def main():
    """Main entry point for wash-free-space."""
    parser = build_parser()
    args = parser.parse_args()

    if not Path(args.device).exists():
        parser.error(f"Device does not exist: {args.device}")

    config = WashConfig(
        device=args.device,
        margin=args.margin,
        sudo=not args.no_sudo,
        pv=args.pv,
        udisksctl=args.udisksctl,
        verbose=args.verbose,
    )

    washer = FreeSpaceWasher(config)

    try:
        results = washer.run()
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if any(result.status == FAILED for result in results):
        sys.exit(1)


if __name__ == '__main__':
    main()
