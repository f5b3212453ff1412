"""
Loop device and mount management through udisksctl.

udisksctl lets an unprivileged desktop user attach and mount images via
polkit, and reports the device node or mount point it picked on stdout.
"""

import re
import subprocess
import sys
from pathlib import Path

from disk_utils import OperationError, timestamped

_MAPPED_PATTERN = re.compile(r'^Mapped file .* as (?P<device>/dev/\S+?)\.?\s*$', re.MULTILINE)
_MOUNTED_PATTERN = re.compile(r'^Mounted (?P<device>\S+) at (?P<mountpoint>.+?)\.?\s*$', re.MULTILINE)


class Udisks:
    """Thin wrapper around the udisksctl command line client."""

    def __init__(self, udisksctl: str = 'udisksctl', verbose: bool = False):
        self.udisksctl = udisksctl
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(timestamped(message), file=sys.stderr)

    def _run(self, *args: str) -> str:
        argv = [self.udisksctl, *args, '--no-user-interaction']
        self._log(' '.join(argv))
        try:
            result = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            raise OperationError(f"Cannot run {self.udisksctl}: {e}")

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            raise OperationError(f"udisksctl {args[0]} failed: {detail}")
        return result.stdout

    def loop_setup(self, path: Path, read_only: bool = True) -> str:
        """
        Attach a file as a loop device.

        Args:
            path: File to expose as a block device
            read_only: Attach the loop device read-only

        Returns:
            The loop device path, e.g. /dev/loop3
        """
        args = ['loop-setup', '--file', str(path)]
        if read_only:
            args.append('--read-only')
        output = self._run(*args)

        match = _MAPPED_PATTERN.search(output)
        if not match:
            raise OperationError(f"Cannot find loop device in udisksctl output: {output.strip()!r}")
        return match.group('device')

    def loop_delete(self, device: str) -> None:
        self._run('loop-delete', '--block-device', device)

    def mount(self, device: str, read_only: bool = True) -> str:
        """
        Mount a block device at a mount point chosen by udisks.

        Returns:
            The mount point directory
        """
        args = ['mount', '--block-device', device]
        if read_only:
            args.extend(['--options', 'ro'])
        output = self._run(*args)

        match = _MOUNTED_PATTERN.search(output)
        if not match:
            raise OperationError(f"Cannot find mount point in udisksctl output: {output.strip()!r}")
        return match.group('mountpoint')

    def unmount(self, device: str) -> None:
        self._run('unmount', '--block-device', device)
