#!/usr/bin/env python3
"""
Squash Disk - Packs a disk, partition or file into a loop-mountable container

The source is streamed through pv into a pseudo file named disk.img inside a
freshly built SquashFS image. Partition tables, SMART data and the lsblk view
of a source device are stored next to it when they can be collected. Use
mount-squash-disk to attach the result again.
"""

import argparse
import grp
import os
import pwd
import re
import stat
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import NamedTuple, Optional

from disk_utils import (
    INNER_IMAGE_NAME,
    OperationError,
    PreconditionError,
    lsblk_json,
    needs_privilege,
    privileged,
    require_tools,
    shell_join,
    size_argument,
    timestamped,
    validate_sudo,
)

OUTPUT_SUFFIX = '.disk.sqsh'
DEFAULT_COMPRESSOR = 'zstd'
DEFAULT_MODE = 0o444
DIAGNOSTIC_MODE = 0o444
DIAGNOSTIC_TIMEOUT = 120

# -root-uid and -root-gid first appeared in mksquashfs 4.5
MIN_MKSQUASHFS_VERSION = (4, 5)


class BuildConfig(NamedTuple):
    """Options for one container build, fixed once parsed."""
    source: str  # device path, file path, or '-' for stdin
    output: Optional[Path] = None
    output_dir: Optional[Path] = None
    force: bool = False
    sudo: bool = True
    size: int = 0  # 0 means copy everything
    buffer_size: Optional[int] = None
    rate_limit: Optional[int] = None
    compressor: str = DEFAULT_COMPRESSOR
    include_dir: Optional[Path] = None
    uid: int = 0
    gid: int = 0
    mode: int = DEFAULT_MODE
    pv: str = 'pv'
    mksquashfs: str = 'mksquashfs'
    diagnostics: bool = True
    overwrite: bool = False
    verbose: bool = False


class CopyCommand(NamedTuple):
    """The pv invocation that produces the content of disk.img."""
    argv: tuple[str, ...]

    def render(self) -> str:
        return shell_join(self.argv)


class DiagnosticTask(NamedTuple):
    """A best-effort command whose stdout is stored in the container."""
    name: str
    argv: tuple[str, ...]
    escalate: bool


class SquashDiskBuilder:
    """Builds a container holding one source as disk.img."""

    def __init__(self, config: BuildConfig):
        self.config = config
        self.verbose = config.verbose
        self.is_stdin = config.source == '-'
        self.source = None if self.is_stdin else Path(config.source)
        self._device_cache: dict[str, dict] = {}

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        if self.verbose:
            print(timestamped(message), file=sys.stderr)

    def is_block_device(self) -> bool:
        if self.is_stdin:
            return False
        try:
            return stat.S_ISBLK(os.stat(self.source).st_mode)
        except OSError:
            return False

    def needs_sudo(self) -> bool:
        """Return True if the source can only be read with elevated privileges."""
        if self.is_stdin or os.geteuid() == 0:
            return False
        return needs_privilege(self.source, os.R_OK)

    def mksquashfs_version(self) -> tuple[int, ...]:
        """
        Ask mksquashfs for its version.

        Returns:
            Version components, e.g. (4, 6, 1)

        Raises:
            PreconditionError: If the version cannot be determined
        """
        try:
            result = subprocess.run([self.config.mksquashfs, '-version'],
                                    capture_output=True, text=True)
        except OSError as e:
            raise PreconditionError(f"Cannot run {self.config.mksquashfs}: {e}")

        match = re.search(r'version\s+(\d+)\.(\d+)(?:\.(\d+))?', result.stdout + result.stderr)
        if not match:
            raise PreconditionError(f"Cannot determine the version of {self.config.mksquashfs}")
        return tuple(int(part) for part in match.groups() if part is not None)

    def check_prerequisites(self):
        """
        Verify tools, tool versions and inputs before anything is touched.

        Raises:
            PreconditionError: On the first unmet requirement
        """
        require_tools([self.config.pv, self.config.mksquashfs, 'lsblk'])

        version = self.mksquashfs_version()
        if version < MIN_MKSQUASHFS_VERSION:
            found = '.'.join(str(part) for part in version)
            wanted = '.'.join(str(part) for part in MIN_MKSQUASHFS_VERSION)
            raise PreconditionError(f"mksquashfs {found} is too old, version {wanted} or later is required")
        self._log(f"Using mksquashfs {'.'.join(str(part) for part in version)}")

        if not self.is_stdin and not self.source.exists():
            raise PreconditionError(f"Source does not exist: {self.source}")
        if not self.is_stdin and '\n' in os.path.abspath(self.source):
            raise PreconditionError(f"Source path contains a newline: {self.source!r}")

        include_dir = self.config.include_dir
        if include_dir is not None:
            if not include_dir.is_dir():
                raise PreconditionError(f"Include path is not a directory: {include_dir}")
            inner = include_dir / INNER_IMAGE_NAME
            if inner.exists() or inner.is_symlink():
                raise PreconditionError(f"Include directory already contains {INNER_IMAGE_NAME}: {include_dir}")

        if self.needs_sudo() and not self.config.sudo:
            raise PreconditionError(f"Cannot read {self.source} and privilege escalation is disabled")

    def check_not_mounted(self):
        """
        Refuse to image a device while it or any of its partitions is mounted.

        Raises:
            PreconditionError: If something is mounted and --force was not given
        """
        if self.config.force or not self.is_block_device():
            return

        mounted = [
            f"{device.get('path')} on {device.get('mountpoint')}"
            for device in lsblk_json(self.source, ['PATH', 'MOUNTPOINT'])
            if device.get('mountpoint')
        ]
        if mounted:
            raise PreconditionError(
                f"{self.source} is in use ({', '.join(mounted)}); unmount it first or use --force"
            )

    def _device_info(self, device) -> dict:
        key = str(device)
        if key not in self._device_cache:
            columns = ['NAME', 'PATH', 'TYPE', 'SIZE', 'VENDOR', 'MODEL', 'SERIAL', 'PKNAME']
            devices = lsblk_json(device, columns)
            if not devices:
                raise OperationError(f"lsblk returned nothing for {device}")
            self._device_cache[key] = devices[0]
        return self._device_cache[key]

    def _parent_device(self) -> Optional[str]:
        info = self._device_info(self.source)
        if info.get('type') == 'part' and info.get('pkname'):
            return f"/dev/{info['pkname']}"
        return None

    def source_size(self) -> Optional[int]:
        """
        Length of the source, used to drive the pv progress display.

        Returns:
            The explicit --size, the device or file length, or None when it
            cannot be determined (stdin, or lsblk failing)
        """
        if self.config.size:
            return self.config.size
        if self.is_stdin:
            return None
        if self.is_block_device():
            try:
                return int(self._device_info(self.source)['size'])
            except (OperationError, KeyError, TypeError, ValueError) as e:
                self._log(f"Cannot determine size of {self.source}: {e}")
                return None
        return self.source.stat().st_size

    def device_identity(self) -> str:
        """
        Build a file name stem from the device's vendor, model and serial.

        Partitions use the identity of their parent disk plus the partition
        name, since lsblk reports no model or serial for them.
        """
        info = self._device_info(self.source)
        parent = self._parent_device()
        if parent is not None:
            identity = self._identity_of(self._device_info(parent))
            identity = f"{identity}_{info.get('name')}" if identity else ''
        else:
            identity = self._identity_of(info)

        if not identity:
            identity = info.get('name') or self.source.name
        return re.sub(r'[\s/]+', '_', identity)

    @staticmethod
    def _identity_of(info: dict) -> str:
        parts = [(info.get(column) or '').strip() for column in ('vendor', 'model', 'serial')]
        return '_'.join(part for part in parts if part)

    def default_output_name(self) -> str:
        if self.is_stdin:
            stem = 'stdin'
        elif self.is_block_device():
            try:
                stem = self.device_identity()
            except OperationError as e:
                self._log(f"Cannot read device identity: {e}")
                stem = self.source.name
        else:
            stem = self.source.name
        return stem + OUTPUT_SUFFIX

    def output_path(self) -> Path:
        if self.config.output is not None:
            return self.config.output
        output_dir = self.config.output_dir if self.config.output_dir is not None else Path.cwd()
        return output_dir / self.default_output_name()

    def check_output(self, output: Path):
        """
        Raises:
            PreconditionError: If the output cannot or must not be written
        """
        if not output.parent.is_dir():
            raise PreconditionError(f"Output directory does not exist: {output.parent}")
        if not self.is_stdin and output.resolve() == self.source.resolve():
            raise PreconditionError(f"Output would overwrite the source: {output}")
        if output.exists() and not self.config.overwrite:
            raise PreconditionError(f"Output file already exists: {output} (use --overwrite to replace it)")

    def copy_command(self, size: Optional[int]) -> CopyCommand:
        """
        Build the pv invocation that streams the source into disk.img.

        Args:
            size: Known length of the source for the progress display, or None
        """
        argv = [self.config.pv, '--name', INNER_IMAGE_NAME]
        if self.config.size:
            argv += ['--stop-at-size', '--size', str(self.config.size)]
        elif size:
            argv += ['--size', str(size)]
        if self.config.buffer_size:
            argv += ['--buffer-size', str(self.config.buffer_size)]
        if self.config.rate_limit:
            argv += ['--rate-limit', str(self.config.rate_limit)]
        if self.config.force:
            argv.append('--skip-errors')
        if not self.is_stdin:
            argv.append(os.path.abspath(self.source))

        return CopyCommand(tuple(privileged(argv, self.needs_sudo())))

    def diagnostic_tasks(self) -> list[DiagnosticTask]:
        if not self.config.diagnostics or not self.is_block_device():
            return []

        device = str(self.source)
        try:
            disk = self._parent_device() or device
        except OperationError:
            disk = device

        escalate_read = self.config.sudo and self.needs_sudo()
        escalate_root = self.config.sudo and os.geteuid() != 0
        return [
            DiagnosticTask('lsblk.txt', ('lsblk', '--output-all', device), False),
            DiagnosticTask('fdisk.txt', ('fdisk', '--list', device), escalate_read),
            DiagnosticTask('sfdisk.dump', ('sfdisk', '--dump', device), escalate_read),
            DiagnosticTask('smartctl.txt', ('smartctl', '--xall', disk), escalate_root),
        ]

    def collect_diagnostics(self, staging: Path) -> list[tuple[str, Path]]:
        """
        Run each diagnostic task and keep whatever output it produced.

        Failures never abort the build; sudo is used non-interactively, so a
        task needing a password that is not cached is simply skipped.

        Returns:
            (name in container, staged file) for every task with output
        """
        collected = []
        for task in self.diagnostic_tasks():
            argv = privileged(task.argv, task.escalate, interactive=False)
            self._log(f"Collecting {task.name}: {' '.join(argv)}")
            try:
                result = subprocess.run(argv, capture_output=True, timeout=DIAGNOSTIC_TIMEOUT)
            except (OSError, subprocess.SubprocessError) as e:
                self._log(f"Skipping {task.name}: {e}")
                continue

            if not result.stdout:
                self._log(f"Skipping {task.name}: {task.argv[0]} exited with status {result.returncode}")
                continue

            staging.mkdir(parents=True, exist_ok=True)
            path = staging / task.name
            path.write_bytes(result.stdout)
            collected.append((task.name, path))
        return collected

    def pseudo_definitions(self, copy: CopyCommand, diagnostics: list[tuple[str, Path]]) -> list[str]:
        """
        Lines for the mksquashfs pseudo file (-pf).

        Each line is "name f mode uid gid command"; mksquashfs runs the
        command through /bin/sh and stores its stdout as the file content.

        Raises:
            PreconditionError: If a path would put a newline into a line
        """
        uid, gid = self.config.uid, self.config.gid
        lines = [f"{INNER_IMAGE_NAME} f {self.config.mode:o} {uid} {gid} {copy.render()}"]
        for name, path in diagnostics:
            include_dir = self.config.include_dir
            if include_dir is not None and os.path.lexists(include_dir / name):
                self._log(f"Not storing {name}: the include directory already has one")
                continue
            command = shell_join(['cat', str(path)])
            lines.append(f"{name} f {DIAGNOSTIC_MODE:o} {uid} {gid} {command}")
        for line in lines:
            if '\n' in line:
                raise PreconditionError(f"Pseudo file definitions cannot contain newlines: {line!r}")
        return lines

    def mksquashfs_command(self, root: Path, output: Path, pseudo_file: Path) -> list[str]:
        uid, gid = str(self.config.uid), str(self.config.gid)
        argv = [
            self.config.mksquashfs, str(root), str(output),
            '-noappend',
            '-comp', self.config.compressor,
            '-root-uid', uid, '-root-gid', gid,
            '-force-uid', uid, '-force-gid', gid,
            '-pf', str(pseudo_file),
        ]
        if self.verbose:
            argv.append('-info')
        return argv

    def _run_mksquashfs(self, argv: list[str]) -> int:
        """
        Run mksquashfs in the foreground and return its exit status.

        SIGINT reaches mksquashfs directly through the terminal's process
        group; this process keeps waiting until the tool has exited and only
        then re-raises the interrupt.
        """
        process = subprocess.Popen(argv)
        interrupted = False
        while True:
            try:
                returncode = process.wait()
                break
            except KeyboardInterrupt:
                interrupted = True
        if interrupted:
            raise KeyboardInterrupt
        return returncode

    def build(self) -> Path:
        """
        Build the container.

        Returns:
            Path of the container that was written

        Raises:
            PreconditionError: If a check fails before work begins
            OperationError: If mksquashfs fails
        """
        self.check_prerequisites()
        self.check_not_mounted()

        output = self.output_path()
        self.check_output(output)

        if self.needs_sudo():
            self._log(f"{self.source} is not readable, pv will run through sudo")
            validate_sudo()
        elif any(task.escalate for task in self.diagnostic_tasks()):
            try:
                validate_sudo()
            except PreconditionError as e:
                self._log(f"Escalated diagnostics will be skipped: {e}")

        size = self.source_size()
        copy = self.copy_command(size)
        self._log(f"Copy command: {copy.render()}")

        with tempfile.TemporaryDirectory(prefix='squash-disk-') as staging_name:
            staging = Path(staging_name)
            if self.config.include_dir is not None:
                root = self.config.include_dir
            else:
                root = staging / 'root'
                root.mkdir()

            diagnostics = self.collect_diagnostics(staging / 'diagnostics')

            pseudo_file = staging / 'pseudo'
            pseudo_file.write_text('\n'.join(self.pseudo_definitions(copy, diagnostics)) + '\n')

            argv = self.mksquashfs_command(root, output, pseudo_file)
            self._log(f"Building {output}: {' '.join(argv)}")
            returncode = self._run_mksquashfs(argv)

        if returncode != 0:
            raise OperationError(f"mksquashfs exited with status {returncode}")
        self._log(f"Container written to {output}")
        return output


def user_argument(text: str) -> int:
    """argparse type: user name or numeric uid."""
    if text.isdigit():
        return int(text)
    try:
        return pwd.getpwnam(text).pw_uid
    except KeyError:
        raise argparse.ArgumentTypeError(f"unknown user: {text}")


def group_argument(text: str) -> int:
    """argparse type: group name or numeric gid."""
    if text.isdigit():
        return int(text)
    try:
        return grp.getgrnam(text).gr_gid
    except KeyError:
        raise argparse.ArgumentTypeError(f"unknown group: {text}")


def mode_argument(text: str) -> int:
    """argparse type: octal permission bits."""
    try:
        mode = int(text, 8)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid octal mode: {text}")
    if not 0 <= mode <= 0o7777:
        raise argparse.ArgumentTypeError(f"mode out of range: {text}")
    return mode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='squash-disk',
        description='Pack a disk, partition or file into a compressed, loop-mountable container',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Sizes accept decimal (K, M, G, T) and binary (Ki, Mi, Gi, Ti) suffixes.

Examples:
  # Pack a whole disk into ./<vendor>_<model>_<serial>.disk.sqsh
  %(prog)s /dev/sdb

  # Pack the first 8 GiB of a disk image at 50 MB/s
  %(prog)s --size 8Gi --rate-limit 50M disk.raw -o disk.sqsh

  # Pack from a pipe
  zcat backup.img.gz | %(prog)s - -o backup.disk.sqsh
        """
    )

    parser.add_argument(
        'source',
        metavar='SOURCE',
        help="Block device or file to pack, or '-' for stdin"
    )

    parser.add_argument(
        '-f', '--force',
        action='store_true',
        help='Pack even if the source has mounted partitions, and skip unreadable regions'
    )

    parser.add_argument(
        '-n', '--no-sudo',
        action='store_true',
        help='Never use sudo to read the source'
    )

    parser.add_argument(
        '-s', '--size',
        type=size_argument,
        default=0,
        metavar='SIZE',
        help='Copy at most SIZE bytes of the source (default: 0, which means everything)'
    )

    parser.add_argument(
        '-b', '--buffer-size',
        type=size_argument,
        metavar='SIZE',
        help='Buffer size used by pv for the copy'
    )

    parser.add_argument(
        '-L', '--rate-limit',
        type=size_argument,
        metavar='SIZE',
        help='Limit the copy to SIZE bytes per second'
    )

    parser.add_argument(
        '-c', '--compressor',
        default=DEFAULT_COMPRESSOR,
        metavar='ALG',
        help=f'mksquashfs compression algorithm (default: {DEFAULT_COMPRESSOR})'
    )

    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument(
        '-o', '--output',
        type=Path,
        metavar='FILE',
        help='Write the container to FILE'
    )
    output_group.add_argument(
        '-d', '--output-dir',
        type=Path,
        metavar='DIR',
        help='Write the container to DIR under its default name'
    )

    parser.add_argument(
        '-i', '--include',
        type=Path,
        metavar='DIR',
        help='Use the tree under DIR as the root of the container'
    )

    parser.add_argument(
        '--owner',
        type=user_argument,
        metavar='USER',
        help='Owner of every file in the container (default: invoking user)'
    )

    parser.add_argument(
        '--group',
        type=group_argument,
        metavar='GROUP',
        help="Group of every file in the container (default: invoking user's group)"
    )

    parser.add_argument(
        '--mode',
        type=mode_argument,
        default=DEFAULT_MODE,
        metavar='OCTAL',
        help=f'Permission bits of {INNER_IMAGE_NAME} (default: {DEFAULT_MODE:o})'
    )

    parser.add_argument(
        '--pv',
        default='pv',
        metavar='PATH',
        help='pv binary to use for the copy'
    )

    parser.add_argument(
        '--mksquashfs',
        default='mksquashfs',
        metavar='PATH',
        help='mksquashfs binary to use'
    )

    parser.add_argument(
        '--no-diagnostics',
        action='store_true',
        help='Do not store partition tables and SMART data in the container'
    )

    parser.add_argument(
        '--overwrite',
        action='store_true',
        help='Replace the output file if it exists'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped progress messages to stderr'
    )

    return parser


def main():
    """Main entry point for squash-disk."""
    parser = build_parser()
    args = parser.parse_args()

    if args.source != '-' and not Path(args.source).exists():
        parser.error(f"Source does not exist: {args.source}")

    config = BuildConfig(
        source=args.source,
        output=args.output,
        output_dir=args.output_dir,
        force=args.force,
        sudo=not args.no_sudo,
        size=args.size,
        buffer_size=args.buffer_size,
        rate_limit=args.rate_limit,
        compressor=args.compressor,
        include_dir=args.include,
        uid=args.owner if args.owner is not None else os.getuid(),
        gid=args.group if args.group is not None else os.getgid(),
        mode=args.mode,
        pv=args.pv,
        mksquashfs=args.mksquashfs,
        diagnostics=not args.no_diagnostics,
        overwrite=args.overwrite,
        verbose=args.verbose,
    )

    builder = SquashDiskBuilder(config)

    try:
        output = builder.build()
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(output)


if __name__ == '__main__':
    main()
