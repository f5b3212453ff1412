"""
Shared helpers for the squash disk tools.

Size parsing, shell quoting for pseudo file commands, external tool lookup,
lsblk queries and privilege escalation. Nothing in here mutates OS state
except validate_sudo(), which refreshes the sudo credential cache.
"""

import argparse
import json
import os
import re
import shutil
import subprocess
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from typing import Iterable, Optional

# Name of the raw image inside every container. squash_disk writes it and
# mount_squash_disk looks for it, so it must never change.
INNER_IMAGE_NAME = 'disk.img'

MiB = 1024 * 1024

_SIZE_PATTERN = re.compile(
    r'^\s*(?P<number>\d+(?:\.\d*)?|\.\d+)\s*(?:(?P<prefix>[KMGTPE])(?P<binary>i)?)?B?\s*$',
    re.IGNORECASE,
)
_SIZE_EXPONENTS = {'K': 1, 'M': 2, 'G': 3, 'T': 4, 'P': 5, 'E': 6}
_IEC_UNITS = ('B', 'KiB', 'MiB', 'GiB', 'TiB', 'PiB', 'EiB')


class SquashDiskError(Exception):
    """Base class for errors reported by the squash disk tools."""


class PreconditionError(SquashDiskError):
    """Raised before any OS state has been changed."""


class OperationError(SquashDiskError):
    """Raised when an attach, mount, copy or compress step fails."""


def parse_size(text: str) -> int:
    """
    Parse a human readable size into a byte count.

    Decimal suffixes (K, M, G, T, P, E) are powers of 1000 and binary
    suffixes (Ki, Mi, Gi, Ti, Pi, Ei) are powers of 1024, matching
    numfmt --from=auto. A trailing B is accepted and ignored. Fractional
    results are rounded up to the next whole byte.

    Args:
        text: Size such as "4096", "1Ki", "1.5G" or "64MiB"

    Returns:
        The size in bytes

    Raises:
        ValueError: If the text is not a valid size

    Examples:
        >>> parse_size("1Ki")
        1024
        >>> parse_size("1K")
        1000
    """
    match = _SIZE_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid size: {text!r}")

    try:
        value = Decimal(match.group('number'))
    except InvalidOperation:
        raise ValueError(f"Invalid size: {text!r}")

    prefix = match.group('prefix')
    if prefix:
        base = 1024 if match.group('binary') else 1000
        value *= base ** _SIZE_EXPONENTS[prefix.upper()]

    return int(value.to_integral_value(rounding=ROUND_CEILING))


def size_argument(text: str) -> int:
    """argparse type wrapper around parse_size()."""
    try:
        return parse_size(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def format_size(size: int) -> str:
    """Render a byte count with IEC units, e.g. 1572864 -> '1.5 MiB'."""
    value = float(size)
    for unit in _IEC_UNITS:
        if abs(value) < 1024 or unit == _IEC_UNITS[-1]:
            if unit == 'B':
                return f"{size} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def shell_quote(text: str) -> str:
    """
    Quote a string so that a POSIX shell reads it back unchanged.

    Everything goes inside single quotes; an embedded single quote is
    written as '"'"' (close quote, double-quoted quote, reopen quote).

    Examples:
        >>> shell_quote("simple")
        "'simple'"
        >>> shell_quote("it's")
        "'it'\\"'\\"'s'"
    """
    if not text:
        return "''"
    return "'" + text.replace("'", "'\"'\"'") + "'"


def shell_join(argv: Iterable[str]) -> str:
    """Render an argument vector as a single shell command line."""
    return ' '.join(shell_quote(str(arg)) for arg in argv)


def timestamped(message: str) -> str:
    """Prefix a progress message with the current time, to the millisecond."""
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
    return f"[{timestamp}] {message}"


def require_tools(tools: Iterable[str]) -> list[str]:
    """
    Resolve external tools on PATH.

    Args:
        tools: Command names or explicit paths

    Returns:
        The resolved paths, in the same order

    Raises:
        PreconditionError: Listing every tool that could not be found
    """
    resolved = []
    missing = []
    for tool in tools:
        path = shutil.which(tool)
        if path is None:
            missing.append(tool)
        else:
            resolved.append(path)

    if missing:
        raise PreconditionError(f"Required tools not found: {', '.join(missing)}")
    return resolved


def lsblk_flag(value) -> bool:
    """Interpret a boolean lsblk column; older lsblk prints "0"/"1" strings."""
    if isinstance(value, str):
        return value.strip() not in ('', '0', 'false')
    return bool(value)


def lsblk_json(device, columns: Iterable[str], lsblk: str = 'lsblk') -> list[dict]:
    """
    List a block device and all of its descendants.

    Args:
        device: Device path to query
        columns: lsblk output columns, e.g. ['PATH', 'FSTYPE']
        lsblk: Path to the lsblk binary

    Returns:
        One dict per device, parent first, with lowercase column names as
        keys and the nested 'children' lists flattened away

    Raises:
        OperationError: If lsblk fails or prints something that is not JSON
    """
    argv = [lsblk, '--json', '--bytes', '--output', ','.join(columns), str(device)]
    try:
        result = subprocess.run(argv, capture_output=True, text=True)
    except OSError as e:
        raise OperationError(f"Cannot run lsblk: {e}")

    if result.returncode != 0:
        raise OperationError(f"lsblk failed for {device}: {result.stderr.strip()}")

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise OperationError(f"Unexpected lsblk output for {device}: {e}")

    devices = []
    pending = list(reversed(data.get('blockdevices', [])))
    while pending:
        entry = dict(pending.pop())
        children = entry.pop('children', None) or []
        devices.append(entry)
        pending.extend(reversed(children))
    return devices


def needs_privilege(path, mode: int = os.R_OK) -> bool:
    """Return True if the invoking user lacks the given access to path."""
    return not os.access(path, mode)


def privileged(argv: Iterable[str], escalate: bool, interactive: bool = True) -> list[str]:
    """
    Prefix a command with sudo when escalation is needed.

    Args:
        argv: Command to run
        escalate: Whether to run it through sudo
        interactive: If False, sudo must not prompt for a password (-n)

    Returns:
        The argument vector to execute
    """
    argv = [str(arg) for arg in argv]
    if not escalate:
        return argv
    prefix = ['sudo'] if interactive else ['sudo', '-n']
    return prefix + ['--'] + argv


def validate_sudo() -> None:
    """
    Refresh the sudo credential cache up front.

    Escalated commands later run inside pipelines where a password prompt
    would be interleaved with progress output.

    Raises:
        PreconditionError: If sudo is unavailable or authentication fails
    """
    try:
        result = subprocess.run(['sudo', '-v'])
    except OSError as e:
        raise PreconditionError(f"Cannot run sudo: {e}")
    if result.returncode != 0:
        raise PreconditionError("sudo authentication failed")


def settle_devices(timeout: Optional[int] = 10) -> None:
    """Wait for udev to finish creating device nodes, if udevadm exists."""
    udevadm = shutil.which('udevadm')
    if udevadm is None:
        return
    try:
        subprocess.run([udevadm, 'settle', f'--timeout={timeout}'], capture_output=True)
    except OSError:
        pass
