"""
Reverse-order release of loop devices, mounts and temporary files.

Every resource a tool acquires is pushed onto a TeardownStack together with
the callable that releases it. The stack is unwound exactly once, whether
that happens on normal exit, on an exception, or from a termination signal.
"""

import signal
import sys
from contextlib import contextmanager
from typing import Callable, Iterable, Optional

from disk_utils import timestamped

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class TeardownStack:
    """LIFO stack of release callables with a one-shot unwind."""

    def __init__(self, verbose: bool = False, error_stream=None):
        self.verbose = verbose
        self.error_stream = error_stream
        self._releases: list[tuple[str, Callable[[], None]]] = []
        self._unwound = False
        self._previous_handlers: dict[int, object] = {}
        self._unwind_on_signal = True

    def _log(self, message: str):
        if self.verbose:
            print(timestamped(message), file=self.error_stream or sys.stderr)

    def __len__(self) -> int:
        return len(self._releases)

    @property
    def unwound(self) -> bool:
        return self._unwound

    def push(self, description: str, release: Callable[[], None]) -> None:
        """
        Register a resource that has just been acquired.

        Args:
            description: Human readable name used in log and error messages
            release: Zero-argument callable that releases the resource
        """
        if self._unwound:
            raise RuntimeError(f"Cannot register {description}: teardown already ran")
        self._releases.append((description, release))

    def unwind(self, restore_signals: bool = True) -> list[tuple[str, Exception]]:
        """
        Release every registered resource in reverse order of acquisition.

        Only the first call does anything. Signal handlers installed by
        install_signal_handlers() are disarmed before the first release runs,
        so a signal arriving mid-teardown cannot start a second one. A
        release that raises is reported and the remaining releases still run.

        Args:
            restore_signals: Reinstate the handlers that were active before
                install_signal_handlers() once teardown completes

        Returns:
            (description, exception) for each release that failed
        """
        if self._unwound:
            return []
        self._unwound = True
        self._disarm()

        failures = []
        while self._releases:
            description, release = self._releases.pop()
            self._log(f"Releasing {description}")
            try:
                release()
            except Exception as e:
                print(f"Error: failed to release {description}: {e}",
                      file=self.error_stream or sys.stderr)
                failures.append((description, e))

        if restore_signals:
            self._restore_signals()
        return failures

    def install_signal_handlers(self, signals: Iterable[int] = DEFAULT_SIGNALS, unwind: bool = True) -> None:
        """
        Exit with status 128 + signum on any of signals.

        Args:
            signals: Signals to handle
            unwind: Unwind the stack inside the handler. When False the
                handler only disarms and raises SystemExit, so open files
                and child processes in the interrupted frames are closed
                before the owner of the stack unwinds it, e.g. on leaving
                the with block.
        """
        self._unwind_on_signal = unwind
        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame):
        self._log(f"Received signal {signum}, tearing down")
        if self._unwind_on_signal:
            self.unwind(restore_signals=False)
        else:
            self._disarm()
        sys.exit(128 + signum)

    @contextmanager
    def acquiring(self):
        """
        Hold back the handled signals while a resource is acquired and pushed.

        A signal arriving inside the block is delivered when it exits, by
        which time the release is on the stack.
        """
        signals = set(self._previous_handlers)
        if not signals:
            yield
            return
        previous = signal.pthread_sigmask(signal.SIG_BLOCK, signals)
        try:
            yield
        finally:
            signal.pthread_sigmask(signal.SIG_SETMASK, previous)

    def _disarm(self):
        for signum in self._previous_handlers:
            signal.signal(signum, signal.SIG_IGN)

    def _restore_signals(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def __enter__(self) -> 'TeardownStack':
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.unwind()
        return None
