#!/usr/bin/env python3
"""
Tests for the SquashDiskMounter state machine and its teardown.
"""

import unittest
import signal
import tempfile
import sys
from io import StringIO
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path to import the module
sys.path.insert(0, str(Path(__file__).parent.parent))

from disk_utils import INNER_IMAGE_NAME, OperationError
from mount_squash_disk import (
    MountConfig,
    SquashDiskMounter,
    INNER_ATTACHED,
    PARTITION_ATTACHED,
    TORN_DOWN,
    main,
)


class FakeUdisks:
    """Records every udisksctl operation and can fail the Nth setup step."""

    def __init__(self, mountpoints: dict, fail_at: int = 0):
        self.mountpoints = mountpoints
        self.fail_at = fail_at
        self.steps = 0
        self.loops = 0
        self.calls = []
        self.attached = {}

    def _setup_step(self, call):
        self.steps += 1
        if self.steps == self.fail_at:
            raise OperationError(f"injected failure in {call[0]}")
        self.calls.append(call)

    def loop_setup(self, path, read_only=True):
        self._setup_step(('loop_setup', str(path)))
        device = f"/dev/loop{self.loops}"
        self.loops += 1
        self.attached[device] = Path(path)
        return device

    def mount(self, device, read_only=True):
        self._setup_step(('mount', device))
        return str(self.mountpoints[device])

    def unmount(self, device):
        self.calls.append(('unmount', device))

    def loop_delete(self, device):
        self.calls.append(('loop_delete', device))


def lsblk_for(inner_paths):
    """Build a fake lsblk_json returning the given inner device paths."""
    def lsblk(device, columns, **kwargs):
        return [
            {'path': path, 'size': 1048576, 'fstype': 'ext4', 'label': 'root', 'uuid': '1234'}
            for path in inner_paths
        ]
    return lsblk


class MounterTestCase(unittest.TestCase):
    """Common fixtures: a container file and a fake mount of it."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = Path(self.temp_dir.name)
        self.container = self.temp_path / "backup.disk.sqsh"
        self.container.write_bytes(b"hsqs")
        self.outer_mount = self.temp_path / "outer"
        self.outer_mount.mkdir()
        (self.outer_mount / INNER_IMAGE_NAME).write_bytes(b"\0" * 512)
        self.partition_mount = self.temp_path / "part"
        self.output = StringIO()

        self.saved_handlers = {
            signum: signal.getsignal(signum)
            for signum in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
        }
        patcher = patch('mount_squash_disk.settle_devices')
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        for signum, handler in self.saved_handlers.items():
            signal.signal(signum, handler)
        self.temp_dir.cleanup()

    def make_udisks(self, fail_at=0) -> FakeUdisks:
        return FakeUdisks({
            '/dev/loop0': self.outer_mount,
            '/dev/loop1': self.partition_mount,
            '/dev/loop1p1': self.partition_mount,
            '/dev/loop1p2': self.partition_mount,
        }, fail_at=fail_at)

    def make_mounter(self, udisks, partition=None) -> SquashDiskMounter:
        config = MountConfig(container=self.container, partition=partition)
        return SquashDiskMounter(config, udisks=udisks, output_stream=self.output)


class TestMounterSetup(MounterTestCase):
    """Tests for the attach and mount sequence."""

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1', '/dev/loop1p1', '/dev/loop1p2']))
    def test_full_sequence_with_partition(self, mock_lsblk):
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks, partition=2)

        mounter.setup()

        self.assertEqual(mounter.state, PARTITION_ATTACHED)
        self.assertEqual(udisks.calls, [
            ('loop_setup', str(self.container)),
            ('mount', '/dev/loop0'),
            ('loop_setup', str(self.outer_mount / INNER_IMAGE_NAME)),
            ('mount', '/dev/loop1p2'),
        ])
        report = self.output.getvalue()
        self.assertIn("outer-loop: /dev/loop0\n", report)
        self.assertIn(f"outer-mount: {self.outer_mount}\n", report)
        self.assertIn("inner-loop: /dev/loop1\n", report)
        self.assertIn("partition: /dev/loop1p2\n", report)
        self.assertIn(f"partition-mount: {self.partition_mount}\n", report)

        mounter.close()

        self.assertEqual(mounter.state, TORN_DOWN)
        self.assertEqual(udisks.calls[4:], [
            ('unmount', '/dev/loop1p2'),
            ('loop_delete', '/dev/loop1'),
            ('unmount', '/dev/loop0'),
            ('loop_delete', '/dev/loop0'),
        ])

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1', '/dev/loop1p1']))
    def test_without_partition_lists_devices(self, mock_lsblk):
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks)

        mounter.setup()

        self.assertEqual(mounter.state, INNER_ATTACHED)
        self.assertEqual(len(udisks.calls), 3)
        report = self.output.getvalue()
        self.assertIn("device: /dev/loop1p1 size=1048576 fstype=ext4 label=root uuid=1234\n", report)
        mounter.close()

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1']))
    def test_partition_zero_mounts_inner_image(self, mock_lsblk):
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks, partition=0)

        mounter.setup()

        self.assertEqual(udisks.calls[-1], ('mount', '/dev/loop1'))
        mounter.close()

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1', '/dev/loop1p1']))
    def test_missing_partition_tears_down_both_loops(self, mock_lsblk):
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks, partition=3)

        with self.assertRaises(OperationError) as cm:
            mounter.setup()
        self.assertIn("Partition 3 not found", str(cm.exception))

        mounter.close()

        self.assertEqual(udisks.calls[3:], [
            ('loop_delete', '/dev/loop1'),
            ('unmount', '/dev/loop0'),
            ('loop_delete', '/dev/loop0'),
        ])

    def test_missing_inner_image(self):
        (self.outer_mount / INNER_IMAGE_NAME).unlink()
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks)

        with self.assertRaises(OperationError):
            mounter.setup()
        mounter.close()

        self.assertEqual(udisks.calls[2:], [('unmount', '/dev/loop0'), ('loop_delete', '/dev/loop0')])

    def test_missing_container(self):
        self.container.unlink()
        udisks = self.make_udisks()

        with self.assertRaises(OperationError):
            self.make_mounter(udisks).setup()
        self.assertEqual(udisks.calls, [])

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1', '/dev/loop1p1']))
    def test_failure_after_n_steps_releases_exactly_n(self, mock_lsblk):
        acquired = [
            ('loop_delete', '/dev/loop0'),
            ('unmount', '/dev/loop0'),
            ('loop_delete', '/dev/loop1'),
            ('unmount', '/dev/loop1p1'),
        ]
        for succeeded in range(4):
            with self.subTest(succeeded=succeeded):
                self.output = StringIO()
                udisks = self.make_udisks(fail_at=succeeded + 1)
                mounter = self.make_mounter(udisks, partition=1)

                with self.assertRaises(OperationError):
                    mounter.setup()
                mounter.close()

                releases = udisks.calls[succeeded:]
                self.assertEqual(releases, list(reversed(acquired[:succeeded])))

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1', '/dev/loop1p1']))
    def test_close_twice(self, mock_lsblk):
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks, partition=1)
        mounter.setup()

        mounter.close()
        mounter.close()

        self.assertEqual(len([c for c in udisks.calls if c[0] in ('unmount', 'loop_delete')]), 4)


class TestMounterRun(MounterTestCase):
    """Tests for run(): blocking and signal-driven teardown."""

    @patch('mount_squash_disk.lsblk_json', side_effect=lsblk_for(['/dev/loop1', '/dev/loop1p1']))
    def test_two_signals_one_teardown(self, mock_lsblk):
        udisks = self.make_udisks()
        mounter = self.make_mounter(udisks, partition=1)

        def wait():
            try:
                signal.raise_signal(signal.SIGTERM)
            finally:
                signal.raise_signal(signal.SIGTERM)

        with patch.object(mounter, 'wait', side_effect=wait):
            with self.assertRaises(SystemExit) as cm:
                mounter.run()

        self.assertEqual(cm.exception.code, 128 + signal.SIGTERM)
        self.assertEqual(udisks.calls[4:], [
            ('unmount', '/dev/loop1p1'),
            ('loop_delete', '/dev/loop1'),
            ('unmount', '/dev/loop0'),
            ('loop_delete', '/dev/loop0'),
        ])

    def test_signal_during_attach_releases_new_device(self):
        udisks = self.make_udisks()
        loop_setup = udisks.loop_setup

        def interrupted_loop_setup(path, read_only=True):
            device = loop_setup(path, read_only)
            signal.raise_signal(signal.SIGTERM)
            return device

        udisks.loop_setup = interrupted_loop_setup
        mounter = self.make_mounter(udisks)

        with self.assertRaises(SystemExit) as cm:
            mounter.run()

        self.assertEqual(cm.exception.code, 128 + signal.SIGTERM)
        self.assertEqual(udisks.calls, [('loop_setup', str(self.container)), ('loop_delete', '/dev/loop0')])
        self.assertEqual(mounter.state, TORN_DOWN)

    def test_setup_failure_tears_down(self):
        udisks = self.make_udisks(fail_at=2)
        mounter = self.make_mounter(udisks)

        with self.assertRaises(OperationError):
            mounter.run()

        self.assertEqual(udisks.calls, [('loop_setup', str(self.container)), ('loop_delete', '/dev/loop0')])
        self.assertEqual(mounter.state, TORN_DOWN)


class TestMountMain(unittest.TestCase):
    """Tests for command-line handling of mount-squash-disk."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.container = Path(self.temp_dir.name) / "c.disk.sqsh"
        self.container.write_bytes(b"hsqs")

    def tearDown(self):
        self.temp_dir.cleanup()

    def run_main(self, argv):
        with patch('sys.argv', ['mount-squash-disk'] + argv):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()
        return cm.exception.code

    def test_negative_partition(self):
        self.assertEqual(self.run_main([str(self.container), '-1']), 2)

    def test_non_integer_partition(self):
        self.assertEqual(self.run_main([str(self.container), 'first']), 2)

    def test_nonexistent_container(self):
        self.assertEqual(self.run_main([str(self.container) + '.missing']), 2)

    @patch('mount_squash_disk.SquashDiskMounter')
    def test_operational_error_exit_status(self, mock_mounter_class):
        mock_mounter_class.return_value.run.side_effect = OperationError("udisksctl mount failed")
        self.assertEqual(self.run_main([str(self.container), '1']), 1)

        config = mock_mounter_class.call_args[0][0]
        self.assertEqual(config.partition, 1)
        self.assertEqual(config.container, self.container)


if __name__ == '__main__':
    unittest.main()
