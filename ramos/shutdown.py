"""
Safe Shutdown Sequencer.

Shared by process 1 (on SIGTERM/SIGINT/SIGUSR1) and by the /sbin/reboot,
/sbin/poweroff and /sbin/halt wrappers inside the RAM system. Pools are
exported before anything else is unmounted because ZFS manages its own
mounts; every export and unmount may fail without stopping the sequence.
"""

import os
import sys

from .console import print_status, print_success, print_warning, run_command

# Never unmounted: the RAM root and the virtual filesystems the shutdown itself needs
ESSENTIAL_MOUNTS = frozenset(["/", "/proc", "/sys", "/dev", "/run", "/tmp"])

ACTIONS = {"reboot": "reboot", "poweroff": "poweroff", "halt": "poweroff"}


def _unescape(field):
    # /proc/mounts octal-escapes space, tab, newline and backslash
    return (field.replace("\\040", " ").replace("\\011", "\t")
            .replace("\\012", "\n").replace("\\134", "\\"))


def read_mountpoints(mounts_file="/proc/mounts"):
    """Mount points in mount order."""
    try:
        with open(mounts_file) as f:
            lines = f.read().splitlines()
    except OSError:
        return []
    return [_unescape(line.split()[1]) for line in lines if len(line.split()) >= 2]


class ShutdownSequencer:
    def __init__(self, runner=run_command, mounts_file="/proc/mounts", sync=os.sync):
        self.runner = runner
        self.mounts_file = mounts_file
        self.sync = sync
        self.events = []

    def _call(self, cmd):
        self.events.append(" ".join(cmd))
        try:
            return self.runner(cmd)
        except OSError as e:
            print_warning(f"{cmd[0]}: {e}")
            return None

    def flush(self):
        self.events.append("sync")
        try:
            self.sync()
        except OSError as e:
            print_warning(f"sync failed: {e}")

    def list_pools(self):
        result = self._call(["zpool", "list", "-H", "-o", "name"])
        if result is None or result.returncode != 0:
            return []
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def export_pools(self):
        exported = []
        pools = self.list_pools()
        if pools:
            print_status("Exporting ZFS pools...")
        for pool in pools:
            result = self._call(["zpool", "export", pool])
            if result is not None and result.returncode == 0:
                print_success(f"Exported pool: {pool}")
                exported.append(pool)
            else:
                print_warning(f"Failed to export pool: {pool}")
        return exported

    def unmount_all(self):
        """Unmount non-essential filesystems, most recently mounted first."""
        unmounted = []
        print_status("Unmounting filesystems...")
        for mountpoint in reversed(read_mountpoints(self.mounts_file)):
            if mountpoint in ESSENTIAL_MOUNTS or mountpoint in unmounted:
                continue
            result = self._call(["umount", mountpoint])
            if result is not None and result.returncode == 0:
                print_success(f"Unmounted {mountpoint}")
                unmounted.append(mountpoint)
        return unmounted

    def terminate(self, action):
        print_status("Rebooting..." if action == "reboot" else "Powering off...")
        # busybox directly: /sbin/reboot and /sbin/poweroff are these wrappers
        self._call(["busybox", action, "-f"])

    def run(self, action):
        if action not in ("reboot", "poweroff"):
            raise ValueError(f"unknown shutdown action: {action}")
        print_status(f"Initiating safe {action}...")
        self.flush()
        self.export_pools()
        self.unmount_all()
        self.flush()
        print_status("Shutdown complete.")
        self.terminate(action)


def main(argv=None):
    """Entry point of the reboot/poweroff/halt wrappers."""
    argv = argv or sys.argv
    action = ACTIONS.get(os.path.basename(argv[0]))
    if action is None and len(argv) > 1:
        action = ACTIONS.get(argv[1])
    if action is None:
        print_warning("usage: reboot | poweroff | halt")
        return 2
    ShutdownSequencer().run(action)
    return 0
