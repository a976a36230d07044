"""
Init Controller: process 1 of the RAM system.

Walks a fixed sequence of states

    MOUNT_VFS -> LOAD_MODULES -> SETUP_NETWORK -> IMPORT_STORAGE
              -> START_SERVICES -> IDLE -> SHUTTING_DOWN -> REBOOT | POWEROFF

Only MOUNT_VFS may stop the sequence; every later state logs its failures and
hands over to the next one, because reaching an interactive console (and ssh)
is the whole point of this system. SHUTTING_DOWN is entered only from a signal:
SIGTERM/SIGINT reboot, SIGUSR1 powers off.

Standard library only.
"""

import enum
import os
import shutil
import signal
import subprocess
import sys
import time

from . import netreplay
from .config import BootConfig
from .console import print_banner, print_error, print_status, print_success, print_warning, run_command
from .errors import RuntimeFatal
from .shutdown import ShutdownSequencer

RUNTIME_DIR = "/usr/lib/ramos"
RESOLV_CONF = "/etc/resolv.conf"
KEYMAP_CACHE = "/etc/console-setup/cached_UTF-8_del.kmap.gz"

VIRTUAL_FILESYSTEMS = (
    # (fstype, target, options)
    ("proc", "/proc", None),
    ("sysfs", "/sys", None),
    ("devtmpfs", "/dev", None),
    ("devpts", "/dev/pts", None),
)

SIGNAL_ACTIONS = {
    signal.SIGTERM: "reboot",
    signal.SIGINT: "reboot",
    signal.SIGUSR1: "poweroff",
}


class State(enum.Enum):
    MOUNT_VFS = "mount_vfs"
    LOAD_MODULES = "load_modules"
    SETUP_NETWORK = "setup_network"
    IMPORT_STORAGE = "import_storage"
    START_SERVICES = "start_services"
    IDLE = "idle"
    SHUTTING_DOWN = "shutting_down"
    REBOOT = "reboot"
    POWEROFF = "poweroff"


BOOT_SEQUENCE = (
    State.MOUNT_VFS,
    State.LOAD_MODULES,
    State.SETUP_NETWORK,
    State.IMPORT_STORAGE,
    State.START_SERVICES,
)


class InitController:
    def __init__(self, config=None, runner=run_command, root="/", sequencer=None,
                 cmdline_path="/proc/cmdline", sysfs=netreplay.SYSFS_NET):
        self.config = config or BootConfig()
        self.runner = runner
        self.root = root
        self.sequencer = sequencer or ShutdownSequencer(runner=runner)
        self.cmdline_path = cmdline_path
        self.sysfs = sysfs
        self.state = State.MOUNT_VFS
        self.history = []
        self.network_degraded = False
        self.loaded_modules = []
        self.pools_imported = False
        self.console = None

    def _path(self, path):
        return os.path.join(self.root, path.lstrip("/"))

    def _enter(self, state):
        self.state = state
        self.history.append(state)

    # ===== MOUNT_VFS =====

    def mount_vfs(self):
        mounts = list(VIRTUAL_FILESYSTEMS)
        mounts += [("tmpfs", target, f"size={size}" if size else None)
                   for target, size in self.config.tmpfs_mounts]
        for fstype, target, options in mounts:
            os.makedirs(self._path(target), exist_ok=True)
            cmd = ["mount", "-t", fstype]
            if options:
                cmd += ["-o", options]
            cmd += [fstype, target]
            result = self.runner(cmd)
            if result.returncode != 0:
                raise RuntimeFatal(f"mounting {fstype} on {target} failed: {(result.stderr or '').strip()}")
        print_success("Virtual filesystems mounted")

    # ===== LOAD_MODULES =====

    def load_modules(self):
        print_status("Loading kernel modules...")
        for module in self.config.modules:
            result = self.runner(["modprobe", module])
            if result.returncode == 0:
                self.loaded_modules.append(module)
            elif module == "zfs":
                print_warning("ZFS module not available")
        if "zfs" in self.loaded_modules:
            print_success("Loaded ZFS")
        self.setup_keyboard()

    def setup_keyboard(self):
        if not shutil.which("loadkeys"):
            print_status("loadkeys not available, keyboard will use default layout")
            return
        cache = self._path(KEYMAP_CACHE)
        if os.path.isfile(cache):
            result = self.runner(f"zcat {cache} | loadkeys -")
            if result.returncode == 0:
                print_success("Loaded keyboard layout from console-setup")
                return
        print_status("Keyboard uses the default layout")

    # ===== SETUP_NETWORK =====

    def read_cmdline(self):
        try:
            with open(self.cmdline_path) as f:
                return f.read()
        except OSError:
            return ""

    def setup_network(self):
        print_status("Setting up network...")
        netreplay.coldplug(self._path("/sys"))
        self.runner(["ip", "link", "set", "lo", "up"])
        self.runner(["ip", "addr", "add", "127.0.0.1/8", "dev", "lo"])

        script = self._path(self.config.network_script)
        if os.path.isfile(script):
            print_status("Configuring network from captured config...")
            env = dict(os.environ, PYTHONPATH=RUNTIME_DIR)
            ok = self.runner([sys.executable, script], env=env).returncode == 0
        else:
            override = self.cmdline_override()
            if override:
                print_status("Configuring network from kernel command line...")
                record, iface = override
                ok = netreplay.configure_interface(record, iface, self.runner)
            else:
                ok = self.dhcp_first_interface()

        self.ensure_dns()
        if not ok:
            self.network_degraded = True
            print_warning("Network setup failed; console access only")
            return
        for iface, address in netreplay.current_addresses(self.runner):
            print_success(f"{iface}: {address}")

    def cmdline_override(self):
        try:
            return netreplay.record_from_cmdline(netreplay.parse_cmdline(self.read_cmdline()), self.sysfs)
        except ValueError as e:
            print_warning(f"Ignoring malformed ip= on the kernel command line: {e}")
            return None

    def dhcp_first_interface(self):
        print_status("No network config found, falling back to DHCP...")
        candidates = netreplay.first_ethernet(self.sysfs)
        if not candidates:
            print_warning("No Ethernet interface found")
            return False
        iface = candidates[0]
        print_status(f"Found interface: {iface}")
        if netreplay.dhcp(iface, self.config.dhcp_retries, self.config.dhcp_timeout, self.runner):
            print_success("DHCP successful")
            return True
        print_warning("DHCP failed, no IP configured")
        return False

    def ensure_dns(self):
        path = self._path(RESOLV_CONF)
        try:
            with open(path) as f:
                if "nameserver" in f.read():
                    print_status("Using injected DNS configuration")
                    return
        except OSError:
            pass
        with open(path, "w") as f:
            f.write("# DNS configuration for RAM OS\n")
            f.write("".join(f"nameserver {s}\n" for s in self.config.fallback_dns))
        print_status("DNS configured with public resolvers")

    # ===== IMPORT_STORAGE =====

    def import_storage(self):
        print_status("Checking for ZFS pools...")
        if not shutil.which("zpool"):
            print_warning("ZFS tools not available")
            return
        # -N: import without mounting, nothing on the pools is touched
        result = self.runner(["zpool", "import", "-a", "-N"])
        listing = self.runner(["zpool", "list", "-H", "-o", "name"])
        pools = [p for p in (listing.stdout or "").split() if p] if listing.returncode == 0 else []
        self.pools_imported = bool(pools)
        if result.returncode == 0 and pools:
            print_success("Imported ZFS pools: " + ", ".join(pools))
        else:
            print_status("No ZFS pools found")

    # ===== START_SERVICES =====

    def host_keys(self):
        key_dir = self._path(self.config.host_key_dir)
        try:
            return sorted(n for n in os.listdir(key_dir) if n.endswith("_host_key"))
        except OSError:
            return []

    def start_services(self):
        print_status("Starting SSH server...")
        os.makedirs(self._path("/var/run/dropbear"), exist_ok=True)
        os.makedirs(self._path("/root/.ssh"), mode=0o700, exist_ok=True)
        if not self.host_keys():
            print_warning("No SSH host keys found, generating an ephemeral one; "
                          "the host fingerprint will differ from the original server")
            key = os.path.join(self.config.host_key_dir, "dropbear_ed25519_host_key")
            os.makedirs(self._path(self.config.host_key_dir), exist_ok=True)
            result = self.runner(["dropbearkey", "-t", "ed25519", "-f", key])
            if result.returncode != 0:
                print_warning("Failed to generate SSH host key")
        # -E log to stderr, -s no password logins
        result = self.runner(["dropbear", "-E", "-s", "-p", str(self.config.ssh_port)])
        if result.returncode == 0:
            print_success(f"SSH running on port {self.config.ssh_port} "
                          "(key-only authentication, passwords disabled)")
        else:
            print_warning("SSH server failed to start: " + (result.stderr or "").strip())
        self.print_ready()

    def print_ready(self):
        addresses = [a for _, a in netreplay.current_addresses(self.runner)]
        ip = addresses[0] if addresses else "<no address>"
        print_banner("ZFS Installation System Ready")
        print(f"IP Address: {ip}")
        print(f"SSH: ssh root@{ip}" + ("" if self.config.ssh_port == 22 else f" -p {self.config.ssh_port}"))
        print("")
        print("Password authentication is DISABLED; use the key selected at launch.")
        print("")
        print("Available tools:")
        print("  - Disk: sgdisk, parted, mkfs.fat, mkfs.ext4")
        print("  - ZFS: zpool, zfs, zdb, zgenhostid")
        print("  - Package: apt, dpkg, debootstrap")
        print("  - Download: curl, wget, rsync")
        if self.config.installer_path:
            print("")
            print(f"Installation script: {self.config.installer_path}")
        if self.network_degraded:
            print("")
            print_warning("Network is not configured; use the console")
        print("")
        print("Use 'poweroff' or 'reboot' to shut down safely.")

    # ===== sequencing =====

    HANDLERS = {
        State.MOUNT_VFS: "mount_vfs",
        State.LOAD_MODULES: "load_modules",
        State.SETUP_NETWORK: "setup_network",
        State.IMPORT_STORAGE: "import_storage",
        State.START_SERVICES: "start_services",
    }

    def boot(self):
        """Run every boot state in order and stop in IDLE.

        Raises RuntimeFatal if the virtual filesystems cannot be mounted.
        """
        for state in BOOT_SEQUENCE:
            self._enter(state)
            handler = getattr(self, self.HANDLERS[state])
            if state is State.MOUNT_VFS:
                handler()
                continue
            try:
                handler()
            except Exception as e:
                print_warning(f"{state.value}: {e}")
        self._enter(State.IDLE)

    def install_signal_handlers(self):
        for signum in SIGNAL_ACTIONS:
            signal.signal(signum, self._on_signal)

    def _on_signal(self, signum, _frame):
        self.request_shutdown(SIGNAL_ACTIONS[signum])

    def request_shutdown(self, action):
        if self.state is State.SHUTTING_DOWN:
            return
        self._enter(State.SHUTTING_DOWN)
        print("\n=== Shutting down ===")
        try:
            self.sequencer.run(action)
        except Exception as e:
            print_error(f"shutdown sequence failed: {e}")
            self.sequencer.terminate(action)
        self._enter(State.REBOOT if action == "reboot" else State.POWEROFF)

    def spawn_console(self):
        try:
            self.console = subprocess.Popen(["setsid", "cttyhack", self.config.shell, "-l"])
        except OSError as e:
            print_error(f"could not start console shell: {e}")

    def idle(self):
        """Block forever, reaping orphans. Process 1 must never return."""
        self.spawn_console()
        while True:
            try:
                os.waitpid(-1, 0)
            except ChildProcessError:
                time.sleep(3600)


def prepare_environment(config):
    os.environ.update({
        "PATH": "/bin:/sbin:/usr/bin:/usr/sbin",
        "HOME": "/root",
        "LD_LIBRARY_PATH": "/lib:/usr/lib:/lib64:/usr/lib64",
        "SSL_CERT_FILE": "/etc/ssl/certs/ca-certificates.crt",
        "SSL_CERT_DIR": "/etc/ssl/certs",
        "LANG": config.lang,
        "LC_ALL": config.lang,
        "TERM": config.term,
        "NCURSES_NO_UTF8_ACS": "1",
        "PYTHONPATH": RUNTIME_DIR,
    })


def main():
    config = BootConfig.load()
    prepare_environment(config)
    controller = InitController(config)
    controller.install_signal_handlers()
    print_banner("Minimal RAM System")
    try:
        controller.boot()
    except RuntimeFatal as e:
        print_error(f"FATAL: {e}")
        print_error("Boot halted; dropping to an emergency shell")
    except Exception as e:
        print_error(f"init: unexpected error: {e}")
    controller.idle()
