"""
Self-Extracting Launcher.

Runs on the host from the bundle's preamble:

    PREFLIGHT -> EXTRACT -> INJECT_IDENTITY -> LOAD_KERNEL -> CONFIRM -> EXECUTE

Everything before EXECUTE works on a scratch copy and leaves the host as it
was; EXECUTE replaces the running kernel and does not come back on success.
"""

import enum
import os
import posixpath
import shutil
import tempfile

import psutil

from . import identity, network, prompts
from .bundle import extract_bundle
from .config import BootConfig, BOOT_CONFIG_PATH
from .console import print_banner, print_stage, print_status, print_success, print_warning, run_command
from .errors import BuildFatal, KernelSwitchError, OperatorAbort
from .packager import extract, read_image, write_image

KERNEL_CMDLINE = "rdinit=/init rw quiet"
LOCKDOWN_PATH = "/sys/kernel/security/lockdown"
SWITCH_TOOLS = ("kexec", "dropbearconvert", "dropbearkey")
LIBRARY_PREFIXES = ("/lib/", "/lib64/", "/usr/lib/", "/usr/lib64/")


class Stage(enum.Enum):
    PREFLIGHT = "preflight"
    EXTRACT = "extract"
    INJECT_IDENTITY = "inject_identity"
    LOAD_KERNEL = "load_kernel"
    CONFIRM = "confirm"
    EXECUTE = "execute"


def lockdown_mode(path=LOCKDOWN_PATH):
    """Selected kernel lockdown mode ("none", "integrity", ...) or None if unknown."""
    try:
        with open(path) as f:
            text = f.read()
    except OSError:
        return None
    start, end = text.find("["), text.find("]")
    return text[start + 1:end] if 0 <= start < end else None


class Launcher:
    def __init__(self, bundle_path, workdir=None, runner=run_command, which=shutil.which,
                 console=None, ssh_dir=identity.SSH_DIR, key_sources=None, addrs=None,
                 lockdown_path=LOCKDOWN_PATH, geteuid=os.geteuid, memory=psutil.virtual_memory,
                 repack_level=1):
        self.bundle_path = bundle_path
        self.workdir = workdir
        self.owns_workdir = False
        self.runner = runner
        self.which = which
        self.console = console
        self.ssh_dir = ssh_dir
        self.key_sources = key_sources
        self.addrs = addrs
        self.lockdown_path = lockdown_path
        self.geteuid = geteuid
        self.memory = memory
        self.repack_level = repack_level

        self.history = []
        self.host_kexec = None
        self.contents = None
        self.tree = None
        self.boot = BootConfig()
        self.tools = None
        self.host_keys = []
        self.trusted_keys = []
        self.interfaces = []

    # ===== STAGE 1 =====

    def preflight(self):
        if self.geteuid() != 0:
            raise BuildFatal("the launcher must run as root")

        self.host_kexec = self.which("kexec")
        if self.host_kexec:
            print_success(f"kexec: {self.host_kexec}")
        else:
            print_status("kexec not installed on the host, will use the copy in the image")

        result = self.runner(["mokutil", "--sb-state"])
        if result.returncode == 0 and "enabled" in (result.stdout or "").lower():
            print_warning("Secure Boot is enabled; kexec may refuse unsigned kernels")

        mode = lockdown_mode(self.lockdown_path)
        if mode and mode != "none":
            print_warning(f"Kernel lockdown is active ({mode}); kexec may be blocked")

        available_mb = self.memory().available // (1024 * 1024)
        if available_mb < self.boot.min_free_memory_mb:
            print_warning(f"Only {available_mb}MB of memory available; the RAM system may not fit")
        else:
            print_success(f"Available memory: {available_mb}MB")

    # ===== STAGE 2 =====

    def extract(self):
        if self.workdir is None:
            self.workdir = tempfile.mkdtemp(prefix="ramos-")
            self.owns_workdir = True
        self.contents = extract_bundle(self.bundle_path, self.workdir)
        print_success(f"Kernel: {os.path.basename(self.contents.kernel)}")
        self.tree = read_image(self.contents.image)
        print_success(f"Image: {len(self.tree)} entries")

        if self.tree.get(BOOT_CONFIG_PATH):
            self.boot = BootConfig.from_json(self.tree.read(BOOT_CONFIG_PATH).decode())

        if not self.host_kexec and not self.tree.get("/sbin/kexec"):
            raise BuildFatal("kexec is neither installed on the host nor present in the image",
                             missing=("kexec",), remediation=["kexec-tools"])

        tools_root = os.path.join(self.workdir, "image-tools")
        if not all(self.which(t) for t in SWITCH_TOOLS):
            wanted = [p for p in self.tree.paths()
                      if posixpath.basename(p) in SWITCH_TOOLS
                      or (p.startswith(LIBRARY_PREFIXES) and ".so" in posixpath.basename(p))]
            extract(self.tree, tools_root, wanted)
        self.tools = identity.ToolSet(fallback_root=tools_root, which=self.which)

    # ===== STAGE 3 =====

    def inject_identity(self):
        self.tree.mkdir(self.boot.host_key_dir, 0o755)
        keydir = os.path.join(self.workdir, "hostkeys")
        self.host_keys = identity.convert_host_keys(keydir, self.tools, self.ssh_dir, self.runner)
        for key in self.host_keys:
            dest = posixpath.join(self.boot.host_key_dir, os.path.basename(key.path))
            self.tree.add_file(dest, source=key.path, mode=0o600, replace=True)

        keys = identity.collect_authorized_keys(self.key_sources)
        selected, generate_new = prompts.select_keys(keys, self.console)
        if generate_new:
            generated = identity.generate_keypair()
            prompts.disclose_private_key(generated, self.console)
            selected.append(generated.authorized)
        if not selected:
            raise OperatorAbort("no SSH key selected")
        self.trusted_keys = selected
        self.tree.mkdir("/root/.ssh", 0o700)
        self.tree.add_file("/root/.ssh/authorized_keys",
                           data=identity.render_authorized_keys(selected), mode=0o600, replace=True)
        print_success(f"{len(selected)} trusted key(s) installed")

        servers, _ = network.capture_dns(self.boot.fallback_dns, self.runner)
        self.tree.add_file("/etc/resolv.conf", data=network.render_resolv_conf(servers), replace=True)

        self.interfaces = network.capture_interfaces(self.addrs, self.runner)
        if self.interfaces:
            self.tree.add_file(self.boot.network_script, mode=0o755, replace=True,
                               data=network.render_replay_script(self.interfaces))
        else:
            print_warning("No IPv4 interfaces captured; the RAM system will try DHCP")

        size = write_image(self.tree, self.contents.image, level=self.repack_level)
        # the image now carries the private host keys
        os.chmod(self.contents.image, 0o600)
        shutil.rmtree(keydir, ignore_errors=True)
        print_success(f"Image repacked ({size // 1024}KB)")

    # ===== STAGE 4 =====

    def kexec_command(self):
        if self.host_kexec:
            return [self.host_kexec], None
        return self.tools.command("kexec"), self.tools.env("kexec")

    def manual_command(self):
        return (f'kexec -l {self.contents.kernel} --initrd={self.contents.image} '
                f'--append="{KERNEL_CMDLINE}" && kexec -e')

    def load_kernel(self):
        kexec, env = self.kexec_command()
        result = self.runner(kexec + [
            "-l", self.contents.kernel,
            f"--initrd={self.contents.image}",
            f"--append={KERNEL_CMDLINE}",
        ], env=env)
        if result.returncode != 0:
            raise KernelSwitchError(f"kexec load failed: {(result.stderr or '').strip()}")
        print_success("Kernel and image staged")

    # ===== STAGE 5 =====

    def summary(self):
        print_banner("Ready to switch")
        for key in self.host_keys:
            state = "preserved" if key.preserved else "NEW (fingerprint changes)"
            print(f"  Host key {key.algorithm}: {key.fingerprint} [{state}]")
        for key in self.trusted_keys:
            print(f"  Trusted key: {key.label}")
        for record in self.interfaces:
            print(f"  {record.name or record.mac}: {record.address}" +
                  (f" via {record.gateway}" if record.gateway else ""))
        print("")
        print("The running system will be replaced immediately. Unsaved work is lost.")

    def confirm(self):
        self.summary()
        if prompts.confirm_gate("Switch to the RAM system now?", self.console):
            return
        print_status("Not switching. The kernel stays staged; to switch later run:")
        print(f"  {self.manual_command()}")
        print(f"  Files are in {self.workdir}")
        raise OperatorAbort("kernel switch declined")

    # ===== STAGE 6 =====

    def execute(self):
        kexec, env = self.kexec_command()
        self.runner(["sync"])
        result = self.runner(kexec + ["-e"], env=env)
        # kexec -e only returns when the switch did not happen
        raise KernelSwitchError(
            "kexec -e returned (rc %d): %s. The system state is uncertain; "
            "if it is unresponsive, recovery needs console access." % (
                result.returncode, (result.stderr or "").strip()),
            executed=True,
        )

    STAGES = [
        (Stage.PREFLIGHT, "Preflight checks", "preflight"),
        (Stage.EXTRACT, "Extracting bundle", "extract"),
        (Stage.INJECT_IDENTITY, "Injecting SSH and network identity", "inject_identity"),
        (Stage.LOAD_KERNEL, "Loading kernel", "load_kernel"),
        (Stage.CONFIRM, "Confirmation", "confirm"),
        (Stage.EXECUTE, "Switching kernel", "execute"),
    ]

    def cleanup(self):
        """Remove scratch files; used when the run stops before a kernel is staged."""
        if self.workdir is None:
            return
        if self.owns_workdir:
            shutil.rmtree(self.workdir, ignore_errors=True)
            return
        for name in ("hostkeys", "image-tools"):
            shutil.rmtree(os.path.join(self.workdir, name), ignore_errors=True)
        if self.contents:
            for path in (self.contents.kernel, self.contents.image):
                if os.path.exists(path):
                    os.unlink(path)

    def run(self):
        staged = False
        try:
            for number, (stage, title, method) in enumerate(self.STAGES, 1):
                if stage is Stage.CONFIRM:
                    staged = True
                print_stage(number, title)
                self.history.append(stage)
                getattr(self, method)()
        finally:
            if not staged:
                self.cleanup()
