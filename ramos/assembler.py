"""
Root Filesystem Assembler.

Builds the image's root filesystem as an in-memory FilesystemTree: skeleton and
device nodes, manifest binaries with their library closures, busybox applet
links, auxiliary data copied from the host, generated /etc files, a Python
runtime carrying the ramos package, the reboot/poweroff wrappers and the
harvested kernel modules. Each group of additions is one named tree step.
"""

import glob
import os
import posixpath
import shutil
import sysconfig
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

from .config import PACKAGE_DIR
from .console import print_status, print_success, print_warning, run_command
from .errors import BuildFatal
from .resolver import resolve_libraries
from .tree import DEVICE_NODES, FilesystemTree

RUNTIME_DIR = "/usr/lib/ramos"
PKGDETAILS_PATH = "/usr/lib/debootstrap/pkgdetails"

SKELETON = (
    ("/bin", 0o755), ("/sbin", 0o755), ("/etc", 0o755), ("/etc/ramos", 0o755),
    ("/etc/dropbear", 0o755), ("/proc", 0o555), ("/sys", 0o555), ("/dev", 0o755),
    ("/dev/pts", 0o755), ("/run", 0o755), ("/tmp", 0o1777), ("/var", 0o755),
    ("/var/tmp", 0o1777), ("/var/log", 0o755), ("/var/run", 0o755),
    ("/var/run/dropbear", 0o755), ("/usr/bin", 0o755), ("/usr/sbin", 0o755),
    ("/usr/lib", 0o755), ("/usr/share", 0o755), ("/lib", 0o755), ("/lib64", 0o755),
    ("/mnt", 0o755), ("/root", 0o700), ("/root/.ssh", 0o700),
)

DPKG_SKELETON_DIRS = (
    "/var/lib/dpkg/info", "/var/lib/dpkg/updates", "/var/lib/dpkg/triggers",
    "/var/lib/apt/lists", "/var/cache/apt/archives",
)

TERMINFO_ENTRIES = ("x/xterm", "x/xterm-256color", "l/linux", "v/vt100", "v/vt220", "s/screen")
TERMINFO_DIRS = ("/usr/share/terminfo", "/lib/terminfo")

STDLIB_SKIP = frozenset([
    "test", "tests", "tkinter", "idlelib", "turtledemo", "ensurepip", "lib2to3",
    "site-packages", "dist-packages", "__pycache__", "pydoc_data",
])

INIT_SCRIPT = '''#!{interpreter}
"""Process 1 of the RAM system."""
import sys

sys.path.insert(0, "{runtime}")

from ramos.init import main

main()
'''

WRAPPER_SCRIPT = '''#!{interpreter}
"""Safe {action}: export pools and unmount before the kernel is told to {action}."""
import sys

sys.path.insert(0, "{runtime}")

from ramos.shutdown import main

sys.exit(main(["{action}"]))
'''

UDHCPC_SCRIPT = """#!/bin/sh
case "$1" in
    deconfig)
        ifconfig "$interface" 0.0.0.0
        ;;
    bound|renew)
        ifconfig "$interface" "$ip" netmask "${subnet:-255.255.255.0}" up
        if [ -n "$router" ]; then
            while route del default gw 0.0.0.0 dev "$interface" 2>/dev/null; do :; done
            for gw in $router; do
                route add default gw "$gw" dev "$interface"
            done
        fi
        if [ -n "$dns" ]; then
            echo -n > /etc/resolv.conf
            for ns in $dns; do
                echo "nameserver $ns" >> /etc/resolv.conf
            done
        fi
        ;;
esac
"""

PROFILE = """# Environment for RAM OS
export PATH=/bin:/sbin:/usr/bin:/usr/sbin
export HOME=/root
export LANG={lang}
export LC_ALL={lang}
export TERM={term}
export INPUTRC=/etc/inputrc
export NCURSES_NO_UTF8_ACS=1
export LD_LIBRARY_PATH=/lib:/usr/lib:/lib64:/usr/lib64
export PYTHONPATH={runtime}

# Source user profile if exists
[ -f ~/.profile ] && . ~/.profile
"""

INPUTRC = r"""# Allow 8-bit input/output
set meta-flag on
set input-meta on
set output-meta on
set convert-meta off

# Common shortcuts
"\e[5~": history-search-backward
"\e[6~": history-search-forward
"\e[3~": delete-char
"\e[2~": quoted-insert
"\e[A": history-search-backward
"\e[B": history-search-forward
"""

BASHRC = r"""# Source global definitions
if [ -f /etc/bash.bashrc ]; then
    . /etc/bash.bashrc
fi

export PS1='\[\033[01;32m\]\u@ram-os\[\033[00m\]:\[\033[01;34m\]\w\[\033[00m\]\$ '

alias ll='ls -alF'
alias la='ls -A'
alias l='ls -CF'
"""

ROOT_PROFILE = """# Keyboard layout switching, only needed on the physical console;
# SSH sessions use the client's layout.
alias kbd-de='loadkeys de-latin1 2>/dev/null && echo "Switched to German keyboard"'
alias kbd-fr='loadkeys fr-latin1 2>/dev/null && echo "Switched to French keyboard"'
alias kbd-ru='loadkeys ru 2>/dev/null && echo "Switched to Russian keyboard"'
alias kbd-us='loadkeys us 2>/dev/null && echo "Switched to US keyboard"'

# Source .bashrc for login shells
if [ -n "$BASH_VERSION" ]; then
    if [ -f "$HOME/.bashrc" ]; then
        . "$HOME/.bashrc"
    fi
fi
"""


def _skip_stdlib(rel):
    parts = rel.split(os.sep)
    if any(p in STDLIB_SKIP for p in parts):
        return True
    return parts[0].startswith("config-") or rel.endswith((".pyc", ".pyo"))


def _skip_package(rel):
    return "__pycache__" in rel.split(os.sep) or rel.endswith((".pyc", ".pyo"))


class Assembler:
    def __init__(self, config, runner=run_command, resolver=None, host_root="/"):
        self.config = config
        self.runner = runner
        self.resolver = resolver or (lambda path: resolve_libraries(path, runner))
        self.host_root = host_root
        self.tree = FilesystemTree()
        self.installed = []
        self.missing_libraries = {}
        self.applets = []
        self.interpreter = None

    def host(self, path):
        return os.path.join(self.host_root, path.lstrip("/"))

    # ===== skeleton =====

    def skeleton(self):
        with self.tree.step("skeleton"):
            for path, mode in SKELETON:
                self.tree.mkdir(path, mode)
            for path, kind, major, minor, mode in DEVICE_NODES:
                self.tree.add_device(path, kind, major, minor, mode)
            self.tree.symlink("/dev/fd", "/proc/self/fd")
        print_success("Directory skeleton and device nodes")

    # ===== binaries =====

    def _install_binary(self, artifact):
        resolved = self.resolver(artifact.source)
        self.tree.add_file(artifact.dest, source=artifact.source)
        for link, target in artifact.links:
            self.tree.symlink(link, target)
        for library in sorted(resolved.libraries):
            self.tree.add_file(library, source=library)
        return replace(artifact, libraries=resolved.libraries), resolved.missing

    def binaries(self, artifacts):
        """Install binaries and their closures; resolution runs in parallel."""
        with self.tree.step("binaries"):
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                results = list(pool.map(self._install_binary, artifacts))
        for artifact, missing in results:
            self.installed.append(artifact)
            if missing:
                self.missing_libraries[artifact.name] = missing
                print_warning(f"{artifact.name}: unresolved libraries {', '.join(missing)}")
        libraries = set().union(*(a.libraries for a in self.installed)) if self.installed else set()
        print_success(f"{len(self.installed)} binaries, {len(libraries)} shared libraries")

    def applet_links(self):
        """One /bin link per busybox applet not excluded and not provided by a real binary."""
        busybox = self.tree.get("/bin/busybox")
        with self.tree.step("applets"):
            if busybox is not None:
                result = self.runner([busybox.source, "--list"])
                for applet in sorted(set((result.stdout or "").split())):
                    if applet in self.config.applet_exclusions:
                        continue
                    if any(f"{d}/{applet}" in self.tree for d in ("/bin", "/sbin", "/usr/bin", "/usr/sbin")):
                        continue
                    self.tree.symlink(f"/bin/{applet}", "busybox")
                    self.applets.append(applet)
            if "/sbin/bash" in self.tree:
                self.tree.symlink("/bin/sh", "/sbin/bash")
                self.tree.symlink("/bin/bash", "../sbin/bash")
            else:
                print_warning("bash not found, /bin/sh is busybox ash")
                self.tree.symlink("/bin/sh", "busybox")
            if "/sbin/dpkg" in self.tree:
                self.tree.symlink("/usr/bin/dpkg", "/sbin/dpkg")
        print_success(f"{len(self.applets)} busybox applets linked")

    # ===== auxiliary data =====

    def _copy_file(self, path, dest=None):
        source = self.host(path)
        if os.path.isfile(source):
            return self.tree.add_file(dest or path, source=source)
        return False

    def _copy_tree(self, path, dest=None):
        source = self.host(path)
        if os.path.isdir(source):
            self.tree.mkdir(dest or path)
            return self.tree.add_host_tree(source, dest or path)
        return 0

    def auxiliary_data(self):
        with self.tree.step("aux-data"):
            # package manager
            for name in ("sources.list", "trusted.gpg"):
                self._copy_file(f"/etc/apt/{name}")
            for name in ("sources.list.d", "trusted.gpg.d"):
                self._copy_tree(f"/etc/apt/{name}")
            for keyring in sorted(glob.glob(self.host("/usr/share/keyrings/*.gpg"))):
                self.tree.add_file("/usr/share/keyrings/" + os.path.basename(keyring), source=keyring)
            for path in DPKG_SKELETON_DIRS:
                self.tree.mkdir(path)
            self.tree.add_file("/var/lib/dpkg/status", data=b"")
            self.tree.add_file("/var/lib/dpkg/available", data=b"")
            if not self._copy_tree("/usr/share/debootstrap"):
                print_warning("debootstrap scripts not found in /usr/share/debootstrap")

            # trust roots
            self.tree.mkdir("/etc/ssl/certs")
            if self._copy_file("/etc/ssl/certs/ca-certificates.crt"):
                self.tree.add_file("/etc/wgetrc", data="ca-certificate = /etc/ssl/certs/ca-certificates.crt\n")
            else:
                print_warning("No CA bundle found; TLS downloads will fail")

            # terminfo subset
            copied = 0
            for entry in TERMINFO_ENTRIES:
                for base in TERMINFO_DIRS:
                    if self._copy_file(f"{base}/{entry}", f"/usr/share/terminfo/{entry}"):
                        copied += 1
                        break
            if not copied:
                print_warning("No terminfo entries found")

            # locale
            if not (self._copy_tree("/usr/lib/locale/C.utf8") or self._copy_tree("/usr/lib/locale/C.UTF-8")):
                print_warning("No C.utf8/C.UTF-8 locale found on host")

            # console keymap
            for kmap in sorted(glob.glob(self.host("/etc/console-setup/*.kmap.gz"))):
                self.tree.add_file("/etc/console-setup/" + os.path.basename(kmap), source=kmap)
            self._copy_file("/etc/console-setup/cached_setup_keyboard.sh")
        print_success("Package manager, certificates, terminfo, locale and keymap data")

    # ===== debootstrap helper =====

    def _compile_pkgdetails(self, workdir):
        """Fetch pkgdetails.c and compile it; returns (binary, static) or raises BuildFatal."""
        source = self.config.pkgdetails_source
        src = os.path.join(workdir, "pkgdetails.c")
        if os.path.isfile(source):
            shutil.copyfile(source, src)
        else:
            result = self.runner(["curl", "-sfL", source, "-o", src])
            if result.returncode != 0 or not os.path.isfile(src):
                raise BuildFatal(f"could not download pkgdetails.c from {source}",
                                 missing=("pkgdetails",), remediation=["curl"])
        binary = os.path.join(workdir, "pkgdetails")
        for static, flags in ((True, ["-static"]), (False, [])):
            result = self.runner(["gcc"] + flags + ["-O2", "-o", binary, src])
            if result.returncode == 0 and os.path.isfile(binary):
                return binary, static
        raise BuildFatal("could not compile pkgdetails: " + (result.stderr or "").strip(),
                         missing=("pkgdetails",), remediation=["gcc", "libc6-dev"])

    def debootstrap_helper(self, scratch_dir=None):
        """debootstrap needs pkgdetails (or perl) to parse package indexes."""
        if PKGDETAILS_PATH in self.tree:
            return
        print_status("Building pkgdetails for debootstrap...")
        workdir = tempfile.mkdtemp(prefix="pkgdetails-", dir=scratch_dir)
        try:
            binary, static = self._compile_pkgdetails(workdir)
            with open(binary, "rb") as f:
                data = f.read()
            libraries = set() if static else self.resolver(binary).libraries
            with self.tree.step("debootstrap-helper"):
                self.tree.add_file(PKGDETAILS_PATH, data=data, mode=0o755)
                for library in sorted(libraries):
                    self.tree.add_file(library, source=library)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
        print_success(f"pkgdetails compiled ({'static' if static else 'dynamic'})")

    # ===== generated files =====

    def generated_files(self):
        boot = self.config.boot
        shell = "/bin/bash" if "/bin/bash" in self.tree else "/bin/sh"
        with self.tree.step("generated"):
            self.tree.add_file("/etc/passwd", data=f"root:x:0:0:root:/root:{shell}\n")
            self.tree.add_file("/etc/group", data="root:x:0:\n")
            self.tree.add_file("/etc/hosts", data="127.0.0.1 localhost\n")
            self.tree.add_file("/etc/shells", data="/bin/sh\n/bin/bash\n")
            self.tree.add_file("/etc/profile", data=PROFILE.format(
                lang=boot.lang, term=boot.term, runtime=RUNTIME_DIR))
            self.tree.add_file("/etc/inputrc", data=INPUTRC)
            bashrc = BASHRC
            if boot.installer_path:
                bashrc += f"alias install='{boot.installer_path}'\n"
            self.tree.add_file("/root/.bashrc", data=bashrc)
            self.tree.add_file("/root/.profile", data=ROOT_PROFILE)
            self.tree.add_file("/usr/share/udhcpc/default.script", data=UDHCPC_SCRIPT, mode=0o755)
            self.tree.add_file("/etc/ramos/boot.json", data=boot.to_json())
        print_success("Generated /etc files and shell profiles")

    # ===== python runtime =====

    def python_runtime(self):
        """Interpreter, standard library, extension closures and the ramos package."""
        interpreter = os.path.realpath(self.config.python_executable)
        self.interpreter = interpreter
        stdlib = sysconfig.get_path("stdlib")
        dynload = os.path.join(sysconfig.get_path("platstdlib"), "lib-dynload")
        with self.tree.step("python"):
            resolved = self.resolver(interpreter)
            self.tree.add_file(interpreter, source=interpreter, mode=0o755)
            if interpreter != "/usr/bin/python3":
                self.tree.symlink("/usr/bin/python3", interpreter)
            libraries = set(resolved.libraries)
            files = self.tree.add_host_tree(stdlib, stdlib, skip=_skip_stdlib)
            if os.path.isdir(dynload) and not dynload.startswith(stdlib + os.sep):
                files += self.tree.add_host_tree(dynload, dynload)
            extensions = glob.glob(os.path.join(dynload, "*.so"))
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                for result in pool.map(self.resolver, extensions):
                    libraries |= result.libraries
            for library in sorted(libraries):
                self.tree.add_file(library, source=library)
            files += self.tree.add_host_tree(PACKAGE_DIR, posixpath.join(RUNTIME_DIR, "ramos"),
                                             skip=_skip_package)
            self.tree.add_file("/init", data=INIT_SCRIPT.format(interpreter=interpreter, runtime=RUNTIME_DIR),
                               mode=0o755)
            self.tree.symlink("/sbin/init", "../init")
        print_success(f"Python runtime: {interpreter} ({files} files)")

    # ===== wrappers =====

    def wrappers(self):
        """Safe reboot/poweroff/halt; replaces anything already at those paths."""
        interpreter = self.interpreter or os.path.realpath(self.config.python_executable)
        with self.tree.step("wrappers"):
            for action in ("reboot", "poweroff"):
                self.tree.add_file(f"/sbin/{action}", mode=0o755, replace=True, data=WRAPPER_SCRIPT.format(
                    interpreter=interpreter, runtime=RUNTIME_DIR, action=action))
            self.tree.symlink("/sbin/halt", "poweroff", replace=True)
        print_success("Safe reboot/poweroff wrappers")

    # ===== installer and modules =====

    def installer(self):
        script = self.config.installer_script
        if not script:
            return
        with self.tree.step("installer"):
            self.tree.add_file(self.config.boot.installer_path, source=script, mode=0o755, replace=True)
        print_success(f"Installer embedded at {self.config.boot.installer_path}")

    def kernel_modules(self, harvest):
        if harvest is None:
            return
        dest = f"/lib/modules/{self.config.kernel_version}"
        with self.tree.step("modules"):
            self.tree.mkdir(dest)
            count = self.tree.add_host_tree(harvest.staging_dir, dest)
        print_success(f"{count} module files under {dest}")

    def build_manifest(self):
        lines = [
            "RAM OS build manifest",
            f"kernel: {self.config.kernel_version}",
            f"source_date_epoch: {self.config.source_date_epoch}",
            "",
            "binaries:",
        ]
        for artifact in sorted(self.installed, key=lambda a: a.dest):
            kind = "critical" if artifact.critical else "optional"
            lines.append(f"  {artifact.dest} <- {artifact.source} ({kind}, {len(artifact.libraries)} libs)")
        lines += ["", f"busybox applets: {len(self.applets)}", ""]
        with self.tree.step("manifest"):
            self.tree.add_file("/etc/ramos/BUILD_MANIFEST.txt", data="\n".join(lines), replace=True)

    def assemble(self, resolution, harvest=None, scratch_dir=None):
        """Run every step in order and return the frozen tree."""
        print_status("Assembling root filesystem...")
        self.skeleton()
        self.binaries(resolution.found)
        self.applet_links()
        self.auxiliary_data()
        self.debootstrap_helper(scratch_dir)
        self.generated_files()
        self.python_runtime()
        self.wrappers()
        self.installer()
        self.kernel_modules(harvest)
        self.build_manifest()
        self.tree.freeze()
        print_success(f"Filesystem tree: {len(self.tree)} entries")
        return self.tree
