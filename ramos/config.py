"""
Build and boot configuration.

Defaults live in module constants; BuildConfig and BootConfig freeze them into
single values that are passed explicitly to every build step and, for
BootConfig, serialised into the image for process 1.
"""

import json
import os
import sys
from dataclasses import asdict, dataclass, field, replace
from typing import Optional, Tuple

# Configuration
OUTPUT_DIR = "/tmp"
IMAGE_NAME = "minimal-ram-system.img"
ARTIFACT_NAME = "zfs-ram-boot.run"
BOOT_CONFIG_PATH = "/etc/ramos/boot.json"
NETWORK_SCRIPT_PATH = "/etc/ramos/network_replay.py"
INSTALLER_PATH = "/root/install_os.sh"
DROPBEAR_KEY_DIR = "/etc/dropbear"

# source of the ramos package itself, copied into the image and the bundle
PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
PKGDETAILS_SOURCE = "https://salsa.debian.org/installer-team/base-installer/-/raw/master/pkgdetails.c"

# Applets for which a full-featured binary or a safe wrapper is installed instead
APPLET_EXCLUSIONS = frozenset(["wget", "curl", "sh", "reboot", "poweroff", "halt"])

# Storage-pool module family; layout differs per distribution so these are name patterns
POOL_MODULE_PATTERNS = (
    "zfs.ko*", "spl.ko*", "zavl.ko*", "zcommon.ko*", "zlua.ko*",
    "znvpair.ko*", "zunicode.ko*", "zzstd.ko*", "icp.ko*",
    "fat.ko*", "vfat.ko*", "nls_*.ko*",
)
POOL_CORE_MODULES = ("zfs", "spl")

DRIVER_SUBTREES = (
    "kernel/drivers/block",
    "kernel/drivers/nvme",
    "kernel/drivers/scsi",
)

BOOT_MODULES = (
    "zfs",
    "nvme", "scsi_mod", "sd_mod", "virtio_blk",
    "virtio_net", "e1000", "e1000e", "igb", "ixgbe", "r8169", "tg3",
)

# (mountpoint, size); size None mounts without a size option
TMPFS_MOUNTS = (
    ("/tmp", "1G"),
    ("/run", "64M"),
    ("/var/tmp", "128M"),
    ("/var/cache/apt", "512M"),
)

FALLBACK_DNS = ("8.8.8.8", "1.1.1.1", "8.8.4.4")


@dataclass(frozen=True)
class BootConfig:
    ssh_port: int = 22
    tmpfs_mounts: Tuple[Tuple[str, Optional[str]], ...] = TMPFS_MOUNTS
    modules: Tuple[str, ...] = BOOT_MODULES
    dhcp_retries: int = 10
    dhcp_timeout: int = 3
    shell: str = "/bin/sh"
    fallback_dns: Tuple[str, ...] = FALLBACK_DNS
    host_key_dir: str = DROPBEAR_KEY_DIR
    network_script: str = NETWORK_SCRIPT_PATH
    installer_path: Optional[str] = None
    lang: str = "C.utf8"
    term: str = "xterm-256color"
    min_free_memory_mb: int = 500

    def to_json(self):
        return json.dumps(asdict(self), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_json(cls, text):
        data = json.loads(text)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        # JSON has no tuples
        for key in ("modules", "fallback_dns"):
            if key in known:
                known[key] = tuple(known[key])
        if "tmpfs_mounts" in known:
            known["tmpfs_mounts"] = tuple((mp, size) for mp, size in known["tmpfs_mounts"])
        return cls(**known)

    @classmethod
    def load(cls, path=BOOT_CONFIG_PATH):
        """Read the embedded configuration, falling back to defaults."""
        try:
            with open(path) as f:
                return cls.from_json(f.read())
        except (OSError, ValueError, TypeError):
            return cls()


@dataclass(frozen=True)
class BuildConfig:
    kernel_version: str
    kernel_image: str
    module_root: str
    output_dir: str = OUTPUT_DIR
    image_name: str = IMAGE_NAME
    artifact_name: str = ARTIFACT_NAME
    applet_exclusions: frozenset = APPLET_EXCLUSIONS
    pool_module_patterns: Tuple[str, ...] = POOL_MODULE_PATTERNS
    pool_core_modules: Tuple[str, ...] = POOL_CORE_MODULES
    driver_subtrees: Tuple[str, ...] = DRIVER_SUBTREES
    compression_level: int = 19
    repack_compression_level: int = 1
    source_date_epoch: int = 0
    allow_missing_pool_modules: bool = False
    installer_script: Optional[str] = None
    pkgdetails_source: str = PKGDETAILS_SOURCE
    extra_binaries: Tuple[str, ...] = ()
    python_executable: str = sys.executable
    workers: int = 8
    boot: BootConfig = field(default_factory=BootConfig)

    @property
    def image_path(self):
        return os.path.join(self.output_dir, self.image_name)

    @property
    def artifact_path(self):
        return os.path.join(self.output_dir, self.artifact_name)

    def with_overrides(self, **changes):
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_host(cls, **overrides):
        """Defaults for the running kernel, plus explicit overrides."""
        version = overrides.pop("kernel_version", None) or os.uname().release
        epoch = overrides.pop("source_date_epoch", None)
        if epoch is None:
            epoch = int(os.environ.get("SOURCE_DATE_EPOCH", "0") or 0)
        installer = overrides.get("installer_script")
        boot = overrides.pop("boot", None) or BootConfig(
            installer_path=INSTALLER_PATH if installer else None)
        config = cls(
            kernel_version=version,
            kernel_image=f"/boot/vmlinuz-{version}",
            module_root=f"/lib/modules/{version}",
            source_date_epoch=epoch,
            boot=boot,
        )
        return config.with_overrides(**overrides)
