"""
Binary manifest: what goes into the image, where to find it, and whether the
build may proceed without it.
"""

import os
import shutil
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from .errors import BuildFatal

SEARCH_PATH = (
    "/usr/local/sbin", "/usr/local/bin",
    "/usr/sbin", "/usr/bin", "/sbin", "/bin",
)

# Debian package providing each critical tool, offered as the single remediation
PACKAGES = {
    "busybox": "busybox-static",
    "dropbear": "dropbear-bin",
    "dropbearkey": "dropbear-bin",
    "dropbearconvert": "dropbear-bin",
    "zpool": "zfsutils-linux",
    "zfs": "zfsutils-linux",
    "sgdisk": "gdisk",
    "debootstrap": "debootstrap",
    "chroot": "coreutils",
    "kexec": "kexec-tools",
}


@dataclass(frozen=True)
class BinarySpec:
    name: str
    dest: str
    critical: bool = False
    # explicit candidate paths; empty means search SEARCH_PATH by name
    paths: Tuple[str, ...] = ()
    links: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class BinaryArtifact:
    name: str
    source: str
    dest: str
    critical: bool
    libraries: FrozenSet[str] = field(default_factory=frozenset)
    links: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ManifestResolution:
    found: Tuple[BinaryArtifact, ...]
    missing_critical: Tuple[str, ...]
    missing_optional: Tuple[str, ...]

    def raise_for_missing(self):
        if not self.missing_critical:
            return
        packages = sorted({PACKAGES[n] for n in self.missing_critical if n in PACKAGES})
        raise BuildFatal(
            "critical binaries missing: " + ", ".join(self.missing_critical),
            missing=self.missing_critical,
            remediation=packages or None,
        )


def _sbin(*names, critical=False):
    return [BinarySpec(n, f"/sbin/{n}", critical=critical) for n in names]


CRITICAL = [
    BinarySpec("busybox", "/bin/busybox", critical=True),
    BinarySpec("dropbear", "/usr/bin/dropbear", critical=True),
    BinarySpec("dropbearkey", "/usr/bin/dropbearkey", critical=True),
    BinarySpec("dropbearconvert", "/usr/bin/dropbearconvert", critical=True),
    BinarySpec("kexec", "/sbin/kexec", critical=True),
] + _sbin("zpool", "zfs", "sgdisk", "debootstrap", "chroot", critical=True)

OPTIONAL = [
    BinarySpec("dbclient", "/usr/bin/dbclient", links=(("/usr/bin/ssh", "dbclient"),)),
    BinarySpec("ssh-keygen", "/usr/bin/ssh-keygen"),
    BinarySpec("sftp-server", "/usr/lib/sftp-server",
               paths=("/usr/lib/openssh/sftp-server", "/usr/libexec/openssh/sftp-server",
                      "/usr/libexec/sftp-server")),
    BinarySpec("pkgdetails", "/usr/lib/debootstrap/pkgdetails",
               paths=("/usr/lib/debootstrap/pkgdetails",)),
] + _sbin(
    # module utilities
    "modprobe", "insmod", "lsmod", "depmod",
    # pool tooling
    "zdb", "zgenhostid", "mount.zfs", "fsck.zfs", "zstreamdump",
    "arc_summary", "arcstat", "dbufstat", "zilstat",
    # partitioning
    "parted", "partprobe", "blkid", "lsblk", "findmnt",
    "mkfs.fat", "mkfs.vfat", "mkfs.ext4", "mkfs.ext3",
    # package management
    "apt", "apt-get", "apt-cache", "dpkg", "dpkg-deb", "gpg", "gpgv",
    # transfer and archives
    "curl", "wget", "rsync",
    "tar", "gzip", "gunzip", "bzip2", "bunzip2", "xz", "unxz", "zstd", "zstdcat",
    # system
    "udevadm", "systemctl", "resolvectl",
    "mount", "umount", "mountpoint", "swapon", "swapoff",
    "bc", "whiptail", "loadkeys", "htop", "nano",
    "bash",
)


def default_manifest(extra=()):
    specs = CRITICAL + OPTIONAL
    specs += [BinarySpec(name, f"/sbin/{os.path.basename(name)}",
                         paths=(name,) if os.path.isabs(name) else ())
              for name in extra]
    return specs


def find_binary(spec, search_path=SEARCH_PATH) -> Optional[str]:
    """Locate ``spec`` on the host; first match wins, like ``whereis -b``."""
    if spec.paths:
        for candidate in spec.paths:
            if os.path.isfile(candidate):
                return candidate
        return None
    found = shutil.which(spec.name, path=os.pathsep.join(search_path))
    if found and os.path.isfile(found):
        return found
    return None


def resolve_manifest(specs, finder=find_binary):
    """Look up every spec once and report all misses together."""
    found = []
    missing_critical = []
    missing_optional = []
    seen = set()
    for spec in specs:
        if spec.dest in seen:
            continue
        seen.add(spec.dest)
        source = finder(spec)
        if source:
            found.append(BinaryArtifact(spec.name, source, spec.dest, spec.critical, links=spec.links))
        elif spec.critical:
            missing_critical.append(spec.name)
        else:
            missing_optional.append(spec.name)
    return ManifestResolution(tuple(found), tuple(missing_critical), tuple(missing_optional))
