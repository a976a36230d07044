"""
Kernel module harvesting for the image.

Pool modules are found by name pattern anywhere under the host's module tree
(their location depends on how ZFS was packaged: dkms, updates/, extra/...),
driver subtrees are copied whole. Everything is decompressed because busybox
modprobe cannot load compressed modules, then depmod indexes the result.
"""

import fnmatch
import gzip
import lzma
import os
import shutil
from dataclasses import dataclass
from typing import Tuple

import zstandard

from .console import print_status, print_success, print_warning, run_command
from .errors import BuildFatal

MODULE_METADATA = ("modules.order", "modules.builtin", "modules.builtin.modinfo")


@dataclass(frozen=True)
class ModuleHarvest:
    staging_dir: str
    pool_modules: Tuple[str, ...]
    driver_modules: int
    core_pool_modules: Tuple[str, ...]


def is_module(name):
    return name.endswith(".ko") or ".ko." in name


def module_name(filename):
    return filename.split(".ko", 1)[0]


def find_pool_modules(module_root, patterns):
    """Relative paths of every pool-family module under ``module_root``."""
    matches = []
    for root, _dirs, files in os.walk(module_root):
        for name in files:
            if any(fnmatch.fnmatch(name, p) for p in patterns):
                matches.append(os.path.relpath(os.path.join(root, name), module_root))
    return sorted(matches)


def find_driver_modules(module_root, subtrees):
    matches = []
    for subtree in subtrees:
        base = os.path.join(module_root, subtree)
        if not os.path.isdir(base):
            continue
        for root, _dirs, files in os.walk(base):
            for name in files:
                if is_module(name):
                    matches.append(os.path.relpath(os.path.join(root, name), module_root))
    return sorted(matches)


def decompress_module(path):
    """Replace ``foo.ko.{zst,gz,xz}`` with ``foo.ko``; returns the new path."""
    if path.endswith(".ko.zst"):
        with open(path, "rb") as fh:
            data = zstandard.ZstdDecompressor().stream_reader(fh).read()
    elif path.endswith(".ko.gz"):
        with gzip.open(path, "rb") as fh:
            data = fh.read()
    elif path.endswith(".ko.xz"):
        with lzma.open(path, "rb") as fh:
            data = fh.read()
    else:
        return path
    target = path.rsplit(".", 1)[0]
    with open(target, "wb") as out:
        out.write(data)
    os.remove(path)
    return target


def harvest_modules(config, scratch_dir, confirm=None, runner=run_command):
    """Stage pool and driver modules under ``scratch_dir`` and index them.

    Zero core pool modules is fatal unless the configuration allows it or
    ``confirm`` (the operator override) answers yes.
    """
    module_root = config.module_root
    staging = os.path.join(scratch_dir, "lib", "modules", config.kernel_version)
    os.makedirs(staging, exist_ok=True)

    pool = find_pool_modules(module_root, config.pool_module_patterns) if os.path.isdir(module_root) else []
    drivers = find_driver_modules(module_root, config.driver_subtrees) if os.path.isdir(module_root) else []
    if pool:
        print_status(f"Found {len(pool)} storage-pool module(s)")
    else:
        print_warning(f"No storage-pool modules found in {module_root}")

    staged = []
    for rel in sorted(set(pool) | set(drivers)):
        dest = os.path.join(staging, rel)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copyfile(os.path.join(module_root, rel), dest)
        staged.append(dest)
    for name in MODULE_METADATA:
        src = os.path.join(module_root, name)
        if os.path.isfile(src):
            shutil.copyfile(src, os.path.join(staging, name))
    print_status(f"Total kernel modules copied: {len(staged)}")

    decompressed = [decompress_module(p) for p in staged]

    core = tuple(sorted(
        module_name(os.path.basename(p)) for p in decompressed
        if module_name(os.path.basename(p)) in config.pool_core_modules
    ))
    if core:
        print_success(f"Pool modules verified: {', '.join(core)}")
    elif config.allow_missing_pool_modules or (confirm and confirm(
            "No ZFS modules found. ZFS will not work in the RAM system. Continue anyway?")):
        print_warning("Continuing without storage-pool modules (operator override)")
    else:
        raise BuildFatal(
            "no storage-pool kernel modules found under " + module_root,
            missing=tuple(f"{m}.ko" for m in config.pool_core_modules),
            remediation=["zfsutils-linux", "zfs-dkms"],
        )

    if shutil.which("depmod"):
        result = runner(["depmod", "-b", scratch_dir, config.kernel_version])
        if result.returncode != 0:
            print_warning(f"depmod failed: {(result.stderr or '').strip()}")
        else:
            print_success("Module dependency index generated")
    else:
        print_warning("depmod not available, modprobe will not resolve dependencies")

    return ModuleHarvest(
        staging_dir=staging,
        pool_modules=tuple(pool),
        driver_modules=len(drivers),
        core_pool_modules=core,
    )
