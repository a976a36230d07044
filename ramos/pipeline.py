"""
Build pipeline: host checks, manifest resolution, assembly, packaging,
verification and bundling, run as numbered stages.
"""

import enum
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional

from . import console
from .assembler import Assembler
from .bundle import write_bundle
from .console import print_banner, print_stage, print_status, print_success, print_warning, run_command
from .errors import BuildFatal
from .kmod import harvest_modules
from .manifest import default_manifest, find_binary, resolve_manifest
from .packager import read_image, write_image
from .tree import RegularFile, Symlink


class BuildStage(enum.Enum):
    CHECK_ENV = "check_env"
    RESOLVE_MANIFEST = "resolve_manifest"
    ASSEMBLE = "assemble"
    PACKAGE = "package"
    VERIFY = "verify"
    BUNDLE = "bundle"


@dataclass(frozen=True)
class ImageReport:
    entries: int
    has_init: bool
    has_busybox: bool
    has_ssh_server: bool
    host_keys: int
    applets: int
    fingerprint: str

    @property
    def bootable(self):
        return self.has_init and self.has_busybox and self.has_ssh_server


def inspect_tree(tree):
    applets = sum(1 for p, n in tree.items()
                  if p.startswith("/bin/") and isinstance(n, Symlink) and n.target == "busybox")
    host_keys = sum(1 for p, _ in tree.files() if p.startswith("/etc/dropbear/"))
    return ImageReport(
        entries=len(tree),
        has_init=isinstance(tree.get("/init"), RegularFile),
        has_busybox=isinstance(tree.get("/bin/busybox"), RegularFile),
        has_ssh_server=isinstance(tree.get("/usr/bin/dropbear"), RegularFile),
        host_keys=host_keys,
        applets=applets,
        fingerprint=tree.fingerprint(),
    )


def verify_image(path):
    """Re-read a packaged image and report what a boot needs."""
    return inspect_tree(read_image(path))


class BuildPipeline:
    def __init__(self, config, runner=run_command, finder=find_binary, confirm=None,
                 geteuid=os.geteuid, resolver=None):
        self.config = config
        self.runner = runner
        self.finder = finder
        self.confirm = confirm
        self.geteuid = geteuid
        self.resolver = resolver
        self.history = []
        self.scratch = None
        self.resolution = None
        self.tree = None
        self.image_size = None
        self.report: Optional[ImageReport] = None
        self.artifact_size = None

    # ===== STAGE 1 =====

    def check_env(self):
        console.reset_warnings()
        if self.geteuid() != 0:
            raise BuildFatal("the build must run as root (device nodes, host keys, module tree)")
        output_dir = self.config.output_dir
        if not os.path.isdir(output_dir) or not os.access(output_dir, os.W_OK):
            raise BuildFatal(f"output directory {output_dir} is not writable")
        if not os.path.isfile(self.config.kernel_image):
            raise BuildFatal(f"kernel image {self.config.kernel_image} not found",
                             missing=(self.config.kernel_image,))
        print_success(f"Kernel: {self.config.kernel_version}")
        print_success(f"Output: {output_dir}")

    # ===== STAGE 2 =====

    def resolve(self):
        specs = default_manifest(self.config.extra_binaries)
        self.resolution = resolve_manifest(specs, self.finder)
        for name in self.resolution.missing_optional:
            print_warning(f"Optional binary not found: {name}")
        self.resolution.raise_for_missing()
        print_success(f"{len(self.resolution.found)} binaries located")

    # ===== STAGE 3 =====

    def assemble(self):
        self.scratch = tempfile.mkdtemp(prefix="ramos-build-", dir=self.config.output_dir)
        harvest = harvest_modules(self.config, self.scratch, confirm=self.confirm, runner=self.runner)
        assembler = Assembler(self.config, runner=self.runner, resolver=self.resolver)
        self.tree = assembler.assemble(self.resolution, harvest, scratch_dir=self.scratch)

    # ===== STAGE 4 =====

    def package(self):
        print_status(f"Compressing with zstd level {self.config.compression_level}...")
        self.image_size = write_image(self.tree, self.config.image_path,
                                      level=self.config.compression_level,
                                      mtime=self.config.source_date_epoch)
        print_success(f"{self.config.image_path} ({self.image_size / (1024 * 1024):.1f} MB)")

    # ===== STAGE 5 =====

    def verify(self):
        self.report = verify_image(self.config.image_path)
        checks = (
            ("/init", self.report.has_init),
            ("busybox", self.report.has_busybox),
            ("dropbear", self.report.has_ssh_server),
        )
        for name, present in checks:
            if present:
                print_success(f"{name} present")
        missing = [name for name, present in checks if not present]
        if missing:
            raise BuildFatal("packaged image is incomplete: " + ", ".join(missing), missing=missing)
        if not self.report.host_keys:
            print_status("No host keys in the image yet; they are injected at launch")
        print_success(f"{self.report.applets} busybox applets")

    # ===== STAGE 6 =====

    def bundle(self):
        self.artifact_size = write_bundle(
            self.config.artifact_path, self.config.kernel_image, self.config.image_path,
            self.config.kernel_version, mtime=self.config.source_date_epoch)
        print_success(f"{self.config.artifact_path} ({self.artifact_size / (1024 * 1024):.1f} MB)")

    STAGES = [
        (BuildStage.CHECK_ENV, "Checking build environment", "check_env"),
        (BuildStage.RESOLVE_MANIFEST, "Locating binaries", "resolve"),
        (BuildStage.ASSEMBLE, "Assembling root filesystem", "assemble"),
        (BuildStage.PACKAGE, "Packaging image", "package"),
        (BuildStage.VERIFY, "Verifying image", "verify"),
        (BuildStage.BUNDLE, "Creating self-extracting bundle", "bundle"),
    ]

    def run(self):
        print_banner("Building ZFS RAM boot system")
        try:
            for number, (stage, title, method) in enumerate(self.STAGES, 1):
                print_stage(number, title)
                self.history.append(stage)
                getattr(self, method)()
        finally:
            if self.scratch:
                shutil.rmtree(self.scratch, ignore_errors=True)
        self.summary()
        return self.report

    def summary(self):
        print_banner("BUILD COMPLETE")
        print(f"  Image:    {self.config.image_path}")
        print(f"  Bundle:   {self.config.artifact_path}")
        print(f"  Tree:     {self.report.fingerprint[:16]}")
        if console.WARNINGS:
            print("")
            print(f"  {len(console.WARNINGS)} warning(s):")
            for warning in console.WARNINGS:
                print(f"    - {warning}")
        print("")
        print("Copy the bundle to the target server and run it as root:")
        print(f"  sudo {self.config.artifact_path}")
