"""
Command line entry point.

    ramos build             build the image and the self-extracting bundle
    ramos launch BUNDLE     switch this host into the RAM system (run by the bundle)
    ramos capture-network   print the network replay routine for this host
    ramos inspect IMAGE     verify a packaged image
"""

import argparse
import sys

from . import __version__, network, prompts
from .config import BuildConfig
from .console import print_error, print_status, print_success, print_warning, run_command
from .errors import BuildFatal, ImageFormatError, KernelSwitchError, OperatorAbort
from .launcher import Launcher
from .pipeline import BuildPipeline, verify_image


def offer_remediation(error):
    """Offer to install the packages named by a BuildFatal; the build is re-run by hand."""
    if not error.remediation:
        return
    packages = " ".join(error.remediation)
    print_status(f"These can be installed with: apt install {packages}")
    if not prompts.confirm_gate(f"Install {packages} now?"):
        print_status("Aborted, nothing installed")
        return
    run_command(["apt-get", "update"], capture=False, echo=True)
    result = run_command(["apt-get", "install", "-y"] + list(error.remediation), capture=False, echo=True)
    if result.returncode == 0:
        print_success("Packages installed; run the build again")
    else:
        print_error("Package installation failed")


def cmd_build(args):
    config = BuildConfig.from_host(
        kernel_version=args.kernel_version,
        output_dir=args.output_dir,
        installer_script=args.installer,
        pkgdetails_source=args.pkgdetails_source,
        compression_level=args.compression_level,
        allow_missing_pool_modules=args.allow_missing_zfs or None,
        extra_binaries=tuple(args.extra_binary) or None,
        workers=args.workers,
    )
    pipeline = BuildPipeline(config, confirm=prompts.confirm_gate)
    try:
        pipeline.run()
    except BuildFatal as e:
        print_error(f"BUILD FAILED: {e}")
        if e.missing:
            print_error("Missing: " + ", ".join(e.missing))
        offer_remediation(e)
        return 1
    return 0


def cmd_launch(args):
    launcher = Launcher(args.bundle, workdir=args.workdir)
    try:
        launcher.run()
    except BuildFatal as e:
        print_error(f"Cannot launch: {e}")
        return 1
    except KernelSwitchError as e:
        print_error(str(e))
        if not e.executed:
            print_status("The running system was not changed.")
        return 1
    return 0


def cmd_capture_network(args):
    records = network.capture_interfaces()
    if not records:
        print_warning("No IPv4 interfaces to capture")
        return 1
    script = network.render_replay_script(records)
    if args.output:
        with open(args.output, "w") as f:
            f.write(script)
        print_success(f"Wrote {args.output}")
    else:
        sys.stdout.write(script)
    return 0


def cmd_inspect(args):
    report = verify_image(args.image)
    print_status(f"{args.image}: {report.entries} entries")
    for name, present in (("/init", report.has_init), ("busybox", report.has_busybox),
                          ("dropbear", report.has_ssh_server)):
        (print_success if present else print_warning)(f"{name}: {'present' if present else 'MISSING'}")
    print_status(f"host keys: {report.host_keys}")
    print_status(f"busybox applets: {report.applets}")
    print_status(f"tree fingerprint: {report.fingerprint}")
    return 0 if report.bootable else 1


def build_parser():
    parser = argparse.ArgumentParser(prog="ramos", description="Build and launch a ZFS-capable RAM system")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")
    sub.required = True

    build = sub.add_parser("build", help="build the image and self-extracting bundle")
    build.add_argument("--kernel-version", help="kernel release (default: running kernel)")
    build.add_argument("--output-dir", help="where the image and bundle are written (default: /tmp)")
    build.add_argument("--installer", help="installer script embedded as /root/install_os.sh")
    build.add_argument("--pkgdetails-source", metavar="URL_OR_FILE",
                       help="pkgdetails.c used when the host has no /usr/lib/debootstrap/pkgdetails")
    build.add_argument("--compression-level", type=int, help="zstd level (default: 19)")
    build.add_argument("--allow-missing-zfs", action="store_true",
                       help="build even when no ZFS kernel modules are found")
    build.add_argument("--extra-binary", action="append", default=[], metavar="NAME",
                       help="additional binary to include (repeatable)")
    build.add_argument("--workers", type=int, help="parallel library resolution workers")
    build.set_defaults(func=cmd_build)

    launch = sub.add_parser("launch", help="switch this host into the RAM system")
    launch.add_argument("bundle", help="self-extracting bundle path")
    launch.add_argument("--workdir", help="scratch directory (default: a new temporary directory)")
    launch.set_defaults(func=cmd_launch)

    capture = sub.add_parser("capture-network", help="print the network replay routine for this host")
    capture.add_argument("-o", "--output", help="write to a file instead of stdout")
    capture.set_defaults(func=cmd_capture_network)

    inspect = sub.add_parser("inspect", help="verify a packaged image")
    inspect.add_argument("image")
    inspect.set_defaults(func=cmd_inspect)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except OperatorAbort as e:
        print_status(f"Aborted: {e}. Nothing was changed.")
        return 130
    except ImageFormatError as e:
        print_error(f"Invalid image or bundle: {e}")
        return 1
    except KeyboardInterrupt:
        print_status("Interrupted")
        return 130
