"""
Self-extracting artifact: a shell preamble, the ramos package, a marker line,
then an uncompressed tar holding ``vmlinuz-<version>`` and the compressed image.

The preamble starts the host's python3 on a short bootstrap stored in the
artifact itself. The bootstrap unpacks the embedded ramos package (a
base64-encoded zip) into a scratch directory, installs any missing
third-party requirement with pip, and runs ``ramos launch`` on the artifact.
The shell never reads past the ``exec`` line, so the payload is never parsed.
"""

import base64
import fnmatch
import io
import os
import stat
import tarfile
import zipfile
from dataclasses import dataclass

from .config import PACKAGE_DIR
from .errors import ImageFormatError

MARKER = b"__ARCHIVE_START__"
KERNEL_PATTERN = "vmlinuz-*"
IMAGE_PATTERN = "*.img"
SCAN_LIMIT = 1 << 22
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

# (import name, distribution name) the launcher needs on the target host
LAUNCH_REQUIREMENTS = (
    ("zstandard", "zstandard"),
    ("psutil", "psutil"),
    ("rich", "rich"),
    ("cryptography", "cryptography"),
)

PREAMBLE = r"""#!/bin/sh
# ZFS RAM boot bundle
#   kernel: {kernel_version}
#   image:  {image_name}
# Run as root on the host to switch into the RAM system.
PY="${{RAMOS_PYTHON:-python3}}"
if ! command -v "$PY" >/dev/null 2>&1; then
    echo "python3 is required to launch this bundle" >&2
    exit 1
fi
exec "$PY" -c 'import sys;d=open(sys.argv[1],"rb").read({scan_limit});s=d.index(b"\n#<ramos-bootstrap>\n");e=d.index(b"\n#</ramos-bootstrap>\n");exec(compile(d[s:e],sys.argv[1],"exec"))' "$0" "$@"
exit 1
"""

BOOTSTRAP = r'''import base64
import importlib
import importlib.util
import os
import shutil
import subprocess
import sys
import tempfile

REQUIREMENTS = @REQUIREMENTS@


def read_section(path, name):
    begin = ("#<%s>\n" % name).encode()
    end = ("#</%s>\n" % name).encode()
    lines = []
    inside = False
    with open(path, "rb") as f:
        for line in f:
            if line == begin:
                inside = True
            elif line == end:
                return b"".join(lines)
            elif inside:
                lines.append(line)
    sys.exit("%s: embedded %s section missing" % (path, name))


def install_missing(site):
    missing = [dist for module, dist in REQUIREMENTS if importlib.util.find_spec(module) is None]
    if not missing:
        return
    print("Installing launcher requirements: " + " ".join(missing))
    cmd = [sys.executable, "-m", "pip", "install", "--quiet", "--target", site] + missing
    if subprocess.run(cmd).returncode != 0:
        sys.exit("could not install %s; install python3-pip (or the packages) and run this file again"
                 % " ".join(missing))
    sys.path.insert(1, site)
    importlib.invalidate_caches()


bundle = os.path.abspath(sys.argv[1])
runtime = tempfile.mkdtemp(prefix="ramos-runtime-")
try:
    archive = os.path.join(runtime, "ramos.zip")
    with open(archive, "wb") as f:
        f.write(base64.b64decode(read_section(bundle, "ramos-package")))
    sys.path.insert(0, archive)
    install_missing(os.path.join(runtime, "site"))
    from ramos.cli import main
    code = main(["launch", bundle] + sys.argv[2:])
finally:
    shutil.rmtree(runtime, ignore_errors=True)
sys.exit(code)
'''


@dataclass(frozen=True)
class BundleContents:
    kernel: str
    image: str


def package_archive(package_dir=PACKAGE_DIR):
    """Zip of the ramos sources, byte-identical for identical sources."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for root, dirs, files in os.walk(package_dir):
            dirs[:] = sorted(d for d in dirs if d != "__pycache__")
            for name in sorted(files):
                if not name.endswith(".py"):
                    continue
                full = os.path.join(root, name)
                rel = os.path.relpath(full, package_dir).replace(os.sep, "/")
                info = zipfile.ZipInfo("ramos/" + rel, date_time=ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                with open(full, "rb") as fh:
                    zf.writestr(info, fh.read())
    return buf.getvalue()


def _section(name, body):
    if not body.endswith("\n"):
        body += "\n"
    return f"#<{name}>\n{body}#</{name}>\n"


def render_preamble(kernel_version, image_name, package=None):
    """Shell preamble, bootstrap and embedded package, everything before the marker."""
    if package is None:
        package = package_archive()
    bootstrap = BOOTSTRAP.replace("@REQUIREMENTS@", repr(LAUNCH_REQUIREMENTS))
    return (
        PREAMBLE.format(kernel_version=kernel_version, image_name=image_name, scan_limit=SCAN_LIMIT)
        + _section("ramos-bootstrap", bootstrap)
        + _section("ramos-package", base64.encodebytes(package).decode())
    )


def _tarinfo(name, size, mtime):
    info = tarfile.TarInfo(name)
    info.size = size
    info.mtime = mtime
    info.mode = 0o644
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def write_bundle(path, kernel_path, image_path, kernel_version, mtime=0):
    """Write the artifact to ``path`` and make it executable; returns its size."""
    image_name = os.path.basename(image_path)
    tmp = path + ".new"
    with open(tmp, "wb") as out:
        out.write(render_preamble(kernel_version, image_name).encode())
        out.write(MARKER + b"\n")
        with tarfile.open(fileobj=out, mode="w:", format=tarfile.GNU_FORMAT) as tar:
            for source, name in ((kernel_path, f"vmlinuz-{kernel_version}"), (image_path, image_name)):
                with open(source, "rb") as fh:
                    tar.addfile(_tarinfo(name, os.fstat(fh.fileno()).st_size, mtime), fh)
    os.chmod(tmp, os.stat(tmp).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    os.replace(tmp, path)
    return os.path.getsize(path)


def payload_offset(path):
    """Byte offset of the archive following the marker line."""
    with open(path, "rb") as f:
        head = f.read(SCAN_LIMIT)
    needle = b"\n" + MARKER + b"\n"
    index = head.find(needle)
    if index < 0:
        raise ImageFormatError(f"{path}: no {MARKER.decode()} marker found")
    return index + len(needle)


def locate(names, pattern):
    matches = sorted(n for n in names if fnmatch.fnmatch(n, pattern))
    return matches[0] if matches else None


def extract_bundle(path, dest_dir):
    """Unpack the embedded kernel and image into ``dest_dir``."""
    offset = payload_offset(path)
    os.makedirs(dest_dir, exist_ok=True)
    extracted = []
    with open(path, "rb") as f:
        f.seek(offset)
        try:
            with tarfile.open(fileobj=f, mode="r:") as tar:
                for member in tar:
                    name = os.path.basename(member.name)
                    if not member.isfile() or not name or name != member.name.lstrip("./"):
                        continue
                    source = tar.extractfile(member)
                    with open(os.path.join(dest_dir, name), "wb") as out:
                        while True:
                            chunk = source.read(1 << 20)
                            if not chunk:
                                break
                            out.write(chunk)
                    extracted.append(name)
        except tarfile.TarError as e:
            raise ImageFormatError(f"{path}: corrupt payload: {e}")
    kernel = locate(extracted, KERNEL_PATTERN)
    image = locate(extracted, IMAGE_PATTERN)
    if not kernel or not image:
        raise ImageFormatError(f"{path}: payload lacks a kernel ({KERNEL_PATTERN}) or image ({IMAGE_PATTERN})")
    return BundleContents(os.path.join(dest_dir, kernel), os.path.join(dest_dir, image))
