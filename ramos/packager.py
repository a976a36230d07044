"""
Image Packager: serialise a frozen FilesystemTree into a zstd-compressed cpio
"newc" archive, the format the kernel unpacks into its initial rootfs.

Entries are written in sorted path order with sequential inode numbers and a
fixed mtime, so the same tree always produces the same bytes. Device nodes are
written as archive entries, which means building needs no mknod privileges.
"""

import os
import stat

import zstandard

from .errors import ImageFormatError
from .tree import DeviceNode, Directory, FilesystemTree, RegularFile, Symlink

NEWC_MAGIC = b"070701"
NEWC_CRC_MAGIC = b"070702"
HEADER_LEN = 110
TRAILER = "TRAILER!!!"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


def _pad(n):
    return (4 - n % 4) % 4


def newc_header(ino, mode, nlink, mtime, filesize, namesize, rdevmajor=0, rdevminor=0):
    fields = (ino, mode, 0, 0, nlink, mtime, filesize, 0, 0, rdevmajor, rdevminor, namesize, 0)
    return NEWC_MAGIC + b"".join(b"%08X" % f for f in fields)


def _entry(out, ino, name, mode, mtime, data=b"", nlink=1, rdev=(0, 0)):
    encoded = name.encode() + b"\0"
    header = newc_header(ino, mode, nlink, mtime, len(data), len(encoded), *rdev)
    out.write(header + encoded + b"\0" * _pad(len(header) + len(encoded)))
    if data:
        out.write(data)
        out.write(b"\0" * _pad(len(data)))


def write_cpio(tree, out, mtime=0):
    """Write ``tree`` as newc entries to the binary stream ``out``."""
    ino = 0
    for path, node in tree.items():
        ino += 1
        name = "." if path == "/" else path.lstrip("/")
        if isinstance(node, Directory):
            _entry(out, ino, name, stat.S_IFDIR | node.mode, mtime, nlink=2)
        elif isinstance(node, RegularFile):
            _entry(out, ino, name, stat.S_IFREG | node.mode, mtime, node.read())
        elif isinstance(node, Symlink):
            _entry(out, ino, name, stat.S_IFLNK | 0o777, mtime, node.target.encode())
        elif isinstance(node, DeviceNode):
            kind = stat.S_IFCHR if node.kind == "c" else stat.S_IFBLK
            _entry(out, ino, name, kind | node.mode, mtime, rdev=(node.major, node.minor))
    _entry(out, ino + 1, TRAILER, 0, 0)


def write_image(tree, path, level=19, mtime=0):
    """Compress ``tree`` into ``path``; returns the compressed size in bytes."""
    if not tree.frozen:
        tree.freeze()
    cctx = zstandard.ZstdCompressor(level=level, write_checksum=True)
    tmp = path + ".new"
    with open(tmp, "wb") as fh:
        with cctx.stream_writer(fh, closefd=False) as compressor:
            write_cpio(tree, compressor, mtime)
    os.replace(tmp, path)
    return os.path.getsize(path)


# --- reading ---

def _read_exact(stream, n):
    chunks = []
    remaining = n
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            raise ImageFormatError(f"archive truncated ({n - remaining} of {n} bytes)")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def iter_cpio(stream):
    """Yield (name, mode, data, rdevmajor, rdevminor) until the trailer."""
    while True:
        header = stream.read(HEADER_LEN)
        if not header:
            return
        if len(header) < HEADER_LEN:
            header += _read_exact(stream, HEADER_LEN - len(header))
        if header[:6] not in (NEWC_MAGIC, NEWC_CRC_MAGIC):
            raise ImageFormatError(f"bad cpio magic {header[:6]!r}")
        try:
            fields = [int(header[6 + i * 8:14 + i * 8], 16) for i in range(13)]
        except ValueError:
            raise ImageFormatError("malformed cpio header")
        mode, filesize, rdevmajor, rdevminor, namesize = (
            fields[1], fields[6], fields[9], fields[10], fields[11])
        name = _read_exact(stream, namesize)[:-1].decode()
        _read_exact(stream, _pad(HEADER_LEN + namesize))
        data = _read_exact(stream, filesize) if filesize else b""
        _read_exact(stream, _pad(filesize))
        if name == TRAILER:
            return
        yield name, mode, data, rdevmajor, rdevminor


def read_cpio(stream):
    """Rebuild a FilesystemTree from a newc stream (file contents held in memory)."""
    tree = FilesystemTree()
    with tree.step("unpack"):
        for name, mode, data, major, minor in iter_cpio(stream):
            if name.startswith("./"):
                name = name[2:]
            path = "/" if name in (".", "") else "/" + name.lstrip("/")
            kind = stat.S_IFMT(mode)
            perm = stat.S_IMODE(mode)
            if kind == stat.S_IFDIR:
                tree.mkdir(path, perm)
            elif kind == stat.S_IFREG:
                tree.add_file(path, data=data, mode=perm, replace=True)
            elif kind == stat.S_IFLNK:
                tree.symlink(path, data.decode(), replace=True)
            elif kind in (stat.S_IFCHR, stat.S_IFBLK):
                tree.add_device(path, "c" if kind == stat.S_IFCHR else "b", major, minor, perm)
    return tree


def read_image(path):
    with open(path, "rb") as fh:
        if fh.read(4) != ZSTD_MAGIC:
            raise ImageFormatError(f"{path} is not a zstd-compressed image")
        fh.seek(0)
        reader = zstandard.ZstdDecompressor().stream_reader(fh, read_across_frames=True)
        try:
            return read_cpio(reader)
        except zstandard.ZstdError as e:
            raise ImageFormatError(f"{path}: {e}")


def extract(tree, dest_dir, paths):
    """Write selected regular files and symlinks from ``tree`` below ``dest_dir``."""
    written = []
    for path in paths:
        node = tree.get(path)
        target = os.path.join(dest_dir, path.lstrip("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        if isinstance(node, RegularFile):
            with open(target, "wb") as f:
                f.write(node.read())
            os.chmod(target, node.mode)
            written.append(target)
        elif isinstance(node, Symlink):
            if os.path.lexists(target):
                os.remove(target)
            os.symlink(node.target, target)
            written.append(target)
    return written
