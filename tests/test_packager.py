import io

import pytest
import zstandard

from ramos.errors import ImageFormatError
from ramos.packager import extract, read_cpio, read_image, write_cpio, write_image
from ramos.tree import DEVICE_NODES, DeviceNode, FilesystemTree, RegularFile, Symlink


def sample_tree(tmp_path):
    busybox = tmp_path / "busybox"
    busybox.write_bytes(b"\x7fELF" + b"\0" * 61)
    busybox.chmod(0o755)
    tree = FilesystemTree()
    tree.mkdir("/tmp", 0o1777)
    for path, kind, major, minor, mode in DEVICE_NODES:
        tree.add_device(path, kind, major, minor, mode)
    tree.add_file("/bin/busybox", source=str(busybox))
    tree.symlink("/bin/ls", "busybox")
    tree.add_file("/root/.profile", data="alias ll='ls -l'\n")
    tree.add_file("/etc/ramos/empty", data=b"")
    return tree


def test_same_tree_same_bytes(tmp_path):
    first = tmp_path / "a.img"
    second = tmp_path / "b.img"
    write_image(sample_tree(tmp_path), str(first), level=3)
    write_image(sample_tree(tmp_path), str(second), level=3)
    assert first.read_bytes() == second.read_bytes()


def test_packaging_freezes_the_tree(tmp_path):
    tree = sample_tree(tmp_path)
    write_image(tree, str(tmp_path / "x.img"), level=1)
    assert tree.frozen


def test_read_back_preserves_every_node(tmp_path):
    tree = sample_tree(tmp_path)
    path = tmp_path / "image.img"
    write_image(tree, str(path), level=3)
    restored = read_image(str(path))
    assert restored.fingerprint() == tree.fingerprint()
    assert restored.get("/dev/console") == DeviceNode("c", 5, 1, 0o600, "unpack")
    assert restored.get("/tmp").mode == 0o1777
    assert restored.read("/root/.profile") == b"alias ll='ls -l'\n"
    assert restored.get("/bin/ls").target == "busybox"
    assert restored.read("/etc/ramos/empty") == b""


def test_cpio_layout(tmp_path):
    out = io.BytesIO()
    write_cpio(sample_tree(tmp_path), out, mtime=1700000000)
    data = out.getvalue()
    assert data.startswith(b"070701")
    assert len(data) % 4 == 0
    assert b"TRAILER!!!\0" in data
    # root directory is written as "."
    assert data[110:112] == b".\0"
    assert b"%08X" % 1700000000 in data[:110]


def test_not_zstd_is_rejected(tmp_path):
    bogus = tmp_path / "bogus.img"
    bogus.write_bytes(b"070701" + b"0" * 200)
    with pytest.raises(ImageFormatError):
        read_image(str(bogus))


def test_bad_magic_is_rejected():
    with pytest.raises(ImageFormatError):
        read_cpio(io.BytesIO(b"123456" + b"0" * 104))


def test_truncated_archive_is_rejected(tmp_path):
    out = io.BytesIO()
    write_cpio(sample_tree(tmp_path), out)
    with pytest.raises(ImageFormatError):
        read_cpio(io.BytesIO(out.getvalue()[:200]))


def test_concatenated_frames_are_read(tmp_path):
    out = io.BytesIO()
    write_cpio(sample_tree(tmp_path), out)
    raw = out.getvalue()
    cctx = zstandard.ZstdCompressor(level=1)
    path = tmp_path / "split.img"
    path.write_bytes(cctx.compress(raw[:512]) + cctx.compress(raw[512:]))
    assert "/bin/busybox" in read_image(str(path))


def test_extract_selected_paths(tmp_path):
    tree = sample_tree(tmp_path)
    dest = tmp_path / "out"
    written = extract(tree, str(dest), ["/bin/busybox", "/bin/ls", "/dev/null"])
    assert sorted(written) == sorted([str(dest / "bin/busybox"), str(dest / "bin/ls")])
    assert (dest / "bin/busybox").read_bytes().startswith(b"\x7fELF")
    assert (dest / "bin/ls").is_symlink()
    assert isinstance(tree.get("/bin/busybox"), RegularFile)
    assert isinstance(tree.get("/bin/ls"), Symlink)
