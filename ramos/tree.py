"""
In-memory model of the image's root filesystem.

The assembler owns one FilesystemTree, adds typed nodes to it step by step and
freezes it before handing it to the packager. Regular files reference their
host source path (read lazily) or carry their bytes directly.
"""

import contextlib
import hashlib
import os
import posixpath
import stat
import threading
from dataclasses import dataclass
from typing import Optional

from .errors import TreeFrozenError


@dataclass(frozen=True)
class Directory:
    mode: int = 0o755
    step: str = ""


@dataclass(frozen=True)
class RegularFile:
    mode: int = 0o644
    source: Optional[str] = None
    data: Optional[bytes] = None
    step: str = ""

    def read(self):
        if self.data is not None:
            return self.data
        with open(self.source, "rb") as f:
            return f.read()


@dataclass(frozen=True)
class DeviceNode:
    kind: str  # "c" or "b"
    major: int
    minor: int
    mode: int = 0o600
    step: str = ""


@dataclass(frozen=True)
class Symlink:
    target: str
    step: str = ""


# console, null, zero; /dev/pts is a directory that devpts mounts over
DEVICE_NODES = (
    ("/dev/console", "c", 5, 1, 0o600),
    ("/dev/null", "c", 1, 3, 0o666),
    ("/dev/zero", "c", 1, 5, 0o666),
)


def normpath(path):
    path = posixpath.normpath("/" + path.lstrip("/"))
    return "/" if path == "//" else path


class FilesystemTree:
    def __init__(self):
        self._nodes = {"/": Directory(0o755, "skeleton")}
        self._lock = threading.RLock()
        self._frozen = False
        self._step = ""
        self.steps = []

    # --- bookkeeping ---

    @contextlib.contextmanager
    def step(self, name):
        """Attribute every node added inside the block to ``name``."""
        self._check_mutable()
        previous, self._step = self._step, name
        self.steps.append(name)
        try:
            yield self
        finally:
            self._step = previous

    def freeze(self):
        self._frozen = True
        return self

    @property
    def frozen(self):
        return self._frozen

    def _check_mutable(self):
        if self._frozen:
            raise TreeFrozenError("filesystem tree is frozen")

    # --- queries ---

    def __contains__(self, path):
        return normpath(path) in self._nodes

    def __len__(self):
        return len(self._nodes)

    def get(self, path):
        return self._nodes.get(normpath(path))

    def paths(self):
        return sorted(self._nodes)

    def items(self):
        for path in self.paths():
            yield path, self._nodes[path]

    def files(self):
        return [(p, n) for p, n in self.items() if isinstance(n, RegularFile)]

    def read(self, path):
        node = self.get(path)
        if not isinstance(node, RegularFile):
            raise KeyError(path)
        return node.read()

    def fingerprint(self):
        """Digest of every path, type, mode and content; equal trees hash equal."""
        digest = hashlib.sha256()
        for path, node in self.items():
            digest.update(path.encode() + b"\0" + type(node).__name__.encode())
            if isinstance(node, RegularFile):
                digest.update(b"%o" % node.mode)
                digest.update(hashlib.sha256(node.read()).digest())
            elif isinstance(node, Symlink):
                digest.update(node.target.encode())
            elif isinstance(node, DeviceNode):
                digest.update(f"{node.kind}{node.major}:{node.minor}:{node.mode:o}".encode())
            else:
                digest.update(b"%o" % node.mode)
        return digest.hexdigest()

    # --- mutation ---

    def _put(self, path, node, replace):
        path = normpath(path)
        with self._lock:
            self._check_mutable()
            if path in self._nodes and not replace:
                return False
            self._ensure_parents(path)
            self._nodes[path] = node
            return True

    def _ensure_parents(self, path):
        parent = posixpath.dirname(path)
        missing = []
        while parent not in self._nodes:
            missing.append(parent)
            parent = posixpath.dirname(parent)
        if not isinstance(self._nodes[parent], Directory):
            raise NotADirectoryError(f"{parent} is not a directory in the image")
        for directory in reversed(missing):
            self._nodes[directory] = Directory(0o755, self._step)

    def mkdir(self, path, mode=0o755):
        path = normpath(path)
        with self._lock:
            existing = self._nodes.get(path)
            if isinstance(existing, Directory):
                if existing.mode != mode:
                    self._check_mutable()
                    self._nodes[path] = Directory(mode, existing.step)
                return False
            return self._put(path, Directory(mode, self._step), replace=False)

    def add_file(self, path, source=None, data=None, mode=None, replace=False):
        """Add a regular file unless ``path`` is taken (or ``replace`` is set)."""
        if (source is None) == (data is None):
            raise ValueError("exactly one of source or data is required")
        if isinstance(data, str):
            data = data.encode()
        if mode is None:
            mode = stat.S_IMODE(os.stat(source).st_mode) if source else 0o644
        return self._put(path, RegularFile(mode, source, data, self._step), replace)

    def add_device(self, path, kind, major, minor, mode=0o600):
        return self._put(path, DeviceNode(kind, major, minor, mode, self._step), replace=False)

    def symlink(self, path, target, replace=False):
        return self._put(path, Symlink(target, self._step), replace)

    def add_host_tree(self, source_dir, dest_dir, skip=None):
        """Mirror a host directory into the tree; returns the number of files added.

        ``skip(relpath)`` may exclude entries; excluded directories are not descended.
        """
        added = 0
        for root, dirs, files in os.walk(source_dir):
            rel_root = os.path.relpath(root, source_dir)
            kept = []
            for d in sorted(dirs):
                rel = os.path.normpath(os.path.join(rel_root, d))
                if skip and skip(rel):
                    continue
                full = os.path.join(root, d)
                if os.path.islink(full):
                    self.symlink(posixpath.join(dest_dir, rel), os.readlink(full))
                    continue
                kept.append(d)
                self.mkdir(posixpath.join(dest_dir, rel), stat.S_IMODE(os.stat(full).st_mode))
            dirs[:] = kept
            for name in sorted(files):
                rel = os.path.normpath(os.path.join(rel_root, name))
                if skip and skip(rel):
                    continue
                full = os.path.join(root, name)
                dest = posixpath.join(dest_dir, rel)
                if os.path.islink(full):
                    self.symlink(dest, os.readlink(full))
                elif os.path.isfile(full):
                    if self.add_file(dest, source=full):
                        added += 1
        return added
