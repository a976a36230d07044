"""Exception types for build, launch and boot failures."""


class RamOSError(Exception):
    """Base class for every error raised by ramos."""


class BuildFatal(RamOSError):
    """The build cannot produce a usable image.

    ``missing`` names every absent artifact at once; ``remediation`` is the
    package list that would fix it, when one is known.
    """

    def __init__(self, message, missing=(), remediation=None):
        super().__init__(message)
        self.missing = tuple(missing)
        self.remediation = tuple(remediation) if remediation else None


class RuntimeFatal(RamOSError):
    """Process 1 cannot trust any further state (virtual filesystems missing)."""


class OperatorAbort(RamOSError):
    """The operator declined at a confirmation gate. Nothing was changed."""


class KernelSwitchError(RamOSError):
    """kexec load or execute failed."""

    def __init__(self, message, executed=False):
        super().__init__(message)
        self.executed = executed


class ImageFormatError(RamOSError):
    """A cpio archive, zstd stream or self-extracting bundle is malformed."""


class TreeFrozenError(RamOSError):
    """A frozen filesystem tree was modified."""
