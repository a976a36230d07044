"""
ramos - build and launch a memory-resident maintenance system.

Builds a minimal root filesystem from the host's own binaries, packs it into
an initramfs together with the running kernel, and switches the live server
into it with kexec so disks and pools can be reworked offline.
"""

__version__ = "1.0.0"
