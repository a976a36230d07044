from conftest import FakeRunner

from ramos.resolver import parse_ldd_output, resolve_libraries

LDD_OUTPUT = """\tlinux-vdso.so.1 (0x00007ffcbd5f2000)
\tlibz.so.1 => /lib/x86_64-linux-gnu/libz.so.1 (0x00007f2a1c000000)
\tlibcrypt.so.1 => /lib/x86_64-linux-gnu/libcrypt.so.1 (0x00007f2a1bf00000)
\tlibc.so.6 => /lib/x86_64-linux-gnu/libc.so.6 (0x00007f2a1bc00000)
\tlibgone.so.3 => not found
\t/lib64/ld-linux-x86-64.so.2 (0x00007f2a1c100000)
"""


def test_parse_ldd_output_collects_paths_and_loader():
    libraries, missing = parse_ldd_output(LDD_OUTPUT)
    assert libraries == frozenset([
        "/lib/x86_64-linux-gnu/libz.so.1",
        "/lib/x86_64-linux-gnu/libcrypt.so.1",
        "/lib/x86_64-linux-gnu/libc.so.6",
        "/lib64/ld-linux-x86-64.so.2",
    ])
    assert missing == ("libgone.so.3",)


def test_vdso_is_dropped():
    libraries, _ = parse_ldd_output("\tlinux-vdso.so.1 (0x00007ffcbd5f2000)\n")
    assert libraries == frozenset()


def test_resolve_reports_missing_without_failing():
    runner = FakeRunner({("ldd",): (0, LDD_OUTPUT)})
    resolved = resolve_libraries("/usr/sbin/dropbear", runner)
    assert resolved.binary == "/usr/sbin/dropbear"
    assert "/lib/x86_64-linux-gnu/libz.so.1" in resolved.libraries
    assert resolved.missing == ("libgone.so.3",)
    assert not resolved.static
    assert runner.calls == [["ldd", "/usr/sbin/dropbear"]]


def test_static_binary_has_empty_closure():
    runner = FakeRunner({("ldd",): (1, "", "\tnot a dynamic executable\n")})
    resolved = resolve_libraries("/bin/busybox", runner)
    assert resolved.static
    assert resolved.libraries == frozenset()
    assert resolved.missing == ()


def test_resolution_is_idempotent():
    runner = FakeRunner({("ldd",): (0, LDD_OUTPUT)})
    assert resolve_libraries("/sbin/zpool", runner) == resolve_libraries("/sbin/zpool", runner)


def test_ldd_failure_is_reported_as_missing():
    runner = FakeRunner({("ldd",): (127, "", "ldd: not found")})
    resolved = resolve_libraries("/sbin/zfs", runner)
    assert resolved.missing == ("<ldd failed>",)
