import pytest

from ramos import cli
from ramos.errors import BuildFatal, KernelSwitchError, OperatorAbort
from ramos.packager import write_image
from ramos.tree import FilesystemTree


def test_command_is_required():
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 2


def test_build_options():
    args = cli.build_parser().parse_args(
        ["build", "--kernel-version", "6.1.0", "--extra-binary", "/opt/bin/tool",
         "--extra-binary", "jq", "--allow-missing-zfs"])
    assert args.kernel_version == "6.1.0"
    assert args.extra_binary == ["/opt/bin/tool", "jq"]
    assert args.allow_missing_zfs
    assert args.func is cli.cmd_build


def make_image(tmp_path, complete):
    tree = FilesystemTree()
    tree.add_file("/init", data="#!/usr/bin/python3\n", mode=0o755)
    tree.add_file("/bin/busybox", data=b"\x7fELF", mode=0o755)
    if complete:
        tree.add_file("/usr/bin/dropbear", data=b"\x7fELF", mode=0o755)
    path = tmp_path / "image.img"
    write_image(tree, str(path), level=1)
    return str(path)


def test_inspect_exit_codes(tmp_path):
    assert cli.main(["inspect", make_image(tmp_path, True)]) == 0
    assert cli.main(["inspect", make_image(tmp_path, False)]) == 1


def test_inspect_rejects_non_image(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello")
    assert cli.main(["inspect", str(path)]) == 1


class FailingLauncher:
    error = None

    def __init__(self, bundle, workdir=None):
        self.bundle = bundle

    def run(self):
        raise self.error


@pytest.mark.parametrize("error,code", [
    (OperatorAbort("kernel switch declined"), 130),
    (BuildFatal("the launcher must run as root"), 1),
    (KernelSwitchError("kexec load failed"), 1),
    (KeyboardInterrupt(), 130),
])
def test_launch_exit_codes(monkeypatch, error, code):
    monkeypatch.setattr(FailingLauncher, "error", error)
    monkeypatch.setattr(cli, "Launcher", FailingLauncher)
    assert cli.main(["launch", "/tmp/zfs-ram-boot.run"]) == code


def test_build_failure_offers_no_install_without_remediation(monkeypatch):
    class FailingPipeline:
        def __init__(self, config, confirm=None):
            self.config = config

        def run(self):
            raise BuildFatal("output directory /nope is not writable")

    monkeypatch.setattr(cli, "BuildPipeline", FailingPipeline)
    monkeypatch.setattr(cli.prompts, "confirm_gate", lambda question: pytest.fail("asked"))
    assert cli.main(["build", "--output-dir", "/nope"]) == 1


def test_declined_remediation_installs_nothing(monkeypatch):
    commands = []
    monkeypatch.setattr(cli, "run_command", lambda cmd, **kw: commands.append(cmd))
    monkeypatch.setattr(cli.prompts, "confirm_gate", lambda question: False)
    cli.offer_remediation(BuildFatal("missing", missing=("zpool",), remediation=["zfsutils-linux"]))
    assert commands == []
