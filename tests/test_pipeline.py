import pytest

from ramos.config import BuildConfig
from ramos.errors import BuildFatal
from ramos.pipeline import BuildPipeline, inspect_tree, verify_image
from ramos.tree import FilesystemTree


def bootable_tree(without=()):
    tree = FilesystemTree()
    for path, data in (("/init", "#!/usr/bin/python3\n"), ("/bin/busybox", b"\x7fELF"),
                       ("/usr/bin/dropbear", b"\x7fELF")):
        if path not in without:
            tree.add_file(path, data=data, mode=0o755)
    tree.add_file("/etc/dropbear/dropbear_ed25519_host_key", data=b"key", mode=0o600)
    for applet in ("ls", "cat", "vi"):
        tree.symlink(f"/bin/{applet}", "busybox")
    tree.symlink("/bin/sh", "/sbin/bash")
    return tree


@pytest.fixture
def config(tmp_path):
    kernel = tmp_path / "vmlinuz-6.1.0-18-amd64"
    kernel.write_bytes(b"MZ")
    out = tmp_path / "out"
    out.mkdir()
    return BuildConfig(kernel_version="6.1.0-18-amd64", kernel_image=str(kernel),
                       module_root=str(tmp_path / "modules"), output_dir=str(out),
                       compression_level=3, source_date_epoch=1700000000)


def test_inspect_tree():
    report = inspect_tree(bootable_tree())
    assert report.bootable
    assert report.applets == 3
    assert report.host_keys == 1


def test_host_keys_count_only_regular_files():
    tree = bootable_tree()
    tree.symlink("/etc/dropbear/dropbear_rsa_host_key", "/dev/null")
    tree.mkdir("/etc/dropbear/old")
    assert inspect_tree(tree).host_keys == 1


def test_inspect_tree_without_ssh_server():
    tree = bootable_tree(without=("/usr/bin/dropbear",))
    assert not inspect_tree(tree).bootable


def test_non_root_build_is_refused(config):
    with pytest.raises(BuildFatal):
        BuildPipeline(config, geteuid=lambda: 1000).check_env()


def test_missing_kernel_image(config, tmp_path):
    config = config.with_overrides(kernel_image=str(tmp_path / "nope"))
    with pytest.raises(BuildFatal) as excinfo:
        BuildPipeline(config, geteuid=lambda: 0).check_env()
    assert excinfo.value.missing == (str(tmp_path / "nope"),)


def test_unwritable_output(config, tmp_path):
    config = config.with_overrides(output_dir=str(tmp_path / "missing-dir"))
    with pytest.raises(BuildFatal):
        BuildPipeline(config, geteuid=lambda: 0).check_env()


def test_missing_pool_tool_names_it(config):
    def finder(spec):
        return None if spec.name in ("zpool", "htop") else f"/usr/sbin/{spec.name}"

    pipeline = BuildPipeline(config, finder=finder, geteuid=lambda: 0)
    with pytest.raises(BuildFatal) as excinfo:
        pipeline.resolve()
    assert excinfo.value.missing == ("zpool",)
    assert excinfo.value.remediation == ("zfsutils-linux",)
    assert "zpool" in str(excinfo.value)


def test_missing_optional_tool_is_a_warning(config):
    pipeline = BuildPipeline(config, finder=lambda spec: None if spec.name == "htop" else "/bin/x",
                             geteuid=lambda: 0)
    pipeline.resolve()
    assert "htop" in pipeline.resolution.missing_optional


def test_package_verify_bundle(config):
    pipeline = BuildPipeline(config, geteuid=lambda: 0)
    pipeline.tree = bootable_tree()
    pipeline.package()
    pipeline.verify()
    pipeline.bundle()
    assert pipeline.report.bootable
    assert verify_image(config.image_path).fingerprint == bootable_tree().fingerprint()
    with open(config.artifact_path, "rb") as f:
        assert f.read(10) == b"#!/bin/sh\n"


def test_verify_rejects_incomplete_image(config):
    pipeline = BuildPipeline(config, geteuid=lambda: 0)
    tree = bootable_tree(without=("/bin/busybox",))
    pipeline.tree = tree
    pipeline.package()
    with pytest.raises(BuildFatal) as excinfo:
        pipeline.verify()
    assert excinfo.value.missing == ("busybox",)


def test_scratch_is_removed_after_failure(config, monkeypatch, tmp_path):
    pipeline = BuildPipeline(config, geteuid=lambda: 0, finder=lambda spec: None)
    monkeypatch.setattr(pipeline, "check_env", lambda: None)
    with pytest.raises(BuildFatal):
        pipeline.run()
    assert pipeline.scratch is None
    assert [p.name for p in (tmp_path / "out").iterdir()] == []
