from ramos.config import BootConfig, BuildConfig


def test_boot_config_survives_json():
    config = BootConfig(ssh_port=2222, tmpfs_mounts=(("/tmp", "2G"), ("/scratch", None)),
                        installer_path="/root/install_os.sh")
    assert BootConfig.from_json(config.to_json()) == config


def test_unsized_mount_is_none_not_a_sentinel():
    config = BootConfig.from_json('{"tmpfs_mounts": [["/run", null]]}')
    assert config.tmpfs_mounts == (("/run", None),)


def test_unknown_keys_are_ignored():
    assert BootConfig.from_json('{"ssh_port": 22, "colour": "blue"}') == BootConfig()


def test_load_falls_back_to_defaults(tmp_path):
    assert BootConfig.load(str(tmp_path / "missing.json")) == BootConfig()
    broken = tmp_path / "boot.json"
    broken.write_text("{not json")
    assert BootConfig.load(str(broken)) == BootConfig()


def test_build_config_from_host(monkeypatch):
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1700000000")
    config = BuildConfig.from_host(kernel_version="6.1.0-18-amd64", output_dir="/srv/out")
    assert config.kernel_image == "/boot/vmlinuz-6.1.0-18-amd64"
    assert config.module_root == "/lib/modules/6.1.0-18-amd64"
    assert config.source_date_epoch == 1700000000
    assert config.image_path == "/srv/out/minimal-ram-system.img"
    assert config.artifact_path == "/srv/out/zfs-ram-boot.run"
    assert config.boot.installer_path is None


def test_installer_sets_boot_path():
    config = BuildConfig.from_host(kernel_version="6.1.0", installer_script="/opt/install.sh")
    assert config.installer_script == "/opt/install.sh"
    assert config.boot.installer_path == "/root/install_os.sh"


def test_with_overrides_ignores_none():
    config = BuildConfig.from_host(kernel_version="6.1.0")
    assert config.with_overrides(output_dir=None, compression_level=3).compression_level == 3
    assert config.with_overrides(output_dir=None).output_dir == "/tmp"
