import pytest

from conftest import FakeRunner
from ramos import netreplay

CAPTURED = [
    {"mac": "aa:bb:cc:dd:ee:01", "address": "10.0.0.5/24", "gateway": "10.0.0.1", "routes": [], "name": "eth0"},
    {"mac": "aa:bb:cc:dd:ee:02", "address": "192.168.1.9/24", "gateway": None, "routes": [], "name": "eth1"},
]


def make_sysfs(tmp_path, mapping):
    sysfs = tmp_path / "net"
    for name, mac in mapping.items():
        (sysfs / name).mkdir(parents=True)
        (sysfs / name / "address").write_text(mac + "\n")
    return str(sysfs)


def assignments(runner):
    """{iface: (address, default gateway or None)} from the recorded ip commands."""
    result = {}
    for cmd in runner.commands("ip"):
        if cmd[1:3] == ["addr", "add"]:
            result.setdefault(cmd[-1], [None, None])[0] = cmd[3]
        if cmd[1:4] == ["route", "add", "default"]:
            result.setdefault(cmd[-1], [None, None])[1] = cmd[5]
    return {k: tuple(v) for k, v in result.items()}


def test_replay_by_mac_regardless_of_names(tmp_path):
    same = make_sysfs(tmp_path / "a", {"eth0": "aa:bb:cc:dd:ee:01", "eth1": "aa:bb:cc:dd:ee:02"})
    swapped = make_sysfs(tmp_path / "b", {"eth1": "aa:bb:cc:dd:ee:01", "eth0": "aa:bb:cc:dd:ee:02"})

    first, second = FakeRunner(), FakeRunner()
    netreplay.configure_all(CAPTURED, same, first)
    configured = netreplay.configure_all(CAPTURED, swapped, second)

    assert assignments(first) == {"eth0": ("10.0.0.5/24", "10.0.0.1"), "eth1": ("192.168.1.9/24", None)}
    assert assignments(second) == {"eth1": ("10.0.0.5/24", "10.0.0.1"), "eth0": ("192.168.1.9/24", None)}
    assert configured == {"aa:bb:cc:dd:ee:01": "eth1", "aa:bb:cc:dd:ee:02": "eth0"}
    defaults = [c for c in second.commands("ip") if c[1:4] == ["route", "add", "default"]]
    assert defaults == [["ip", "route", "add", "default", "via", "10.0.0.1", "dev", "eth1"]]


def test_absent_mac_is_a_warning_only(tmp_path, capsys):
    sysfs = make_sysfs(tmp_path, {"ens3": "aa:bb:cc:dd:ee:02"})
    runner = FakeRunner()
    configured = netreplay.configure_all(CAPTURED, sysfs, runner)
    assert configured == {"aa:bb:cc:dd:ee:02": "ens3"}
    assert "aa:bb:cc:dd:ee:01" in capsys.readouterr().out


def test_extra_routes_and_host_gateway():
    record = {"mac": "aa:bb:cc:dd:ee:05", "address": "203.0.113.7/32", "gateway": "203.0.113.1",
              "routes": [["10.8.0.0/16", "203.0.113.1"], ["169.254.0.0/16", None]]}
    assert netreplay.plan_interface(record, "eth0") == [
        ["ip", "link", "set", "eth0", "up"],
        ["ip", "addr", "add", "203.0.113.7/32", "dev", "eth0"],
        ["ip", "route", "add", "203.0.113.1", "dev", "eth0"],
        ["ip", "route", "add", "default", "via", "203.0.113.1", "dev", "eth0"],
        ["ip", "route", "add", "10.8.0.0/16", "via", "203.0.113.1", "dev", "eth0"],
        ["ip", "route", "add", "169.254.0.0/16", "dev", "eth0"],
    ]


def test_route_failure_is_tolerated_address_failure_is_not():
    record = CAPTURED[0]
    route_fails = FakeRunner({("ip", "route"): (2, "", "RTNETLINK answers: File exists")})
    assert netreplay.configure_interface(record, "eth0", route_fails)
    addr_fails = FakeRunner({("ip", "addr"): (2, "", "Cannot assign")})
    assert not netreplay.configure_interface(record, "eth0", addr_fails)


def test_main_exit_status(monkeypatch):
    monkeypatch.setattr(netreplay, "configure_all", lambda interfaces: {})
    assert netreplay.main(CAPTURED) == 1


def test_cmdline_override_by_netmac(tmp_path):
    sysfs = make_sysfs(tmp_path, {"eth0": "aa:bb:cc:dd:ee:01", "eth1": "aa:bb:cc:dd:ee:02"})
    params = netreplay.parse_cmdline(
        "rdinit=/init rw quiet ip=192.0.2.10::192.0.2.1:255.255.255.0:ramos::off netmac=AA:BB:CC:DD:EE:02")
    record, iface = netreplay.record_from_cmdline(params, sysfs)
    assert iface == "eth1"
    assert record == {"mac": "aa:bb:cc:dd:ee:02", "address": "192.0.2.10/24",
                      "gateway": "192.0.2.1", "routes": []}


def test_cmdline_override_by_device(tmp_path):
    sysfs = make_sysfs(tmp_path, {"eth0": "aa:bb:cc:dd:ee:01", "eth1": "aa:bb:cc:dd:ee:02"})
    params = netreplay.parse_cmdline("ip=192.0.2.10:::255.255.0.0::eth1:off")
    record, iface = netreplay.record_from_cmdline(params, sysfs)
    assert iface == "eth1"
    assert record["address"] == "192.0.2.10/16"
    assert record["gateway"] is None


@pytest.mark.parametrize("cmdline", ["rw quiet", "ip=dhcp", "ip="])
def test_cmdline_without_static_address(tmp_path, cmdline):
    sysfs = make_sysfs(tmp_path, {"eth0": "aa:bb:cc:dd:ee:01"})
    assert netreplay.record_from_cmdline(netreplay.parse_cmdline(cmdline), sysfs) is None


def test_first_ethernet_skips_other_links(tmp_path):
    sysfs = make_sysfs(tmp_path, {"wlan0": "aa:00:00:00:00:01", "enp3s0": "aa:00:00:00:00:02",
                                  "eth0": "aa:00:00:00:00:03", "lo": "00:00:00:00:00:00"})
    assert netreplay.first_ethernet(sysfs) == ["enp3s0", "eth0"]


def test_dhcp_is_bounded():
    runner = FakeRunner({("udhcpc",): (1, "")})
    assert not netreplay.dhcp("eth0", 10, 3, runner)
    (udhcpc,) = runner.commands("udhcpc")
    assert udhcpc[:7] == ["udhcpc", "-i", "eth0", "-t", "10", "-T", "3"]


def test_current_addresses_skips_loopback():
    runner = FakeRunner({("ip", "-4", "-o", "addr", "show"): (0, (
        "1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever\n"
        "2: eth0    inet 10.0.0.5/24 brd 10.0.0.255 scope global eth0\\       valid_lft forever\n"
    ))})
    assert netreplay.current_addresses(runner) == [("eth0", "10.0.0.5")]
