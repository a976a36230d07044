"""
Network bring-up inside the RAM system.

Runs under process 1 with the standard library only. Interfaces captured on
the source host are found again by MAC address, so the kernel is free to
enumerate them under different names or in a different order.
"""

import glob
import ipaddress
import os
import time

from .console import print_status, print_success, print_warning, run_command

SYSFS_NET = "/sys/class/net"
UDHCPC_SCRIPT = "/usr/share/udhcpc/default.script"


def read_macs(sysfs=SYSFS_NET):
    """Map MAC address -> current interface name, loopback excluded."""
    macs = {}
    for path in sorted(glob.glob(os.path.join(sysfs, "*"))):
        name = os.path.basename(path)
        if name == "lo":
            continue
        try:
            with open(os.path.join(path, "address")) as f:
                mac = f.read().strip().lower()
        except OSError:
            continue
        if mac:
            macs.setdefault(mac, name)
    return macs


def plan_interface(record, iface):
    """Commands that give ``iface`` the captured address, gateway and routes."""
    address = record["address"]
    gateway = record.get("gateway")
    commands = [
        ["ip", "link", "set", iface, "up"],
        ["ip", "addr", "add", address, "dev", iface],
    ]
    if gateway:
        if address.endswith("/32"):
            # on-link host route first, otherwise the gateway is unreachable
            commands.append(["ip", "route", "add", gateway, "dev", iface])
        commands.append(["ip", "route", "add", "default", "via", gateway, "dev", iface])
    for destination, via in record.get("routes", ()):
        if via:
            commands.append(["ip", "route", "add", destination, "via", via, "dev", iface])
        else:
            commands.append(["ip", "route", "add", destination, "dev", iface])
    return commands


def configure_interface(record, iface, runner=run_command):
    print_status(f"Configuring {iface} (MAC: {record['mac']})...")
    ok = True
    for cmd in plan_interface(record, iface):
        result = runner(cmd)
        if result.returncode != 0 and cmd[1] != "route":
            ok = False
            print_warning(f"{' '.join(cmd)} failed: {(result.stderr or '').strip()}")
    print_success(f"{iface}: {record['address']}" + (f" via {record['gateway']}" if record.get("gateway") else ""))
    return ok


def configure_all(interfaces, sysfs=SYSFS_NET, runner=run_command):
    """Apply every captured record; returns {mac: iface} for those configured.

    A captured MAC with no matching interface is a warning for that record only.
    """
    macs = read_macs(sysfs)
    configured = {}
    for record in interfaces:
        mac = record["mac"].lower()
        iface = macs.get(mac)
        if not iface:
            print_warning(f"No interface found with MAC {mac}")
            continue
        if configure_interface(record, iface, runner):
            configured[mac] = iface
    return configured


def main(interfaces):
    configured = configure_all(interfaces)
    return 0 if configured else 1


# --- kernel command line overrides ---

def parse_cmdline(text):
    params = {}
    for token in text.split():
        key, sep, value = token.partition("=")
        params[key] = value if sep else ""
    return params


def record_from_cmdline(params, sysfs=SYSFS_NET):
    """Build (record, iface) from ``ip=`` and ``netmac=``; None if not usable.

    ip=<client-ip>:<server-ip>:<gw-ip>:<netmask>:<hostname>:<device>:<autoconf>
    """
    spec = params.get("ip")
    if not spec:
        return None
    fields = (spec.split(":") + [""] * 7)[:7]
    client, _server, gateway, netmask, _host, device, _auto = fields
    if not client or client in ("dhcp", "on", "any"):
        return None
    prefix = ipaddress.IPv4Network(f"0.0.0.0/{netmask or '255.255.255.0'}").prefixlen
    macs = read_macs(sysfs)
    iface = None
    mac = params.get("netmac", "").lower()
    if mac:
        iface = macs.get(mac)
    if not iface and device and device in macs.values():
        iface = device
    if not iface:
        candidates = first_ethernet(sysfs)
        iface = candidates[0] if candidates else None
    if not iface:
        return None
    mac = mac or next((m for m, n in macs.items() if n == iface), "")
    record = {"mac": mac, "address": f"{client}/{prefix}", "gateway": gateway or None, "routes": []}
    return record, iface


# --- fallback ---

def first_ethernet(sysfs=SYSFS_NET):
    names = sorted(os.path.basename(p) for p in glob.glob(os.path.join(sysfs, "*")))
    return [n for n in names if n.startswith(("eth", "en"))]


def coldplug(sys_root="/sys"):
    """Ask the kernel to re-announce devices; there is no udev to have caught them."""
    patterns = ("class/net/*/uevent", "bus/*/devices/*/uevent")
    for pattern in patterns:
        for uevent in glob.glob(os.path.join(sys_root, pattern)):
            try:
                with open(uevent, "w") as f:
                    f.write("add")
            except OSError:
                pass
    time.sleep(1)


def dhcp(iface, retries, timeout, runner=run_command):
    """One bounded udhcpc run: ``retries`` discovers, ``timeout`` seconds apart."""
    runner(["ip", "link", "set", iface, "up"])
    result = runner([
        "udhcpc", "-i", iface, "-t", str(retries), "-T", str(timeout),
        "-n", "-q", "-s", UDHCPC_SCRIPT,
    ], timeout=retries * timeout + 30)
    return result.returncode == 0


def current_addresses(runner=run_command):
    result = runner(["ip", "-4", "-o", "addr", "show"])
    addresses = []
    for line in (result.stdout or "").splitlines():
        tokens = line.split()
        if len(tokens) >= 4 and tokens[1] != "lo" and tokens[2] == "inet":
            addresses.append((tokens[1], tokens[3].split("/")[0]))
    return addresses
