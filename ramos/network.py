"""
Network Identity Replicator (host side).

Captures every non-loopback interface carrying IPv4 on the live host and
renders a replay routine that configures the same addresses, gateways and
routes inside the RAM system, matching interfaces by MAC because kernel
interface names are not stable across a kexec.
"""

import ipaddress
import pprint
import socket
from dataclasses import dataclass
from typing import Optional, Tuple

import psutil

from .console import print_success, print_warning, run_command


@dataclass(frozen=True)
class Route:
    destination: str
    via: Optional[str] = None


@dataclass(frozen=True)
class InterfaceRecord:
    mac: str
    address: str  # "10.0.0.5/24"
    gateway: Optional[str] = None
    routes: Tuple[Route, ...] = ()
    name: str = ""  # name on the capturing host, informational only

    def as_dict(self):
        return {
            "mac": self.mac,
            "address": self.address,
            "gateway": self.gateway,
            "routes": [[r.destination, r.via] for r in self.routes],
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            mac=data["mac"].lower(),
            address=data["address"],
            gateway=data.get("gateway") or None,
            routes=tuple(Route(dest, via or None) for dest, via in data.get("routes", ())),
            name=data.get("name", ""),
        )


def _field_after(tokens, key):
    if key in tokens:
        index = tokens.index(key)
        if index + 1 < len(tokens):
            return tokens[index + 1]
    return None


def parse_routes(text):
    """Parse ``ip -4 route show dev X`` output into (default gateway, gateways, routes).

    Kernel-created connected routes are skipped; adding the address recreates them.
    """
    default_gw = None
    via_gateways = []
    routes = []
    for line in text.splitlines():
        tokens = line.split()
        if not tokens:
            continue
        via = _field_after(tokens, "via")
        if tokens[0] == "default":
            if via and default_gw is None:
                default_gw = via
            continue
        if via:
            via_gateways.append(via)
            routes.append(Route(tokens[0], via))
        elif _field_after(tokens, "proto") == "kernel":
            continue
        elif _field_after(tokens, "scope") == "link":
            routes.append(Route(tokens[0]))
    return default_gw, via_gateways, tuple(routes)


def capture_interface(name, mac, address, runner=run_command):
    default = runner(["ip", "-4", "route", "show", "default", "dev", name])
    default_gw, _, _ = parse_routes(default.stdout or "")
    listing = runner(["ip", "-4", "route", "show", "dev", name])
    _, via_gateways, routes = parse_routes(listing.stdout or "")
    gateway = default_gw or (via_gateways[0] if via_gateways else None)
    return InterfaceRecord(mac.lower(), address, gateway, routes, name)


def capture_interfaces(addrs=None, runner=run_command):
    """Snapshot the host's IPv4 interfaces, one record per unique MAC."""
    if addrs is None:
        addrs = psutil.net_if_addrs()
    records = []
    seen_macs = set()
    for name in sorted(addrs):
        if name == "lo":
            continue
        entries = addrs[name]
        ipv4 = [a for a in entries if a.family == socket.AF_INET]
        links = [a for a in entries if a.family == psutil.AF_LINK]
        if not ipv4 or not links:
            continue
        mac = links[0].address.lower()
        if not mac or mac == "00:00:00:00:00:00":
            continue
        if mac in seen_macs:
            print_warning(f"{name}: MAC {mac} already captured from another interface, skipping")
            continue
        prefix = ipaddress.IPv4Network(f"0.0.0.0/{ipv4[0].netmask or '255.255.255.255'}").prefixlen
        record = capture_interface(name, mac, f"{ipv4[0].address}/{prefix}", runner)
        seen_macs.add(mac)
        records.append(record)
        print_success(f"{name}: {record.address} (MAC: {mac})")
    return records


REPLAY_TEMPLATE = '''#!/usr/bin/python3
"""Network configuration captured from {hostname}.

Interfaces are matched by MAC address; names on the source host are informational.
"""

from ramos.netreplay import main

INTERFACES = {interfaces}

if __name__ == "__main__":
    raise SystemExit(main(INTERFACES))
'''


def render_replay_script(records, hostname=None):
    interfaces = pprint.pformat([r.as_dict() for r in records], indent=4, width=100, sort_dicts=True)
    return REPLAY_TEMPLATE.format(hostname=hostname or socket.gethostname(), interfaces=interfaces)


def parse_resolvectl(text, limit=3):
    """Nameservers from ``resolvectl dns``: Global first, else the first link with any."""
    global_servers = []
    link_servers = []
    for line in text.splitlines():
        head, _, rest = line.partition(":")
        servers = rest.split()
        if head.strip() == "Global":
            global_servers.extend(servers)
        elif head.startswith("Link") and servers and not link_servers:
            link_servers = servers
    return (global_servers or link_servers)[:limit]


def capture_dns(fallback, runner=run_command):
    """Resolver addresses for the image, preferring the live resolved view."""
    result = runner(["resolvectl", "dns"])
    if result.returncode == 0:
        servers = parse_resolvectl(result.stdout or "")
        if servers:
            print_success("DNS servers from resolvectl: " + " ".join(servers))
            return servers, True
        print_warning("No DNS from resolvectl, using public DNS")
    else:
        print_warning("resolvectl not available, using public DNS servers")
    return list(fallback), False


def render_resolv_conf(servers):
    return "".join(f"nameserver {s}\n" for s in servers)
