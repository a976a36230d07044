"""
SSH identity for the RAM system.

Host keys are converted from the host's OpenSSH keys so clients see the same
fingerprint after the switch; a converted key is checked against its source
and dropped if the fingerprints differ. Trusted keys come from the host's
authorized_keys files or from a keypair generated on the spot.
"""

import base64
import datetime
import hashlib
import os
import pwd
import shutil
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .console import print_status, print_success, print_warning, run_command

# Priority order; the first entry is also the algorithm of the fallback key
HOST_KEY_ALGORITHMS = ("ed25519", "ecdsa", "rsa")
SSH_DIR = "/etc/ssh"

KEY_TYPES = (
    "ssh-ed25519", "ssh-rsa", "ssh-dss",
    "ecdsa-sha2-nistp256", "ecdsa-sha2-nistp384", "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com", "sk-ecdsa-sha2-nistp256@openssh.com",
)


def fingerprint(blob):
    """OpenSSH-style SHA256 fingerprint of a public key blob."""
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip("=")
    return f"SHA256:{digest}"


def blob_from_line(line):
    """Decode the key blob of an OpenSSH public key line, or None."""
    tokens = line.split()
    for i, token in enumerate(tokens[:-1]):
        if token in KEY_TYPES:
            try:
                return base64.b64decode(tokens[i + 1], validate=True)
            except ValueError:
                return None
    return None


def source_public_blob(private_path):
    """Public blob of a host key: from ``<key>.pub``, else derived from the private key."""
    try:
        with open(private_path + ".pub") as f:
            blob = blob_from_line(f.read())
        if blob:
            return blob
    except OSError:
        pass
    try:
        with open(private_path, "rb") as f:
            data = f.read()
    except OSError:
        return None
    for loader in (serialization.load_ssh_private_key, serialization.load_pem_private_key):
        try:
            key = loader(data, password=None)
        except (ValueError, TypeError):
            continue
        line = key.public_key().public_bytes(
            serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
        return blob_from_line(line.decode())
    return None


class ToolSet:
    """Finds dropbear tools on the host, or inside an unpacked image.

    Tools taken from the image run with LD_LIBRARY_PATH pointing at the image's
    library directories.
    """

    LIB_DIRS = ("lib", "lib64", "usr/lib", "lib/x86_64-linux-gnu", "usr/lib/x86_64-linux-gnu",
                "lib/aarch64-linux-gnu", "usr/lib/aarch64-linux-gnu")

    def __init__(self, fallback_root=None, which=shutil.which):
        self.fallback_root = fallback_root
        self.which = which
        self.from_image = set()

    def command(self, name):
        if self.which(name):
            return [name]
        if self.fallback_root:
            for directory in ("usr/bin", "usr/sbin", "bin", "sbin"):
                candidate = os.path.join(self.fallback_root, directory, name)
                if os.path.isfile(candidate):
                    self.from_image.add(name)
                    return [candidate]
        return None

    def env(self, name):
        if name not in self.from_image:
            return None
        paths = [os.path.join(self.fallback_root, d) for d in self.LIB_DIRS]
        return dict(os.environ, LD_LIBRARY_PATH=":".join(p for p in paths if os.path.isdir(p)))

    def run(self, name, args, runner=run_command):
        cmd = self.command(name)
        if cmd is None:
            return None
        return runner(cmd + list(args), env=self.env(name))


def dropbear_public_blob(key_path, tools, runner=run_command):
    result = tools.run("dropbearkey", ["-y", "-f", key_path], runner)
    if result is None or result.returncode != 0:
        return None
    for line in (result.stdout or "").splitlines():
        blob = blob_from_line(line)
        if blob:
            return blob
    return None


@dataclass(frozen=True)
class HostKey:
    algorithm: str
    path: str  # dropbear key file written under the destination directory
    fingerprint: Optional[str]
    preserved: bool  # converted from the host and fingerprint verified


def convert_host_keys(dest_dir, tools, ssh_dir=SSH_DIR, runner=run_command):
    """Convert every available host key into dropbear format under ``dest_dir``.

    Falls back to one freshly generated key when nothing converts; that key is
    returned with ``preserved=False``.
    """
    os.makedirs(dest_dir, exist_ok=True)
    keys = []
    if tools.command("dropbearconvert") is None:
        print_warning("dropbearconvert not available on the host or in the image")
    else:
        for algorithm in HOST_KEY_ALGORITHMS:
            source = os.path.join(ssh_dir, f"ssh_host_{algorithm}_key")
            if not os.path.isfile(source):
                continue
            dest = os.path.join(dest_dir, f"dropbear_{algorithm}_host_key")
            result = tools.run("dropbearconvert", ["openssh", "dropbear", source, dest], runner)
            if result is None or result.returncode != 0 or not os.path.isfile(dest):
                print_warning(f"Could not convert {algorithm} host key")
                continue
            expected = source_public_blob(source)
            actual = dropbear_public_blob(dest, tools, runner)
            if expected is None or actual is None or expected != actual:
                print_warning(f"Converted {algorithm} host key does not match its source fingerprint, discarding")
                os.remove(dest)
                continue
            os.chmod(dest, 0o600)
            keys.append(HostKey(algorithm, dest, fingerprint(actual), True))
            print_success(f"Converted {algorithm} host key ({fingerprint(actual)})")
    if keys:
        return keys

    print_warning("No host keys converted, generating a new one; clients will see a changed host fingerprint")
    dest = os.path.join(dest_dir, f"dropbear_{HOST_KEY_ALGORITHMS[0]}_host_key")
    if os.path.exists(dest):
        os.remove(dest)
    result = tools.run("dropbearkey", ["-t", HOST_KEY_ALGORITHMS[0], "-f", dest], runner)
    if result is None or result.returncode != 0 or not os.path.isfile(dest):
        print_warning("Host key generation failed; the RAM system will generate one at boot")
        return []
    blob = dropbear_public_blob(dest, tools, runner)
    return [HostKey(HOST_KEY_ALGORITHMS[0], dest, fingerprint(blob) if blob else None, False)]


# --- trusted keys ---

@dataclass(frozen=True)
class AuthorizedKey:
    line: str
    key_type: str
    blob: bytes
    comment: str = ""

    @property
    def fingerprint(self):
        return fingerprint(self.blob)

    @property
    def label(self):
        return self.comment or f"{self.key_type} {self.fingerprint[7:23]}"


def parse_authorized_keys(text):
    keys = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        tokens = line.split()
        for i, token in enumerate(tokens[:-1]):
            if token in KEY_TYPES:
                blob = blob_from_line(" ".join(tokens[i:i + 2]))
                if blob:
                    keys.append(AuthorizedKey(line, token, blob, " ".join(tokens[i + 2:])))
                break
    return keys


def default_key_sources():
    """authorized_keys of root and of the invoking (sudo) user."""
    homes = ["/root"]
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        try:
            homes.append(pwd.getpwnam(sudo_user).pw_dir)
        except KeyError:
            pass
    if os.environ.get("HOME"):
        homes.append(os.environ["HOME"])
    return [os.path.join(h, ".ssh", "authorized_keys") for h in homes]


def collect_authorized_keys(sources=None):
    """Every distinct trusted key from ``sources``, in first-seen order.

    Files are deduplicated by real path, keys by type and blob.
    """
    keys = []
    seen_files = set()
    seen_keys = set()
    for path in sources if sources is not None else default_key_sources():
        real = os.path.realpath(path)
        if real in seen_files or not os.path.isfile(real):
            continue
        seen_files.add(real)
        try:
            with open(real) as f:
                text = f.read()
        except OSError as e:
            print_warning(f"Cannot read {path}: {e}")
            continue
        for key in parse_authorized_keys(text):
            if (key.key_type, key.blob) in seen_keys:
                continue
            seen_keys.add((key.key_type, key.blob))
            keys.append(key)
    if keys:
        print_status(f"Found {len(keys)} authorized key(s)")
    return keys


@dataclass(frozen=True)
class GeneratedKey:
    private_key: str  # OpenSSH PEM, shown to the operator once and never stored
    public_line: str

    @property
    def authorized(self):
        return parse_authorized_keys(self.public_line)[0]


def generate_keypair(comment=None, today=None):
    today = today or datetime.date.today()
    comment = comment or f"ram-os-access-{today:%Y%m%d}"
    key = ed25519.Ed25519PrivateKey.generate()
    private = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption(),
    ).decode()
    public = key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH).decode()
    return GeneratedKey(private, f"{public} {comment}")


def render_authorized_keys(keys):
    return "".join(k.line.rstrip("\n") + "\n" for k in keys)
