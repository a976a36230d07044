"""
Terminal output helpers shared by the build host and the booted RAM system.

Standard library only: this module is imported by process 1 inside the image.
"""

import subprocess
import sys


class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


# Degraded conditions seen during this run, summarised at the end of a build
WARNINGS = []


def _emit(text, stream=None):
    stream = stream or sys.stdout
    try:
        print(text, file=stream, flush=True)
    except (OSError, ValueError):
        # console gone (closed tty inside the RAM system); output is best effort
        pass


def print_banner(title):
    line = "═" * 52
    _emit(f"\n{Colors.HEADER}╔{line}╗\n║  {title:<50}║\n╚{line}╝{Colors.ENDC}\n")


def print_stage(stage_num, title):
    _emit(f"\n{Colors.CYAN}[STAGE {stage_num}] {title}...{Colors.ENDC}")


def print_status(msg):
    _emit(f"{Colors.GREEN}[+]{Colors.ENDC} {msg}")


def print_success(msg):
    _emit(f"{Colors.GREEN}  ✓ {msg}{Colors.ENDC}")


def print_warning(msg):
    WARNINGS.append(msg)
    _emit(f"{Colors.YELLOW}[!]{Colors.ENDC} {msg}")


def print_error(msg):
    _emit(f"{Colors.RED}[!] {msg}{Colors.ENDC}", sys.stderr)


def reset_warnings():
    del WARNINGS[:]


def format_cmd(cmd):
    return ' '.join(cmd) if isinstance(cmd, (list, tuple)) else cmd


def run_command(cmd, cwd=None, capture=True, env=None, input=None, timeout=None, echo=False):
    """Run a command and return the CompletedProcess.

    A missing executable yields returncode 127 instead of raising, so callers
    can treat "tool absent" and "tool failed" the same way.
    """
    if echo:
        _emit(f"{Colors.BLUE}  $ {format_cmd(cmd)}{Colors.ENDC}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=env,
            input=input,
            shell=isinstance(cmd, str),
            capture_output=capture,
            text=not isinstance(input, bytes),
            timeout=timeout,
        )
    except FileNotFoundError as e:
        result = subprocess.CompletedProcess(cmd, 127, "", str(e))
    except subprocess.TimeoutExpired as e:
        result = subprocess.CompletedProcess(cmd, 124, e.stdout or "", f"timed out after {timeout}s")
    return result
