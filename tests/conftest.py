import subprocess
import sys
from pathlib import Path

import pytest

# Ensure the repository root is on sys.path before importing project modules
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ramos import console  # noqa: E402


class FakeRunner:
    """Records commands and answers them from a table of canned results.

    ``responses`` maps a command prefix (tuple) or a shell string to
    (returncode, stdout) or a callable taking the command.
    """

    def __init__(self, responses=None, default=(0, "")):
        self.responses = dict(responses or {})
        self.default = default
        self.calls = []

    def _lookup(self, cmd):
        if isinstance(cmd, str):
            return self.responses.get(cmd, self.default)
        key = tuple(cmd)
        for length in range(len(key), 0, -1):
            if key[:length] in self.responses:
                return self.responses[key[:length]]
        return self.default

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd if isinstance(cmd, str) else list(cmd))
        answer = self._lookup(cmd)
        if callable(answer):
            answer = answer(cmd)
        returncode, stdout = answer[:2]
        stderr = answer[2] if len(answer) > 2 else ""
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def commands(self, program):
        return [c for c in self.calls if not isinstance(c, str) and c and c[0] == program]


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture(autouse=True)
def clean_warnings():
    console.reset_warnings()
    yield
    console.reset_warnings()
