import io

import pytest
from rich.console import Console

from ramos import prompts
from ramos.errors import OperatorAbort
from ramos.identity import generate_keypair, parse_authorized_keys

KEYS = parse_authorized_keys(
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl alice\n"
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIB8SrBeLhJQVXNkG5nFyIqYZbDz3FUKGhLkyCkFQXuDi [ops]\n"
)


@pytest.fixture
def out():
    return Console(file=io.StringIO(), width=120, color_system=None)


def answers(monkeypatch, *replies):
    queue = list(replies)
    asked = []

    def ask(prompt, **kwargs):
        asked.append(prompt)
        return queue.pop(0) if queue else kwargs.get("default", "")

    monkeypatch.setattr(prompts.Prompt, "ask", ask)
    return asked


@pytest.mark.parametrize("reply,expected", [
    ("yes", True), ("Y", True), (" y ", True),
    ("no", False), ("", False), ("sure", False), ("yess", False),
])
def test_confirm_gate_requires_explicit_yes(monkeypatch, out, reply, expected):
    answers(monkeypatch, reply)
    assert prompts.confirm_gate("Switch kernels?", out) is expected


def test_require_raises_on_decline(monkeypatch, out):
    answers(monkeypatch, "no")
    with pytest.raises(OperatorAbort):
        prompts.require("Continue?", out)


@pytest.mark.parametrize("answer,expected", [
    ("1", ([0], False)),
    ("2,1", ([1, 0], False)),
    ("1 1 2", ([0, 1], False)),
    ("all", ([0, 1], False)),
    ("n", ([], True)),
    ("NEW", ([], True)),
    ("1,n", ([0], True)),
    ("n 2", ([1], True)),
    ("all new", ([0, 1], True)),
    ("1,x", None),
    ("3", None),
    ("0", None),
    ("x", None),
    ("", None),
])
def test_parse_selection(answer, expected):
    assert prompts.parse_selection(answer, 2) == expected


def test_all_with_no_keys_is_invalid():
    assert prompts.parse_selection("all", 0) is None


def test_select_keys_retries_until_valid(monkeypatch, out):
    asked = answers(monkeypatch, "7", "2")
    selected, generate_new = prompts.select_keys(KEYS, out)
    assert selected == [KEYS[1]]
    assert not generate_new
    assert len(asked) == 2
    text = out.file.getvalue()
    assert "Invalid selection" in text
    assert "[ops]" in text


def test_select_keys_quit_aborts(monkeypatch, out):
    answers(monkeypatch, "q")
    with pytest.raises(OperatorAbort):
        prompts.select_keys(KEYS, out)


def test_select_keys_without_any_keys(monkeypatch, out):
    answers(monkeypatch, "n")
    assert prompts.select_keys([], out) == ([], True)
    assert "No authorized keys" in out.file.getvalue()


def test_private_key_disclosed_once(monkeypatch, out):
    answers(monkeypatch, "yes")
    generated = generate_keypair()
    prompts.disclose_private_key(generated, out)
    text = out.file.getvalue()
    assert text.count("BEGIN OPENSSH PRIVATE KEY") == 1
    assert "shown only once" in text


def test_private_key_not_saved_aborts(monkeypatch, out):
    answers(monkeypatch, "no")
    with pytest.raises(OperatorAbort):
        prompts.disclose_private_key(generate_keypair(), out)


def closed_stdin(prompt, **kwargs):
    raise EOFError


def test_confirm_gate_end_of_input_is_no(monkeypatch, out):
    monkeypatch.setattr(prompts.Prompt, "ask", closed_stdin)
    assert prompts.confirm_gate("Switch kernels?", out) is False
    with pytest.raises(OperatorAbort):
        prompts.require("Have you saved the private key?", out)


def test_select_keys_end_of_input_aborts(monkeypatch, out):
    monkeypatch.setattr(prompts.Prompt, "ask", closed_stdin)
    with pytest.raises(OperatorAbort):
        prompts.select_keys(KEYS, out)


def test_select_existing_and_new_key(monkeypatch, out):
    answers(monkeypatch, "1,n")
    assert prompts.select_keys(KEYS, out) == ([KEYS[0]], True)
