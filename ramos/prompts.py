"""
Operator interaction for the launcher: key selection, confirmation gates and
the one-time display of a generated private key.
"""

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from .errors import OperatorAbort

AFFIRMATIVE = ("y", "yes")

_console = None


def get_console():
    global _console
    if _console is None:
        _console = Console()
    return _console


def confirm_gate(question, console=None):
    """True only for an explicit yes; anything else, including empty input, is no."""
    console = console or get_console()
    try:
        answer = Prompt.ask(f"{question} [bold](yes/no)[/bold]", default="no", show_default=False, console=console)
    except EOFError:
        console.print("")
        return False
    return answer.strip().lower() in AFFIRMATIVE


def require(question, console=None):
    if not confirm_gate(question, console):
        raise OperatorAbort(f"declined: {question}")


def key_table(keys):
    table = Table(title="Authorized keys", box=box.SIMPLE_HEAD)
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Key")
    table.add_column("Fingerprint", style="dim")
    for number, key in enumerate(keys, 1):
        table.add_row(str(number), escape(key.label), key.fingerprint)
    return table


def parse_selection(answer, count):
    """Parse "1,3" / "all" / "n" / "1,n" into (indices, generate_new); None if invalid."""
    indices = []
    generate_new = False
    for token in answer.strip().lower().replace(",", " ").split():
        if token in ("n", "new"):
            generate_new = True
        elif token in ("a", "all") and count:
            indices.extend(i for i in range(count) if i not in indices)
        elif token.isdigit() and 1 <= int(token) <= count:
            if int(token) - 1 not in indices:
                indices.append(int(token) - 1)
        else:
            return None
    if not indices and not generate_new:
        return None
    return indices, generate_new


def select_keys(keys, console=None):
    """Ask which trusted keys the RAM system accepts.

    Returns (selected keys, generate_new). ``q`` raises OperatorAbort.
    """
    console = console or get_console()
    if keys:
        console.print(key_table(keys))
        hint = ("Numbers (e.g. 1,3), [bold]all[/bold], [bold]n[/bold] to generate a new key "
                "(combinable, e.g. 1,n), [bold]q[/bold] to abort")
    else:
        console.print("[yellow]No authorized keys found on this host.[/yellow]")
        hint = "[bold]n[/bold] to generate a new key, [bold]q[/bold] to abort"
    while True:
        try:
            answer = Prompt.ask(hint, console=console)
        except EOFError:
            raise OperatorAbort("no SSH key selected (end of input)")
        if answer.strip().lower() in ("q", "quit"):
            raise OperatorAbort("no SSH key selected")
        selection = parse_selection(answer, len(keys))
        if selection is not None:
            indices, generate_new = selection
            return [keys[i] for i in indices], generate_new
        console.print("[red]Invalid selection[/red]")


def disclose_private_key(generated, console=None):
    """Show a freshly generated private key exactly once, then gate on saving it."""
    console = console or get_console()
    console.print(Panel(
        Text(generated.private_key.rstrip("\n")),
        title="PRIVATE KEY - shown only once",
        subtitle=generated.public_line.split()[-1],
        border_style="red",
    ))
    console.print("[bold red]Save this key now.[/bold red] Without it the RAM system "
                  "can only be reached from the physical console.")
    require("Have you saved the private key?", console)
