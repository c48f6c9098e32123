from rich.table import Table

from xresign.commands.alerts import show_alert
from xresign.logger import get_console
from xresign.src.core.cert_handler import CertHandler, default_keychain
from xresign.src.core.errors import ReSignError
from xresign.src.utils.background import run_in_background
from xresign.src.utils.config_loader import get_keychain


def keychain_table(keychains, selected) -> Table:
    table = Table(title="Keychains")
    table.add_column("Name", style="cyan")
    table.add_column("Path")
    for name, path in keychains.items():
        marker = " [green](selected)[/]" if path == selected else ""
        table.add_row(f"{name}{marker}", path)
    return table


def identity_table(identities) -> Table:
    table = Table(title="Code signing identities")
    table.add_column("Common name", style="cyan")
    table.add_column("SHA-1", style="dim")
    for name, sha1 in identities.items():
        table.add_row(name, sha1)
    return table


def run_identities_command(args) -> int:
    """List keychains and the code signing identities of the selected one"""
    console = get_console()
    handler = CertHandler()

    try:
        keychains = run_in_background(handler.list_keychains).result()
        selected = args.keychain or get_keychain() or default_keychain(keychains)
        identities = run_in_background(handler.list_identities, selected).result()
    except (ReSignError, ValueError) as e:
        show_alert(e)
        return 1

    console.print(keychain_table(keychains, selected))
    if not identities:
        console.print("[yellow]No valid code signing identities found[/]")
        return 1
    console.print(identity_table(identities))
    return 0
