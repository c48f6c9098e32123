import argparse
import sys
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme
from rich_argparse import RichHelpFormatter
from xresign.arguments import add_signing_arguments
from xresign.src.constants.cli_constants import (
    __version__,
    get_banner_text,
    APP_DESCRIPTION,
)


class XReSignHelpFormatter(RichHelpFormatter):
    """Formatter for the XReSign CLI with rich styling."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=30, width=100)
        self.console = Console(
            theme=Theme(
                {
                    "command": "bold cyan",
                    "argument": "green",
                    "option": "yellow",
                    "version": "blue",
                    "title": "bold magenta",
                }
            )
        )

    def start_section(self, heading):
        heading_text = Text(heading, style="title")
        super().start_section(str(heading_text))


def display_banner():
    """Display the XReSign banner."""
    console = Console()
    version_info = Text(f"v{__version__}", style="version")
    tagline = Text(APP_DESCRIPTION, style="italic")

    panel = Panel.fit(
        Text.assemble(get_banner_text(), "\n", tagline, "\n", version_info),
        border_style="green",
        padding=(1, 2),
    )
    console.print(panel)


def create_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xresign",
        description=f"XReSign: {APP_DESCRIPTION}",
        formatter_class=XReSignHelpFormatter,
        add_help=True,
    )
    parser.add_argument(
        "--version", action="version", version=f"XReSign {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command")

    # Sign command
    sign_parser = subparsers.add_parser(
        "sign",
        help="Re-sign an IPA file",
        formatter_class=XReSignHelpFormatter,
        description="Re-sign an IPA file with a keychain certificate and provisioning profile.",
    )
    add_signing_arguments(sign_parser)

    # Identities command
    identities_parser = subparsers.add_parser(
        "identities",
        help="List keychains and code signing identities",
        formatter_class=XReSignHelpFormatter,
        description="List the keychains on the search list and the valid code signing identities.",
    )
    identities_parser.add_argument(
        "--keychain",
        type=str,
        help="Keychain to list identities from [default: login keychain]",
    )

    # Inspect command
    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Show IPA metadata",
        formatter_class=XReSignHelpFormatter,
        description="Show the bundle ID, version and embedded provisioning profile of an IPA.",
    )
    inspect_parser.add_argument("ipa_path", type=Path, help="Path to the IPA file")

    # Entitlements command
    entitlements_parser = subparsers.add_parser(
        "entitlements",
        help="Export entitlements to a plist",
        formatter_class=XReSignHelpFormatter,
        description="Export the entitlements of an IPA or .mobileprovision file.",
    )
    entitlements_parser.add_argument(
        "source", type=Path, help="IPA or .mobileprovision file"
    )
    entitlements_parser.add_argument(
        "--output",
        "-o",
        type=Path,
        help="Where to write the plist [default: entitlements/entitlements.plist beside the source]",
    )

    return parser


def main(argv=None):
    load_dotenv()

    args_list = sys.argv[1:] if argv is None else argv
    # Display the banner before the help text
    if not args_list or "-h" in args_list or "--help" in args_list:
        display_banner()

    parser = create_cli_parser()
    args = parser.parse_args(args_list)

    if args.command == "sign":
        from xresign.commands.sign import run_sign_command

        return run_sign_command(args)
    elif args.command == "identities":
        from xresign.commands.identities import run_identities_command

        return run_identities_command(args)
    elif args.command == "inspect":
        from xresign.commands.inspect import run_inspect_command

        return run_inspect_command(args)
    elif args.command == "entitlements":
        from xresign.commands.entitlements import run_entitlements_command

        return run_entitlements_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
