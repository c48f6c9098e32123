from rich.table import Table

from xresign.commands.alerts import show_alert
from xresign.logger import get_console
from xresign.src.core.errors import ArchiveReadError, ValidationError
from xresign.src.core.models import AppMetadata
from xresign.src.ipa.ipa_inspector import ArchiveHandle, extract_metadata, is_archive_path
from xresign.src.ipa.provisioning_profile_analyser import (
    ProfileDecodeError,
    dump_prov,
    profile_summary,
)


def run_inspect_command(args) -> int:
    """Show the metadata of an IPA and a summary of its embedded profile"""
    console = get_console()
    if not is_archive_path(args.ipa_path):
        show_alert(ValidationError(f"Not an IPA file: {args.ipa_path}"))
        return 1

    try:
        with ArchiveHandle(args.ipa_path) as handle:
            metadata = extract_metadata(handle)
            profile_bytes = handle.read(handle.profile_entry)
    except ArchiveReadError as e:
        console.log(f"[yellow]Warning: {e.message}[/]")
        metadata, profile_bytes = AppMetadata.placeholder(), None

    table = Table(title=args.ipa_path.name, show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Bundle ID", metadata.bundle_identifier)
    table.add_row("Version", metadata.short_version)
    table.add_row("Build", metadata.build_version)
    table.add_row("Executable", metadata.main_executable_name)

    if profile_bytes is None:
        table.add_row("Provisioning profile", "[yellow]not embedded[/]")
    else:
        try:
            summary = profile_summary(dump_prov(profile_bytes))
        except ProfileDecodeError as e:
            console.log(f"[yellow]Warning: {e}[/]")
            summary = {}
        for key, value in summary.items():
            table.add_row(f"Profile {key}", value)

    console.print(table)
    return 0
