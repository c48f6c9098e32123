from pathlib import Path
import plistlib
from typing import Any, Dict, Optional, Union
from xml.parsers.expat import ExpatError

from xresign.logger import get_console
from xresign.src.core.errors import ValidationError
from xresign.src.core.models import EntitlementsOrigin, EntitlementsSet
from xresign.src.ipa.code_signature import default_signature_inspector
from xresign.src.ipa.ipa_inspector import ArchiveHandle, extract_entitlements_source
from xresign.src.ipa.provisioning_profile_analyser import (
    ProfileDecodeError,
    ProfileInspector,
    dump_prov,
    entitlements_from_profile,
)


def load_entitlements_file(path: Path) -> EntitlementsSet:
    """Load an operator supplied entitlements plist, keeping its exact bytes"""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ValidationError(f"Entitlements file can not be read: {path} ({e})")

    try:
        entries = plistlib.loads(raw)
    except (plistlib.InvalidFileException, ValueError, ExpatError) as e:
        raise ValidationError(f"Entitlements file is not a property list: {path} ({e})")
    if not isinstance(entries, dict):
        raise ValidationError(f"Entitlements file is not a dictionary: {path}")

    return EntitlementsSet(
        entries=entries,
        origin=EntitlementsOrigin.OVERRIDE,
        raw=raw,
        source_path=path,
    )


class EntitlementsResolver:
    """Determine the entitlements a signing run should use.

    First success wins:
      1. an explicit entitlements file, taken verbatim
      2. the entitlements of the main executable's current code signature
      3. the Entitlements of the archive's embedded provisioning profile
    Nothing found means None, and the signer's own defaults apply.
    """

    def __init__(self, signature_inspector=None, profile_inspector=None):
        self.console = get_console()
        self.signature_inspector = signature_inspector or default_signature_inspector()
        self.profile_inspector = profile_inspector or ProfileInspector()

    def resolve_entitlements(
        self,
        archive: Union[ArchiveHandle, str, Path],
        explicit_override_path: Optional[Path] = None,
    ) -> Optional[EntitlementsSet]:
        if explicit_override_path:
            self.console.log(f"[blue]Using entitlements file:[/] {explicit_override_path}")
            return load_entitlements_file(explicit_override_path)

        if isinstance(archive, ArchiveHandle):
            return self._derive(archive)
        with ArchiveHandle(archive) as handle:
            return self._derive(handle)

    def _derive(self, handle: ArchiveHandle) -> Optional[EntitlementsSet]:
        source = extract_entitlements_source(handle)

        if source.executable_path is not None:
            entitlements = self.signature_inspector.entitlements(source.executable_path)
            if entitlements:
                self.console.log("[green]Using entitlements from current code signature[/]")
                return EntitlementsSet(entitlements, EntitlementsOrigin.SIGNATURE)

        if source.profile_bytes:
            entitlements = self.profile_inspector.entitlements(source.profile_bytes)
            if entitlements:
                self.console.log("[green]Using entitlements from embedded provisioning profile[/]")
                return EntitlementsSet(entitlements, EntitlementsOrigin.PROFILE)

        self.console.log("[yellow]No entitlements found, signer defaults apply[/]")
        return None

    def export_entitlements(
        self, source: Union[str, Path], destination: Optional[Path] = None
    ) -> Path:
        """Write the entitlements of an .ipa or .mobileprovision to a plist.

        Defaults to ``entitlements/entitlements.plist`` beside the source.
        """
        source = Path(source)
        destination = destination or source.parent / "entitlements" / "entitlements.plist"
        suffix = source.suffix.lower()

        if suffix in (".ipa", ".zip"):
            entitlements = self.resolve_entitlements(source)
        elif suffix == ".mobileprovision":
            entitlements = self._profile_entitlements(source)
        else:
            raise ValidationError("Please select mobileprovision or IPA file")

        if entitlements is None:
            raise ValidationError(f"No entitlements found in {source.name}")

        entitlements.write_to(destination)
        self.console.log(f"[green]Wrote entitlements to[/] {destination}")
        return destination

    def _profile_entitlements(self, path: Path) -> Optional[EntitlementsSet]:
        try:
            entries: Dict[str, Any] = entitlements_from_profile(dump_prov(path))
        except (OSError, ProfileDecodeError) as e:
            raise ValidationError(f"Can not read provisioning profile {path}: {e}")
        if not entries:
            return None
        return EntitlementsSet(entries, EntitlementsOrigin.PROFILE)
