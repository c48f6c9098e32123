"""Reading the entitlements embedded in a Mach-O code signature.

Two backends answer the same question: on macOS the ``codesign`` tool is
asked directly; elsewhere the signature superblob is located with LIEF and
decoded here.
"""

from pathlib import Path
import plistlib
import shutil
import struct
import subprocess
from typing import Any, Dict, Optional
from xml.parsers.expat import ExpatError

from lief import MachO

from xresign.logger import get_console

CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
CSMAGIC_EMBEDDED_ENTITLEMENTS = 0xFADE7171
CSSLOT_ENTITLEMENTS = 5


def run_process(*cmd: str, check: bool = False) -> subprocess.CompletedProcess:
    """Run a process and capture its raw output"""
    return subprocess.run(cmd, capture_output=True, check=check)


def _plist_dict(data: bytes) -> Dict[str, Any]:
    if not data or not data.strip():
        return {}
    try:
        obj = plistlib.loads(data)
    except (plistlib.InvalidFileException, ValueError, ExpatError):
        return {}
    return obj if isinstance(obj, dict) else {}


def entitlements_from_superblob(blob: bytes) -> Dict[str, Any]:
    """Decode the entitlements slot of an embedded signature superblob"""
    if len(blob) < 12:
        return {}
    magic, _length, count = struct.unpack(">III", blob[:12])
    if magic != CSMAGIC_EMBEDDED_SIGNATURE:
        return {}

    for index in range(count):
        start = 12 + index * 8
        if start + 8 > len(blob):
            break
        slot, offset = struct.unpack(">II", blob[start : start + 8])
        if slot != CSSLOT_ENTITLEMENTS:
            continue
        if offset + 8 > len(blob):
            return {}
        entry_magic, entry_length = struct.unpack(">II", blob[offset : offset + 8])
        if entry_magic != CSMAGIC_EMBEDDED_ENTITLEMENTS:
            return {}
        return _plist_dict(blob[offset + 8 : offset + entry_length])
    return {}


class CodesignInspector:
    """Asks /usr/bin/codesign for the current entitlements of a binary"""

    def __init__(self, codesign: str = "codesign"):
        self.codesign = codesign
        self.console = get_console()

    def entitlements(self, executable: Path) -> Dict[str, Any]:
        # codesign -d <binary> --entitlements :- prints an XML plist to stdout
        result = run_process(
            self.codesign, "-d", str(executable), "--entitlements", ":-"
        )
        if result.returncode != 0:
            self.console.log(
                f"[yellow]No code signature entitlements in {executable.name}[/]"
            )
            return {}
        return _plist_dict(result.stdout)


class MachOSignatureInspector:
    """Reads the code signature load command with LIEF"""

    def __init__(self):
        self.console = get_console()

    def entitlements(self, executable: Path) -> Dict[str, Any]:
        parsed = MachO.parse(str(executable))
        if parsed is None:
            self.console.log(f"[yellow]{executable.name} is not a Mach-O binary[/]")
            return {}

        # Every slice of a fat binary carries the same entitlements
        if isinstance(parsed, MachO.FatBinary):
            if parsed.size == 0:
                return {}
            binary = parsed.at(0)
        else:
            binary = parsed

        if not binary.has_code_signature:
            return {}
        return entitlements_from_superblob(bytes(binary.code_signature.content))


def default_signature_inspector(codesign_path: Optional[str] = None):
    """codesign where the host has it, LIEF otherwise"""
    codesign = codesign_path or shutil.which("codesign")
    if codesign:
        return CodesignInspector(codesign)
    return MachOSignatureInspector()
