from pathlib import Path
from typing import Dict, List, Optional
import re
import subprocess

from asn1crypto import pem, x509

from xresign.logger import get_console
from xresign.src.core.errors import InternalError
from xresign.src.core.models import SigningIdentity

# 1) E00D4E3D3272ABB655CDE0C1CF53891210BAF4B8 "iPhone Developer: XXXXXXXXXX (YYYYYYYYYY)"
IDENTITY_LINE_RE = re.compile(r'^\s*\d+\)\s+([0-9A-Fa-f]{40})\s+"(.+)"\s*$')


def parse_identity_listing(text: str) -> Dict[str, str]:
    """Parse `security find-identity` output into {common name: SHA-1}, sorted by name"""
    identities: Dict[str, str] = {}
    for line in text.splitlines():
        match = IDENTITY_LINE_RE.match(line)
        if not match:
            continue
        sha1, name = match.group(1).upper(), match.group(2)
        identities.setdefault(name, sha1)
    return dict(sorted(identities.items()))


def parse_keychain_listing(text: str) -> Dict[str, str]:
    """Parse `security list-keychains` output into {file name: full path}"""
    keychains: Dict[str, str] = {}
    for line in text.splitlines():
        path = line.strip().strip('"').strip()
        if path:
            keychains[Path(path).name] = path
    return keychains


def default_keychain(keychains: Dict[str, str]) -> Optional[str]:
    """Prefer the login keychain, like Keychain Access does"""
    for name, path in keychains.items():
        if "login." in name:
            return path
    return None


def _subject_value(subject: dict, key: str) -> Optional[str]:
    value = subject.get(key)
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, str) and value else None


def load_certificates(pem_data: bytes) -> List[x509.Certificate]:
    if not pem.detect(pem_data):
        return []
    try:
        return [
            x509.Certificate.load(der)
            for type_name, _headers, der in pem.unarmor(pem_data, multiple=True)
            if type_name == "CERTIFICATE"
        ]
    except ValueError:
        return []


def organizational_unit_from_pem(
    pem_data: bytes, common_name: Optional[str] = None
) -> Optional[str]:
    """OU of the certificate whose CN is exactly `common_name`.

    `security find-certificate -c` matches substrings, so a PEM bundle may hold
    other certificates; without a name the first certificate is used.
    """
    certificates = load_certificates(pem_data)
    if not certificates:
        return None
    if not common_name:
        return _subject_value(certificates[0].subject.native, "organizational_unit_name")

    for certificate in certificates:
        if _subject_value(certificate.subject.native, "common_name") == common_name:
            return _subject_value(certificate.subject.native, "organizational_unit_name")
    return None


class CertHandler:
    """Queries the macOS keychain for code signing identities and certificates"""

    def __init__(self, keychain: Optional[str] = None, security: str = "security"):
        self.console = get_console()
        self.keychain = keychain
        self.security = security

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        cmd = [self.security, *args]
        try:
            return subprocess.run(cmd, capture_output=True)
        except OSError as e:
            raise InternalError(f"Can not run {self.security}: {e}")

    def _output(self, *args: str) -> str:
        result = self._run(*args)
        if result.returncode != 0:
            raise InternalError(
                f"{self.security} {args[0]} failed with status {result.returncode}:\n"
                f"{result.stderr.decode('utf-8', errors='replace')}"
            )
        return result.stdout.decode("utf-8", errors="replace")

    def list_keychains(self) -> Dict[str, str]:
        """Keychains on the user's search list"""
        return parse_keychain_listing(self._output("list-keychains"))

    def list_identities(self, keychain: Optional[str] = None) -> Dict[str, str]:
        """Valid code signing identities, {common name: SHA-1}"""
        args = ["find-identity", "-v", "-p", "codesigning"]
        keychain = keychain or self.keychain
        if keychain:
            args.append(keychain)
        identities = parse_identity_listing(self._output(*args))
        self.console.log(f"[blue]Found {len(identities)} code signing identities[/]")
        return identities

    def certificate_pem(self, common_name: str, keychain: Optional[str] = None) -> Optional[bytes]:
        """PEM of every certificate whose name contains `common_name`"""
        args = ["find-certificate", "-a", "-c", common_name, "-p"]
        keychain = keychain or self.keychain
        if keychain:
            args.append(keychain)
        result = self._run(*args)
        if result.returncode != 0 or not result.stdout:
            return None
        return result.stdout

    def organizational_unit_of(self, identity: SigningIdentity) -> Optional[str]:
        pem_data = self.certificate_pem(identity.common_name, identity.keychain)
        if pem_data is None:
            self.console.log(f"[red]Certificate not found:[/] {identity.common_name}")
            return None
        org_unit = organizational_unit_from_pem(pem_data, identity.common_name)
        if org_unit:
            self.console.log(f"[blue]Organizational Unit:[/] {org_unit}")
        return org_unit
