from datetime import datetime, timezone
import plistlib
import zipfile

import pytest
from asn1crypto import cms, keys, pem, x509

INFO = {
    "CFBundleIdentifier": "com.acme.app",
    "CFBundleShortVersionString": "2.0",
    "CFBundleVersion": "7",
    "CFBundleExecutable": "App",
}


def make_profile_bytes(data: dict) -> bytes:
    """A .mobileprovision: plist wrapped as the content of a CMS SignedData"""
    signed_data = cms.SignedData(
        {
            "version": "v1",
            "digest_algorithms": [],
            "encap_content_info": {
                "content_type": "data",
                "content": plistlib.dumps(data),
            },
            "signer_infos": [],
        }
    )
    return cms.ContentInfo(
        {"content_type": "signed_data", "content": signed_data}
    ).dump()


def make_profile_data(team_id="TEAM123", entitlements=None) -> dict:
    if entitlements is None:
        entitlements = {
            "application-identifier": f"{team_id}.com.acme.app",
            "com.apple.developer.team-identifier": team_id,
        }
    return {
        "Name": "Acme Development",
        "AppIDName": "Acme",
        "TeamName": "Acme Inc.",
        "TeamIdentifier": [team_id],
        "Entitlements": entitlements,
    }


def make_certificate_pem(common_name: str, org_unit: str) -> bytes:
    """Unsigned certificate carrying only the fields we read"""
    when = datetime(2025, 1, 1, tzinfo=timezone.utc)
    subject = x509.Name.build(
        {"common_name": common_name, "organizational_unit_name": org_unit}
    )
    certificate = x509.Certificate(
        {
            "tbs_certificate": {
                "version": "v3",
                "serial_number": 1,
                "signature": {"algorithm": "sha256_rsa"},
                "issuer": x509.Name.build({"common_name": "Apple WWDR"}),
                "validity": {
                    "not_before": x509.Time({"utc_time": when}),
                    "not_after": x509.Time({"utc_time": when.replace(year=2026)}),
                },
                "subject": subject,
                "subject_public_key_info": {
                    "algorithm": {"algorithm": "rsa"},
                    "public_key": keys.RSAPublicKey(
                        {"modulus": 0xC0FFEE1234567, "public_exponent": 65537}
                    ),
                },
            },
            "signature_algorithm": {"algorithm": "sha256_rsa"},
            "signature_value": b"\x00" * 16,
        }
    )
    return pem.armor("CERTIFICATE", certificate.dump())


def write_ipa(path, info=None, profile=None, executable=None, app="App.app", extra=None):
    """Write a minimal IPA; pass info=False to leave out Info.plist"""
    info = INFO if info is None else info
    with zipfile.ZipFile(path, "w") as zf:
        if info is not False:
            data = info if isinstance(info, bytes) else plistlib.dumps(info)
            zf.writestr(f"Payload/{app}/Info.plist", data)
        if profile is not None:
            zf.writestr(f"Payload/{app}/embedded.mobileprovision", profile)
        if executable is not None:
            zf.writestr(f"Payload/{app}/App", executable)
        for name, data in (extra or {}).items():
            zf.writestr(name, data)
    return path


def corrupt_entry(path, needle: bytes):
    """Flip one byte of a stored entry so reading it fails the CRC check"""
    raw = bytearray(path.read_bytes())
    index = raw.index(needle)
    raw[index] ^= 0xFF
    path.write_bytes(bytes(raw))
    return path


@pytest.fixture
def profile_bytes():
    return make_profile_bytes(make_profile_data())


@pytest.fixture
def ipa(tmp_path, profile_bytes):
    return write_ipa(
        tmp_path / "App.ipa", profile=profile_bytes, executable=b"not really mach-o"
    )


@pytest.fixture
def profile_file(tmp_path, profile_bytes):
    path = tmp_path / "dev.mobileprovision"
    path.write_bytes(profile_bytes)
    return path


@pytest.fixture
def make_signer(tmp_path):
    """Write a shell script standing in for xresign.sh"""

    def _make(body: str, name="xresign.sh"):
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        return path

    return _make


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "xresign-home"
    monkeypatch.setenv("XRESIGN_HOME", str(home))
    monkeypatch.delenv("XRESIGN_SIGNER", raising=False)
    monkeypatch.delenv("XRESIGN_KEYCHAIN", raising=False)
    return home
