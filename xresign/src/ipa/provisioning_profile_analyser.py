from pathlib import Path
import plistlib
from typing import Any, Dict, Optional, Union
from xml.parsers.expat import ExpatError

from asn1crypto.cms import ContentInfo

from xresign.logger import get_console
from xresign.src.core.models import ProvisioningProfile

TEAM_IDENTIFIER_KEY = "com.apple.developer.team-identifier"


class ProfileDecodeError(ValueError):
    """The file is not a CMS signed provisioning profile"""


def dump_prov(prov: Union[str, Path, bytes]) -> Dict[str, Any]:
    """Read a provisioning profile without using macOS security command"""
    if isinstance(prov, (str, Path)):
        with open(prov, "rb") as f:
            prov = f.read()

    try:
        content_info = ContentInfo.load(prov)
        signed_data = content_info["content"]
        # The plist is the encapsulated content of the signed data
        plist_data = signed_data["encap_content_info"]["content"].native
        data = plistlib.loads(plist_data)
    except (ValueError, TypeError, KeyError, ExpatError) as e:
        raise ProfileDecodeError(f"Can not decode provisioning profile: {e}")

    if not isinstance(data, dict):
        raise ProfileDecodeError("Provisioning profile payload is not a dictionary")
    return data


def entitlements_from_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    entitlements = data.get("Entitlements", {})
    return entitlements if isinstance(entitlements, dict) else {}


def team_identifier_from_profile(data: Dict[str, Any]) -> Optional[str]:
    """The team-identifier entitlement, else the first TeamIdentifier entry"""
    team_id = entitlements_from_profile(data).get(TEAM_IDENTIFIER_KEY)
    if isinstance(team_id, str) and team_id:
        return team_id

    team_ids = data.get("TeamIdentifier")
    if isinstance(team_ids, list) and team_ids and isinstance(team_ids[0], str):
        return team_ids[0] or None
    return None


def profile_summary(data: Dict[str, Any]) -> Dict[str, str]:
    """Human readable subset of a profile, binary blobs left out"""
    summary = {}
    for key in ("Name", "AppIDName", "TeamName", "ExpirationDate"):
        if key in data:
            summary[key] = str(data[key])
    team_id = team_identifier_from_profile(data)
    if team_id:
        summary["TeamIdentifier"] = team_id
    return summary


class ProfileInspector:
    """Decodes provisioning profiles for the identity check and entitlements"""

    def __init__(self):
        self.console = get_console()

    def load(self, profile: Union[ProvisioningProfile, Path, bytes]) -> Dict[str, Any]:
        if isinstance(profile, ProvisioningProfile):
            profile = profile.path
        return dump_prov(profile)

    def team_identifier(self, profile: ProvisioningProfile) -> Optional[str]:
        try:
            data = self.load(profile)
        except (OSError, ProfileDecodeError) as e:
            self.console.log(f"[red]Failed to read {profile.path}:[/] {e}")
            return None
        return team_identifier_from_profile(data)

    def entitlements(self, profile: Union[ProvisioningProfile, Path, bytes]) -> Dict[str, Any]:
        """Entitlements section of the profile, empty if it can not be decoded"""
        try:
            data = self.load(profile)
        except (OSError, ProfileDecodeError) as e:
            self.console.log(f"[yellow]Ignoring unreadable provisioning profile:[/] {e}")
            return {}
        return entitlements_from_profile(data)
