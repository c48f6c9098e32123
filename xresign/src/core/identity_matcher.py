from typing import Optional

from xresign.logger import get_console
from xresign.src.core.cert_handler import CertHandler
from xresign.src.core.errors import IdentityLookupError, IdentityMismatchError
from xresign.src.core.models import ProvisioningProfile, SigningIdentity
from xresign.src.ipa.provisioning_profile_analyser import ProfileInspector


class IdentityMatcher:
    """Checks that a certificate and a provisioning profile share a team.

    The certificate's organizational unit is, by Apple convention, the team
    identifier of its owner; the profile names its team explicitly.
    """

    def __init__(self, identity_store=None, profile_inspector=None):
        self.console = get_console()
        self.identity_store = identity_store or CertHandler()
        self.profile_inspector = profile_inspector or ProfileInspector()

    def organizational_unit_of(self, identity: SigningIdentity) -> Optional[str]:
        return self.identity_store.organizational_unit_of(identity)

    def team_identifier_of(self, profile: ProvisioningProfile) -> Optional[str]:
        return self.profile_inspector.team_identifier(profile)

    def certificate_team(self, identity: SigningIdentity) -> str:
        org_unit = self.organizational_unit_of(identity)
        if not org_unit:
            raise IdentityLookupError(
                f"Can not retrieve organization unit value for certificate {identity.common_name}"
            )
        return org_unit

    def profile_team(self, profile: ProvisioningProfile) -> str:
        team_id = self.team_identifier_of(profile)
        if not team_id:
            raise IdentityLookupError(
                f"Can not retrieve team identifier from provisioning profile {profile.path}"
            )
        return team_id

    def matches(self, identity: SigningIdentity, profile: ProvisioningProfile) -> bool:
        """Exact, case-sensitive comparison; a missing side raises IdentityLookupError"""
        return self.certificate_team(identity) == self.profile_team(profile)

    def check(self, identity: SigningIdentity, profile: ProvisioningProfile) -> str:
        """Return the shared team identifier or raise IdentityMismatchError"""
        certificate_team = self.certificate_team(identity)
        profile_team = self.profile_team(profile)
        if certificate_team != profile_team:
            raise IdentityMismatchError(certificate_team, profile_team)
        self.console.log(f"[green]Team identifiers match:[/] {certificate_team}")
        return certificate_team
