from typing import Optional


class ReSignError(Exception):
    """Base class for every failure reported to the operator"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReSignError):
    """Bad or missing input; the request is rejected before signing"""


class IdentityLookupError(ValidationError):
    """One side of the team identifier comparison could not be retrieved"""


class IdentityMismatchError(ValidationError):
    """Certificate and provisioning profile belong to different teams"""

    def __init__(self, certificate_team: str, profile_team: str):
        super().__init__(
            "There is a problem!\n"
            "Different team identifiers\n"
            f"Provisioning team identifier: {profile_team}\n"
            f"Certificate team identifier: {certificate_team}\n"
            "Check it and select the right pair."
        )
        self.certificate_team = certificate_team
        self.profile_team = profile_team


class ArchiveReadError(ReSignError):
    """The archive is unreadable or lacks the app descriptor"""


class ToolchainMissing(ReSignError):
    """The external signer could not be located"""


class SigningFailed(ReSignError):
    """The external signer exited with a non-zero status"""

    def __init__(self, exit_code: int, message: Optional[str] = None):
        super().__init__(message or f"Signing failed with exit status {exit_code}")
        self.exit_code = exit_code


class InternalError(ReSignError):
    """Environment problem (scratch space, host tools), not operator input"""


class PipelineBusy(ReSignError):
    """A signing run is already active on this pipeline"""
