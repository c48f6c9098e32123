from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
import plistlib


PLACEHOLDER_BUNDLE_ID = "com.domainname.appname"
PLACEHOLDER_VERSION = "1.0.0"
PLACEHOLDER_BUILD = "1"


@dataclass(frozen=True)
class AppMetadata:
    """Identifying fields read from the app's Info.plist"""

    bundle_identifier: str = ""  # CFBundleIdentifier
    short_version: str = ""  # CFBundleShortVersionString
    build_version: str = ""  # CFBundleVersion
    main_executable_name: str = ""  # CFBundleExecutable

    @classmethod
    def placeholder(cls) -> "AppMetadata":
        """Defaults shown when the archive could not be introspected"""
        return cls(
            bundle_identifier=PLACEHOLDER_BUNDLE_ID,
            short_version=PLACEHOLDER_VERSION,
            build_version=PLACEHOLDER_BUILD,
        )


@dataclass(frozen=True)
class SigningIdentity:
    """Reference to a code signing certificate held in a keychain"""

    common_name: str
    keychain: Optional[str] = None  # None = default search list
    sha1: Optional[str] = None


@dataclass(frozen=True)
class ProvisioningProfile:
    path: Path


class EntitlementsOrigin(Enum):
    OVERRIDE = "override"  # File supplied by the operator
    SIGNATURE = "signature"  # Current code signature of the main executable
    PROFILE = "profile"  # Embedded provisioning profile


@dataclass
class EntitlementsSet:
    """The effective entitlements of a signing run"""

    entries: Dict[str, Any]
    origin: EntitlementsOrigin
    raw: bytes = b""
    source_path: Optional[Path] = None

    def __post_init__(self):
        if not self.raw:
            self.raw = plistlib.dumps(
                self.entries, fmt=plistlib.FMT_XML, sort_keys=False
            )

    def write_to(self, path: Path) -> Path:
        """Write the raw plist bytes handed to the signer"""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.raw)
        return path


@dataclass(frozen=True)
class SigningRequest:
    """Immutable snapshot of what the operator asked for"""

    archive_path: Optional[Path]
    identity: Optional[SigningIdentity]
    profile: Optional[ProvisioningProfile] = None
    bundle_identifier: Optional[str] = None  # New bundle ID (None = keep original)
    entitlements_path: Optional[Path] = None  # Explicit entitlements override
    version: Optional[str] = None  # New CFBundleShortVersionString
    build: Optional[str] = None  # New CFBundleVersion

    @classmethod
    def create(
        cls,
        archive_path,
        identity: Optional[SigningIdentity],
        profile_path=None,
        bundle_identifier: Optional[str] = None,
        entitlements_path=None,
        version: Optional[str] = None,
        build: Optional[str] = None,
    ) -> "SigningRequest":
        """Build a request from raw user input, normalising empty strings"""

        def clean(value):
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        archive = clean(archive_path)
        profile = clean(profile_path)
        entitlements = clean(entitlements_path)
        return cls(
            archive_path=Path(archive) if archive else None,
            identity=identity,
            profile=ProvisioningProfile(Path(profile)) if profile else None,
            bundle_identifier=clean(bundle_identifier),
            entitlements_path=Path(entitlements) if entitlements else None,
            version=clean(version),
            build=clean(build),
        )


class RunStatus(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RunState:
    status: RunStatus
    exit_code: Optional[int] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED


class PipelineState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    RESOLVING_ENTITLEMENTS = "resolving_entitlements"
    SIGNING = "signing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SubmissionResult:
    """Structured outcome of handing a request to the pipeline"""

    accepted: bool
    error: Optional[Exception] = None
    run: Optional[Any] = None  # SigningRun when accepted
    entitlements: Optional[EntitlementsSet] = None
