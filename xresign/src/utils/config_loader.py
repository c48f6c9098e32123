import os
from pathlib import Path
import toml
from typing import Dict, Any, Optional

from xresign.logger import get_console
from xresign.src.core.models import SigningRequest


def get_config_dir() -> Path:
    """Return the directory holding configuration and preferences."""
    env_home = os.environ.get("XRESIGN_HOME")
    if env_home:
        return Path(env_home)
    return Path.home() / ".xresign"


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.toml"


def load_config() -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except Exception as e:
        raise ValueError(f"Failed to load config: {e}")


def get_signer_path() -> Optional[Path]:
    """Get the external signer from environment or config."""
    env_signer = os.environ.get("XRESIGN_SIGNER")
    if env_signer:
        return Path(env_signer)

    signer = load_config().get("signer", {}).get("path")
    if signer:
        return Path(signer).expanduser()
    return None


def get_keychain() -> Optional[str]:
    """Get the keychain to search for identities, None for the default search list."""
    env_keychain = os.environ.get("XRESIGN_KEYCHAIN")
    if env_keychain:
        return env_keychain
    return load_config().get("identity", {}).get("keychain") or None


class Preferences:
    """Last used values, persisted between runs under stable keys"""

    LAST_PROVISIONING_PATH = "last_provisioning_path"
    ENTITLEMENTS_PATH = "entitlements_path"
    LAST_BUNDLE_ID = "last_bundle_id"
    LAST_CERTIFICATE = "last_certificate"

    def __init__(self, path: Optional[Path] = None):
        self.path = path or get_config_dir() / "preferences.toml"
        self.console = get_console()

    def load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = toml.load(self.path)
        except (toml.TomlDecodeError, OSError) as e:
            self.console.log(f"[yellow]Warning: Could not parse preferences: {e}[/]")
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.load().get(key)
        return value if value else default

    def save(self, values: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            toml.dump(values, f)

    def remember(self, request: SigningRequest) -> None:
        """Store the inputs of a request that passed validation"""
        values = self.load()
        values[self.LAST_PROVISIONING_PATH] = (
            str(request.profile.path) if request.profile else ""
        )
        values[self.ENTITLEMENTS_PATH] = (
            str(request.entitlements_path) if request.entitlements_path else ""
        )
        if request.bundle_identifier:
            values[self.LAST_BUNDLE_ID] = request.bundle_identifier
        if request.identity:
            values[self.LAST_CERTIFICATE] = request.identity.common_name
        self.save(values)
