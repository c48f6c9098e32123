#!/usr/bin/env python3

from pathlib import Path
import plistlib
import re
import shutil
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from xml.parsers.expat import ExpatError
from dataclasses import dataclass
from typing import Dict, Any, Iterator, List, Optional, Union

from xresign.logger import get_console
from xresign.src.core.errors import ArchiveReadError, InternalError
from xresign.src.core.models import AppMetadata

# Raised by zipfile for damaged entries; only surfaces on read
ENTRY_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError)

# Only the top level app bundle; nested bundles (frameworks, extensions) are ignored
INFO_PLIST_RE = re.compile(r"^Payload/[^/]+\.app/Info\.plist$")
ARCHIVE_SUFFIXES = {".ipa", ".zip"}


@dataclass
class EntitlementsSource:
    """Raw material the entitlements resolver works from"""

    profile_bytes: Optional[bytes] = None  # embedded.mobileprovision
    executable_bytes: Optional[bytes] = None
    executable_path: Optional[Path] = None  # Only valid while the handle is open


class ArchiveHandle:
    """Read-only view of an app archive with a private scratch directory.

    Use as a context manager. Entries are extracted one at a time, and only
    if they are on the permitted list: the app's Info.plist, its embedded
    provisioning profile and, once the descriptor names it, the main
    executable. The scratch directory is removed on every exit path.
    """

    def __init__(self, archive_path: Union[str, Path]):
        self.archive_path = Path(archive_path)
        self.temp_dir: Optional[Path] = None
        self.app_prefix: Optional[str] = None  # e.g. "Payload/App.app/"
        self.entries: List[str] = []
        self._zip: Optional[zipfile.ZipFile] = None

    def __enter__(self):
        try:
            self._zip = zipfile.ZipFile(self.archive_path)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveReadError(f"Can not open archive {self.archive_path}: {e}")

        try:
            self.app_prefix = self._find_app_prefix()
            self.entries = [
                f"{self.app_prefix}Info.plist",
                f"{self.app_prefix}embedded.mobileprovision",
            ]
            try:
                self.temp_dir = Path(tempfile.mkdtemp(prefix="xresign-"))
            except OSError as e:
                raise InternalError(f"Can not create temporary directory: {e}")
        except Exception:
            self._zip.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Close the archive and drop the scratch directory"""
        if self._zip:
            self._zip.close()
            self._zip = None
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None

    def _find_app_prefix(self) -> str:
        descriptors = sorted(
            name for name in self._zip.namelist() if INFO_PLIST_RE.match(name)
        )
        if not descriptors:
            raise ArchiveReadError(
                f"No Payload/*.app/Info.plist found in {self.archive_path.name}"
            )
        return descriptors[0][: -len("Info.plist")]

    @property
    def info_plist_entry(self) -> str:
        return self.entries[0]

    @property
    def profile_entry(self) -> str:
        return self.entries[1]

    def permit(self, relative_name: str) -> str:
        """Allow extraction of a file directly inside the app bundle"""
        entry = f"{self.app_prefix}{relative_name}"
        if entry not in self.entries:
            self.entries.append(entry)
        return entry

    def has_entry(self, entry: str) -> bool:
        try:
            self._zip.getinfo(entry)
        except KeyError:
            return False
        return True

    def read(self, entry: str) -> Optional[bytes]:
        """Read a permitted entry into memory, None if the archive lacks it"""
        self._check_permitted(entry)
        if not self.has_entry(entry):
            return None
        try:
            return self._zip.read(entry)
        except ENTRY_READ_ERRORS as e:
            raise ArchiveReadError(f"Can not read {entry} from {self.archive_path.name}: {e}")

    def extract(self, entry: str) -> Optional[Path]:
        """Extract a permitted entry into the scratch directory (flattened)"""
        self._check_permitted(entry)
        if self.temp_dir is None:
            raise InternalError("Archive handle is not open")
        if not self.has_entry(entry):
            return None

        target = self.temp_dir / Path(entry).name
        try:
            with self._zip.open(entry) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except ENTRY_READ_ERRORS as e:
            raise ArchiveReadError(f"Can not extract {entry} from {self.archive_path.name}: {e}")
        return target

    def _check_permitted(self, entry: str) -> None:
        if entry not in self.entries:
            raise ValueError(f"Entry not permitted for extraction: {entry}")


@contextmanager
def _opened(archive: Union[ArchiveHandle, str, Path]) -> Iterator[ArchiveHandle]:
    if isinstance(archive, ArchiveHandle):
        yield archive
    else:
        with ArchiveHandle(archive) as handle:
            yield handle


def _string(info: Dict[str, Any], key: str) -> str:
    value = info.get(key)
    return value if isinstance(value, str) else ""


def load_info_plist(handle: ArchiveHandle) -> Dict[str, Any]:
    """Parse the app descriptor, raising ArchiveReadError if it is not a plist"""
    path = handle.extract(handle.info_plist_entry)
    if path is None:
        raise ArchiveReadError(f"Missing {handle.info_plist_entry}")
    try:
        with open(path, "rb") as f:
            info = plistlib.load(f)
    except (plistlib.InvalidFileException, ValueError, ExpatError) as e:
        raise ArchiveReadError(f"Invalid Info.plist in {handle.archive_path.name}: {e}")
    if not isinstance(info, dict):
        raise ArchiveReadError(f"Info.plist in {handle.archive_path.name} is not a dictionary")
    return info


def extract_metadata(archive: Union[ArchiveHandle, str, Path]) -> AppMetadata:
    """Read bundle id, version, build and executable name from the archive"""
    with _opened(archive) as handle:
        info = load_info_plist(handle)
        return AppMetadata(
            bundle_identifier=_string(info, "CFBundleIdentifier"),
            short_version=_string(info, "CFBundleShortVersionString"),
            build_version=_string(info, "CFBundleVersion"),
            main_executable_name=_string(info, "CFBundleExecutable"),
        )


def extract_entitlements_source(
    archive: Union[ArchiveHandle, str, Path],
) -> EntitlementsSource:
    """Pull the embedded profile and the main executable out of the archive.

    With an open handle only the scratch path of the executable is filled in.
    Given a path, the scratch directory is gone by the time this returns, so
    the executable is read into memory instead.
    """
    with _opened(archive) as handle:
        source = EntitlementsSource(profile_bytes=handle.read(handle.profile_entry))

        executable_name = extract_metadata(handle).main_executable_name
        if not executable_name:
            return source

        entry = handle.permit(Path(executable_name).name)
        executable_path = handle.extract(entry)
        if executable_path is None:
            return source
        if handle is archive:
            source.executable_path = executable_path
        else:
            source.executable_bytes = executable_path.read_bytes()
        return source


def is_archive_path(path: Union[str, Path]) -> bool:
    """Only existing .ipa/.zip files are worth introspecting"""
    path = Path(path)
    return path.suffix.lower() in ARCHIVE_SUFFIXES and path.is_file()


def describe_archive(path: Union[str, Path]) -> AppMetadata:
    """Metadata for display, falling back to placeholders when unreadable"""
    console = get_console()
    if not is_archive_path(path):
        return AppMetadata.placeholder()
    try:
        return extract_metadata(path)
    except ArchiveReadError as e:
        console.log(f"[yellow]Warning: {e.message}[/]")
        return AppMetadata.placeholder()
