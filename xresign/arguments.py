import argparse
from pathlib import Path
from rich_argparse import RawDescriptionRichHelpFormatter

from xresign.src.constants.cli_constants import USAGE_NOTES


def create_parser():
    """Create and return an argument parser with signing arguments."""
    parser = argparse.ArgumentParser(
        prog="xresign",
        description=USAGE_NOTES,
        formatter_class=RawDescriptionRichHelpFormatter,
    )
    add_signing_arguments(parser)
    return parser


def add_signing_arguments(parser):
    """Add all signing-related arguments to an existing parser."""
    # Required argument
    parser.add_argument("ipa_path", type=Path, help="Path to the IPA file to sign")

    parser.add_argument(
        "--certificate",
        "-c",
        type=str,
        help="Common name of the signing certificate [default: last used]",
    )

    parser.add_argument(
        "--provisioning-profile",
        "-p",
        type=str,
        help="Provisioning profile to embed; checked against the certificate's team [default: last used]",
    )

    parser.add_argument(
        "--entitlements",
        "-e",
        type=str,
        help="Entitlements plist to sign with [default: derived from the app]",
    )

    parser.add_argument(
        "--bundle-id",
        "-b",
        type=str,
        help="Change the app bundle identifier [default: keep original]",
    )

    parser.add_argument(
        "--version-number",
        type=str,
        help="Change CFBundleShortVersionString [default: keep original]",
    )

    parser.add_argument(
        "--build-number",
        type=str,
        help="Change CFBundleVersion [default: keep original]",
    )

    parser.add_argument(
        "--keychain",
        type=str,
        help="Keychain holding the certificate [default: search list]",
    )

    parser.add_argument(
        "--signer",
        type=Path,
        help="Path to the xresign.sh compatible signer [default: XRESIGN_SIGNER, config, PATH]",
    )

    parser.add_argument(
        "--no-saved-defaults",
        action="store_false",
        dest="use_saved_defaults",
        help="Ignore remembered certificate, profile and entitlements [default: use them]",
    )
