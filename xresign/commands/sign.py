import sys
from typing import Optional

from xresign.arguments import create_parser
from xresign.commands.alerts import show_alert
from xresign.logger import get_console
from xresign.src.core.cert_handler import CertHandler
from xresign.src.core.identity_matcher import IdentityMatcher
from xresign.src.core.models import AppMetadata, SigningIdentity, SigningRequest
from xresign.src.core.pipeline import Pipeline
from xresign.src.core.sign_orchestrator import SigningOrchestrator
from xresign.src.ipa.ipa_inspector import describe_archive
from xresign.src.utils.background import run_in_background
from xresign.src.utils.config_loader import Preferences, get_keychain


def _saved(args, value: Optional[str], preferences: Preferences, key: str) -> Optional[str]:
    if value is not None or not args.use_saved_defaults:
        return value
    return preferences.get(key)


def build_request(args, preferences: Preferences) -> SigningRequest:
    """Turn parsed arguments (and remembered values) into a signing request."""
    certificate = _saved(args, args.certificate, preferences, Preferences.LAST_CERTIFICATE)
    keychain = args.keychain or get_keychain()
    identity = SigningIdentity(certificate, keychain=keychain) if certificate else None

    return SigningRequest.create(
        args.ipa_path,
        identity,
        profile_path=_saved(
            args, args.provisioning_profile, preferences, Preferences.LAST_PROVISIONING_PATH
        ),
        bundle_identifier=args.bundle_id,
        entitlements_path=_saved(
            args, args.entitlements, preferences, Preferences.ENTITLEMENTS_PATH
        ),
        version=args.version_number,
        build=args.build_number,
    )


def print_configuration_summary(console, request: SigningRequest, metadata: AppMetadata) -> None:
    """Print the configuration summary."""
    console.print("\n[bold blue]Signing Configuration:[/]")
    console.print(f"[cyan]Input IPA:[/] {request.archive_path}")
    if request.identity:
        console.print(f"[cyan]Certificate:[/] {request.identity.common_name}")
    if request.profile:
        console.print(f"[cyan]Provisioning profile:[/] {request.profile.path}")
    if request.entitlements_path:
        console.print(f"[cyan]Entitlements:[/] {request.entitlements_path}")

    console.print("\n[cyan]App:[/]")
    for label, current, new in (
        ("Bundle ID", metadata.bundle_identifier, request.bundle_identifier),
        ("Version", metadata.short_version, request.version),
        ("Build", metadata.build_version, request.build),
    ):
        if new and new != current:
            console.print(f"  • {label}: {current} -> [green]{new}[/]")
        else:
            console.print(f"  • {label}: {current}")


def sign_application(pipeline: Pipeline, request: SigningRequest) -> bool:
    """Submit the request and block until the signer has finished."""
    console = get_console()
    result = pipeline.submit(request)
    if not result.accepted:
        show_alert(result.error)
        return False

    run = result.run
    try:
        state = run.wait()
    except KeyboardInterrupt:
        run.cancel()
        state = run.wait()

    if state.succeeded:
        console.print(
            f"\n[bold green]✅ Signing completed.[/] "
            f"The resigned file is saved in {request.archive_path.parent}"
        )
        return True

    show_alert(run.error)
    return False


def main(parsed_args=None) -> int:
    """Main sign function that does the actual work.

    Args:
        parsed_args: Optional pre-parsed arguments (from CLI)
    """
    console = get_console()
    args = parsed_args if parsed_args is not None else create_parser().parse_args()

    preferences = Preferences()
    try:
        request = build_request(args, preferences)
    except ValueError as e:
        show_alert(e)
        return 1

    metadata = (
        run_in_background(describe_archive, request.archive_path)
        if request.archive_path
        else None
    )
    print_configuration_summary(
        console, request, metadata.result() if metadata else AppMetadata.placeholder()
    )
    console.print()

    orchestrator = SigningOrchestrator(args.signer)
    orchestrator.on_log_line(
        lambda line: console.print(line, markup=False, highlight=False)
    )
    keychain = request.identity.keychain if request.identity else None
    pipeline = Pipeline(
        matcher=IdentityMatcher(CertHandler(keychain=keychain)),
        orchestrator=orchestrator,
        preferences=preferences,
    )

    return 0 if sign_application(pipeline, request) else 1


def run_sign_command(args):
    """Entry point for the sign command from CLI"""
    return main(parsed_args=args)


# For direct script execution - route through the CLI
if __name__ == "__main__":
    from xresign.cli import main as cli_main

    sys.exit(cli_main())
