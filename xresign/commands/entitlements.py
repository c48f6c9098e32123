from xresign.commands.alerts import show_alert
from xresign.src.core.errors import ReSignError
from xresign.src.ipa.entitlements_processor import EntitlementsResolver


def run_entitlements_command(args) -> int:
    """Export the entitlements of an IPA or provisioning profile to a plist"""
    try:
        EntitlementsResolver().export_entitlements(args.source, args.output)
    except ReSignError as e:
        show_alert(e)
        return 1
    return 0
