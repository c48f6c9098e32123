from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Re-sign iOS apps with your own certificate and provisioning profile"

USAGE_NOTES = """\
1. Pass the .ipa file to sign.
2. Pass a provisioning profile with -p. (Optional)
3. Pass an entitlements plist with -e. (Optional)
4. Change the app bundle identifier with -b. (Optional)
5. Select the signing certificate from your keychain with -c.
The resigned file is saved in the same folder as the original file.

NOTE: Pay attention to the right pair between signing certificate and provisioning profile."""


def get_banner_text() -> Text:
    return Text("XReSign", style="bold magenta")
