from rich.panel import Panel

from xresign.logger import get_error_console
from xresign.src.core.errors import (
    ArchiveReadError,
    IdentityMismatchError,
    InternalError,
    PipelineBusy,
    ReSignError,
    SigningFailed,
    ToolchainMissing,
    ValidationError,
)

# Most specific first
ALERT_TITLES = [
    (IdentityMismatchError, "Certificate and profile do not match"),
    (ValidationError, "Invalid input"),
    (ArchiveReadError, "Unreadable archive"),
    (ToolchainMissing, "Signer not found"),
    (SigningFailed, "Signing failed"),
    (InternalError, "Internal error"),
    (PipelineBusy, "Busy"),
]


def alert_title(error: Exception) -> str:
    for error_type, title in ALERT_TITLES:
        if isinstance(error, error_type):
            return title
    return "Error"


def show_alert(error: Exception) -> None:
    """Show an error the way the desktop app shows its alert sheet"""
    message = error.message if isinstance(error, ReSignError) else str(error)
    get_error_console().print(
        Panel(message, title=f"[bold red]{alert_title(error)}[/]", border_style="red")
    )
