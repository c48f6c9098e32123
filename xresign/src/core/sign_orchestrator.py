import shutil
import subprocess
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, List, Optional

from xresign.logger import get_console
from xresign.src.core.errors import SigningFailed, ToolchainMissing
from xresign.src.core.models import RunState, RunStatus, SigningRequest
from xresign.src.utils.config_loader import get_signer_path

SIGNER_NAME = "xresign.sh"

LogCallback = Callable[[str], None]
CompleteCallback = Callable[[RunState], None]


class Subscription:
    """Returned by callback registration; dispose() unsubscribes"""

    def __init__(self, listeners: list, callback: Callable):
        self._listeners = listeners
        self._callback = callback

    def dispose(self) -> None:
        try:
            self._listeners.remove(self._callback)
        except ValueError:
            pass


def _notify(listeners: list, value) -> None:
    console = get_console()
    for callback in list(listeners):
        try:
            callback(value)
        except Exception as e:
            console.log(f"[red]Listener {callback!r} failed:[/] {e}")


class SigningRun:
    """One invocation of the external signer.

    stdout and stderr are merged and read by a single thread, so log lines
    reach listeners in the order the signer wrote them. Completion fires
    exactly once, after the last line has been delivered.
    """

    def __init__(
        self,
        request: SigningRequest,
        command: List[str],
        log_listeners: Optional[List[LogCallback]] = None,
        complete_listeners: Optional[List[CompleteCallback]] = None,
    ):
        self.console = get_console()
        self.request = request
        self.command = command
        self.process: Optional[subprocess.Popen] = None
        self.lines: List[str] = []
        self._state = RunState(RunStatus.RUNNING)
        self._log_listeners: List[LogCallback] = list(log_listeners or [])
        self._complete_listeners: List[CompleteCallback] = list(complete_listeners or [])
        self._completion: Future = Future()
        self._lock = threading.Lock()
        self._cancelled = False
        self._finished = False
        self._reader: Optional[threading.Thread] = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def log(self) -> str:
        return "\n".join(self.lines)

    def done(self) -> bool:
        return self._completion.done()

    @property
    def error(self) -> Optional[SigningFailed]:
        """SigningFailed for a failed run, None while running or on success"""
        if self._state.status is not RunStatus.FAILED:
            return None
        if self._state.cancelled:
            return SigningFailed(self._state.exit_code, "Signing cancelled")
        return SigningFailed(self._state.exit_code)

    def on_log_line(self, callback: LogCallback) -> Subscription:
        """Receive lines produced from now on; earlier ones are in `lines`"""
        self._log_listeners.append(callback)
        return Subscription(self._log_listeners, callback)

    def on_complete(self, callback: CompleteCallback) -> Subscription:
        """Called once with the final state, immediately if already finished"""
        with self._lock:
            if not self._finished:
                self._complete_listeners.append(callback)
                return Subscription(self._complete_listeners, callback)
        _notify([callback], self._state)
        return Subscription([], callback)

    def start(self) -> "SigningRun":
        try:
            self.process = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
            )
        except OSError as e:
            raise ToolchainMissing(f"Can not launch signer {self.command[0]}: {e}")

        self._reader = threading.Thread(target=self._pump, daemon=True)
        self._reader.start()
        return self

    def _pump(self) -> None:
        try:
            for raw in iter(self.process.stdout.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self.lines.append(line)
                _notify(self._log_listeners, line)
        finally:
            self.process.stdout.close()
            self._finish(self.process.wait())

    def _finish(self, exit_code: int) -> None:
        if exit_code == 0 and not self._cancelled:
            state = RunState(RunStatus.SUCCEEDED, exit_code)
        else:
            state = RunState(RunStatus.FAILED, exit_code, cancelled=self._cancelled)

        with self._lock:
            self._state = state
            self._finished = True
            listeners = list(self._complete_listeners)
            self._complete_listeners.clear()
        _notify(listeners, state)
        # wait() returns only after every completion listener has run
        self._completion.set_result(state)

    def wait(self, timeout: Optional[float] = None) -> RunState:
        """Block until the run has completed and return its final state"""
        return self._completion.result(timeout)

    def cancel(self, grace_period: float = 5.0) -> None:
        """Terminate the signer; the run completes as failed and cancelled"""
        if self.process is None or self.process.poll() is not None:
            return
        self._cancelled = True
        self.console.log("[yellow]Stopping signer...[/]")
        try:
            self.process.terminate()
            self.process.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            self.console.log("[red]Force killing signer...[/]")
            self.process.kill()


class SigningOrchestrator:
    """Runs the external signer and streams its output"""

    def __init__(self, signer_path: Optional[Path] = None):
        self.console = get_console()
        self.signer_path = Path(signer_path) if signer_path else None
        self._log_listeners: List[LogCallback] = []
        self._complete_listeners: List[CompleteCallback] = []

    def on_log_line(self, callback: LogCallback) -> Subscription:
        """Attach to the log of every future run"""
        self._log_listeners.append(callback)
        return Subscription(self._log_listeners, callback)

    def on_complete(self, callback: CompleteCallback) -> Subscription:
        """Attach to the completion of every future run"""
        self._complete_listeners.append(callback)
        return Subscription(self._complete_listeners, callback)

    def locate_signer(self) -> Path:
        """Explicit path, then XRESIGN_SIGNER / config, then xresign.sh on PATH"""
        signer = self.signer_path
        if signer is None:
            try:
                signer = get_signer_path()
            except ValueError as e:
                raise ToolchainMissing(str(e))
        if signer is None:
            found = shutil.which(SIGNER_NAME)
            signer = Path(found) if found else None

        if signer is None or not signer.is_file():
            raise ToolchainMissing(
                f"Can not find resign script to run ({signer or SIGNER_NAME}). "
                "Set XRESIGN_SIGNER or [signer] path in the config."
            )
        return signer

    @staticmethod
    def build_arguments(
        request: SigningRequest, entitlements_path: Optional[Path] = None
    ) -> List[str]:
        args = ["-s", str(request.archive_path), "-c", request.identity.common_name]
        if request.profile:
            args += ["-p", str(request.profile.path)]
        if request.bundle_identifier:
            args += ["-b", request.bundle_identifier]
        if entitlements_path:
            args += ["-e", str(entitlements_path)]
        if request.version:
            args += ["-v", request.version]
        if request.build:
            args += ["-n", request.build]
        return args

    @staticmethod
    def build_command(signer: Path, args: List[str]) -> List[str]:
        # Shell scripts are run through /bin/sh so they need no exec bit
        if signer.suffix == ".sh":
            return ["/bin/sh", str(signer), *args]
        return [str(signer), *args]

    def run(
        self, request: SigningRequest, entitlements_path: Optional[Path] = None
    ) -> SigningRun:
        """Start the signer and return at once; output arrives asynchronously"""
        signer = self.locate_signer()
        command = self.build_command(
            signer, self.build_arguments(request, entitlements_path)
        )
        self.console.log(f"[cyan]Running signer:[/] {' '.join(command)}")

        run = SigningRun(
            request,
            command,
            log_listeners=self._log_listeners,
            complete_listeners=self._complete_listeners,
        )
        return run.start()
