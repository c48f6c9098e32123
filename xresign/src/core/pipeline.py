import shutil
import tempfile
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import List, Optional

from xresign.logger import get_console
from xresign.src.core.errors import (
    ArchiveReadError,
    InternalError,
    PipelineBusy,
    ReSignError,
    ValidationError,
)
from xresign.src.core.identity_matcher import IdentityMatcher
from xresign.src.core.models import (
    EntitlementsOrigin,
    EntitlementsSet,
    PipelineState,
    RunState,
    SigningRequest,
    SubmissionResult,
)
from xresign.src.core.sign_orchestrator import SigningOrchestrator, SigningRun
from xresign.src.ipa.entitlements_processor import EntitlementsResolver
from xresign.src.utils.background import run_in_background


class Pipeline:
    """Validates a signing request, resolves entitlements and starts the signer.

    States: IDLE -> VALIDATING -> (REJECTED | RESOLVING_ENTITLEMENTS) ->
    SIGNING -> (COMPLETED | FAILED). Every terminal state is followed by IDLE,
    and only one signing run may be active at a time.

    Without a provisioning profile no team check is made; the signer then
    works with the chosen identity alone.
    """

    def __init__(
        self,
        matcher: Optional[IdentityMatcher] = None,
        resolver: Optional[EntitlementsResolver] = None,
        orchestrator: Optional[SigningOrchestrator] = None,
        preferences=None,
    ):
        self.console = get_console()
        self.matcher = matcher or IdentityMatcher()
        self.resolver = resolver or EntitlementsResolver()
        self.orchestrator = orchestrator or SigningOrchestrator()
        self.preferences = preferences
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = []  # States of the latest request
        self.current_run: Optional[SigningRun] = None
        self._busy = threading.Event()
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        """True while a signing run is active"""
        return self._busy.is_set()

    def _transition(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)

    def _settle(self, terminal: PipelineState) -> None:
        # Released with the move to IDLE; a submit that sees IDLE owns the busy flag
        with self._lock:
            self.current_run = None
            self._busy.clear()
            self._transition(terminal)
            self._transition(PipelineState.IDLE)

    def _fail(self, error: ReSignError, scratch: Optional[Path]) -> SubmissionResult:
        self.console.log(f"[red]Failed:[/] {error.message}")
        self._cleanup(scratch)
        self._settle(PipelineState.FAILED)
        return SubmissionResult(accepted=False, error=error)

    def submit(self, request: SigningRequest) -> SubmissionResult:
        """Run validation and dispatch; never raises for operator errors"""
        with self._lock:
            if self.state is not PipelineState.IDLE:
                return SubmissionResult(
                    accepted=False,
                    error=PipelineBusy("A signing run is already in progress"),
                )
            self.history = []
            self._transition(PipelineState.VALIDATING)

        try:
            self.validate(request)
        except ReSignError as e:
            self.console.log(f"[red]Rejected:[/] {e.message}")
            self._settle(PipelineState.REJECTED)
            return SubmissionResult(accepted=False, error=e)
        except Exception as e:
            return self._fail(InternalError(f"Internal error during validation: {e}"), None)

        self._transition(PipelineState.RESOLVING_ENTITLEMENTS)
        scratch: Optional[Path] = None
        try:
            entitlements = self._resolve(request)
            entitlements_path = None
            if entitlements is not None:
                if entitlements.origin is EntitlementsOrigin.OVERRIDE:
                    entitlements_path = entitlements.source_path
                else:
                    scratch = self._make_scratch()
                    entitlements_path = entitlements.write_to(scratch / "entitlements.plist")

            self._transition(PipelineState.SIGNING)
            self._busy.set()
            run = self.orchestrator.run(request, entitlements_path)
        except ReSignError as e:
            return self._fail(e, scratch)
        except Exception as e:
            return self._fail(InternalError(f"Internal error: {e}"), scratch)

        self.current_run = run
        self._remember(request)
        run.on_complete(lambda state: self._on_run_complete(state, scratch))
        return SubmissionResult(accepted=True, run=run, entitlements=entitlements)

    def submit_async(self, request: SigningRequest) -> Future:
        """submit() on a background thread; the future yields the SubmissionResult"""
        return run_in_background(self.submit, request)

    def validate(self, request: SigningRequest) -> None:
        """Raise ValidationError (or a subclass) for the first failing check"""
        if not request.archive_path:
            raise ValidationError("IPA file not selected")
        if not request.archive_path.exists():
            raise ValidationError(f"IPA file not found: {request.archive_path}")

        if request.identity is None or not request.identity.common_name:
            raise ValidationError("Signing certificate not selected")

        if request.entitlements_path and not request.entitlements_path.exists():
            raise ValidationError(f"Entitlements not found: {request.entitlements_path}")

        if request.profile:
            if not request.profile.path.exists():
                raise ValidationError(f"Provisioning profile not found: {request.profile.path}")
            self.matcher.check(request.identity, request.profile)

    def _resolve(self, request: SigningRequest) -> Optional[EntitlementsSet]:
        try:
            return self.resolver.resolve_entitlements(
                request.archive_path, request.entitlements_path
            )
        except ArchiveReadError as e:
            # Unknown archive contents only cost us the entitlements
            self.console.log(f"[yellow]Warning: {e.message}[/]")
            return None

    def _make_scratch(self) -> Path:
        try:
            return Path(tempfile.mkdtemp(prefix="xresign-run-"))
        except OSError as e:
            raise InternalError(f"Internal error. No temporary directory for script: {e}")

    @staticmethod
    def _cleanup(scratch: Optional[Path]) -> None:
        if scratch:
            shutil.rmtree(scratch, ignore_errors=True)

    def _remember(self, request: SigningRequest) -> None:
        if self.preferences is None:
            return
        try:
            self.preferences.remember(request)
        except OSError as e:
            self.console.log(f"[yellow]Warning: Could not save preferences: {e}[/]")

    def _on_run_complete(self, state: RunState, scratch: Optional[Path]) -> None:
        self._cleanup(scratch)
        if state.succeeded:
            self.console.log("[green]Signing completed[/]")
        else:
            self.console.log(f"[red]Signing failed with exit status {state.exit_code}[/]")
        self._settle(
            PipelineState.COMPLETED if state.succeeded else PipelineState.FAILED
        )
