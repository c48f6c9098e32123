import threading
from pathlib import Path

import pytest

from conftest import corrupt_entry, write_ipa
from xresign.src.core.errors import (
    IdentityLookupError,
    IdentityMismatchError,
    InternalError,
    PipelineBusy,
    SigningFailed,
    ToolchainMissing,
    ValidationError,
)
from xresign.src.core.identity_matcher import IdentityMatcher
from xresign.src.core.models import (
    EntitlementsOrigin,
    PipelineState,
    SigningIdentity,
    SigningRequest,
)
from xresign.src.core.pipeline import Pipeline
from xresign.src.core.sign_orchestrator import SigningOrchestrator
from xresign.src.ipa.entitlements_processor import EntitlementsResolver
from xresign.src.utils.config_loader import Preferences

IDENTITY = SigningIdentity("iPhone Developer: Jane Roe (ABCDE12345)")


class FakeStore:
    def __init__(self, org_unit):
        self.org_unit = org_unit

    def organizational_unit_of(self, identity):
        return self.org_unit


class UnsignedBinary:
    def entitlements(self, executable):
        return {}


class SpyResolver(EntitlementsResolver):
    def __init__(self):
        super().__init__(signature_inspector=UnsignedBinary())
        self.calls = 0

    def resolve_entitlements(self, archive, explicit_override_path=None):
        self.calls += 1
        return super().resolve_entitlements(archive, explicit_override_path)


@pytest.fixture
def marker(tmp_path):
    return tmp_path / "signer-ran"


@pytest.fixture
def pipeline_for(tmp_path, make_signer, marker):
    def _make(org_unit="TEAM123", body='echo "signing $*"', signer=None):
        signer = signer or make_signer(f'touch "{marker}"\n{body}')
        return Pipeline(
            matcher=IdentityMatcher(FakeStore(org_unit)),
            resolver=SpyResolver(),
            orchestrator=SigningOrchestrator(signer),
            preferences=Preferences(tmp_path / "prefs.toml"),
        )

    return _make


def test_matching_teams_sign_and_return_to_idle(pipeline_for, ipa, profile_file, marker):
    pipeline = pipeline_for("TEAM123")
    result = pipeline.submit(SigningRequest.create(ipa, IDENTITY, profile_path=profile_file))

    assert result.accepted
    assert result.entitlements.origin is EntitlementsOrigin.PROFILE
    state = result.run.wait(timeout=10)

    assert state.succeeded
    assert marker.exists()
    assert pipeline.state is PipelineState.IDLE
    assert not pipeline.busy
    assert pipeline.history == [
        PipelineState.VALIDATING,
        PipelineState.RESOLVING_ENTITLEMENTS,
        PipelineState.SIGNING,
        PipelineState.COMPLETED,
        PipelineState.IDLE,
    ]


def test_signer_receives_resolved_entitlements(pipeline_for, ipa, profile_file):
    pipeline = pipeline_for("TEAM123")
    run = pipeline.submit(
        SigningRequest.create(ipa, IDENTITY, profile_path=profile_file)
    ).run
    run.wait(timeout=10)
    assert "-e" in run.command
    # Scratch entitlements are removed once the run has completed
    assert not Path(run.command[run.command.index("-e") + 1]).exists()


def test_team_mismatch_rejects_without_signing(pipeline_for, ipa, profile_file, marker):
    pipeline = pipeline_for("TEAM999")
    result = pipeline.submit(SigningRequest.create(ipa, IDENTITY, profile_path=profile_file))

    assert not result.accepted
    assert isinstance(result.error, IdentityMismatchError)
    assert "TEAM123" in result.error.message
    assert "TEAM999" in result.error.message
    assert not marker.exists()
    assert pipeline.history == [
        PipelineState.VALIDATING,
        PipelineState.REJECTED,
        PipelineState.IDLE,
    ]


def test_lookup_failure_rejects_before_signer(pipeline_for, ipa, profile_file, marker):
    pipeline = pipeline_for(None)
    result = pipeline.submit(SigningRequest.create(ipa, IDENTITY, profile_path=profile_file))
    assert isinstance(result.error, IdentityLookupError)
    assert not marker.exists()
    assert pipeline.state is PipelineState.IDLE


def test_missing_entitlements_rejects_before_introspection(pipeline_for, tmp_path, ipa):
    pipeline = pipeline_for()
    result = pipeline.submit(
        SigningRequest.create(ipa, IDENTITY, entitlements_path=tmp_path / "missing.plist")
    )
    assert isinstance(result.error, ValidationError)
    assert pipeline.resolver.calls == 0
    assert PipelineState.RESOLVING_ENTITLEMENTS not in pipeline.history


@pytest.mark.parametrize(
    "archive, identity, message",
    [
        ("", IDENTITY, "IPA file not selected"),
        (None, IDENTITY, "IPA file not selected"),
        ("ipa", None, "Signing certificate not selected"),
    ],
)
def test_incomplete_requests_are_rejected(pipeline_for, ipa, archive, identity, message):
    request = SigningRequest.create(ipa if archive == "ipa" else archive, identity)
    result = pipeline_for().submit(request)
    assert result.error.message == message


def test_missing_profile_is_rejected(pipeline_for, tmp_path, ipa):
    request = SigningRequest.create(ipa, IDENTITY, profile_path=tmp_path / "x.mobileprovision")
    assert isinstance(pipeline_for().submit(request).error, ValidationError)


def test_signer_failure_keeps_log_and_clears_busy(pipeline_for, ipa):
    pipeline = pipeline_for(body='echo "codesign failed"\nexit 2')
    result = pipeline.submit(SigningRequest.create(ipa, IDENTITY))
    state = result.run.wait(timeout=10)

    assert state.exit_code == 2
    assert isinstance(result.run.error, SigningFailed)
    assert "codesign failed" in result.run.log
    assert not pipeline.busy
    assert pipeline.history[-2:] == [PipelineState.FAILED, PipelineState.IDLE]


def test_missing_signer_fails_and_returns_to_idle(pipeline_for, tmp_path, ipa):
    pipeline = pipeline_for(signer=tmp_path / "absent.sh")
    result = pipeline.submit(SigningRequest.create(ipa, IDENTITY))
    assert isinstance(result.error, ToolchainMissing)
    assert not pipeline.busy
    assert pipeline.history[-2:] == [PipelineState.FAILED, PipelineState.IDLE]


def test_second_submission_is_rejected_while_busy(pipeline_for, ipa):
    pipeline = pipeline_for(body='echo "ready"\nexec sleep 30')
    ready = threading.Event()
    pipeline.orchestrator.on_log_line(lambda line: ready.set())

    first = pipeline.submit(SigningRequest.create(ipa, IDENTITY))
    assert ready.wait(timeout=10)
    second = pipeline.submit(SigningRequest.create(ipa, IDENTITY))

    assert isinstance(second.error, PipelineBusy)
    assert pipeline.state is PipelineState.SIGNING
    assert pipeline.current_run is first.run

    first.run.cancel()
    assert first.run.wait(timeout=10).cancelled
    assert pipeline.state is PipelineState.IDLE
    assert pipeline.current_run is None


def test_preferences_remembered_on_dispatch(pipeline_for, ipa, profile_file):
    pipeline = pipeline_for()
    request = SigningRequest.create(
        ipa, IDENTITY, profile_path=profile_file, bundle_identifier="com.acme.new"
    )
    pipeline.submit(request).run.wait(timeout=10)

    preferences = pipeline.preferences
    assert preferences.get(Preferences.LAST_PROVISIONING_PATH) == str(profile_file)
    assert preferences.get(Preferences.LAST_BUNDLE_ID) == "com.acme.new"
    assert preferences.get(Preferences.LAST_CERTIFICATE) == IDENTITY.common_name


def test_submit_async(pipeline_for, ipa):
    result = pipeline_for().submit_async(SigningRequest.create(ipa, IDENTITY)).result(timeout=10)
    assert result.accepted
    assert result.run.wait(timeout=10).succeeded


def test_damaged_archive_entry_signs_without_entitlements(pipeline_for, tmp_path):
    path = write_ipa(tmp_path / "damaged.ipa", executable=b"\xcf\xfa\xed\xfe" * 32)
    corrupt_entry(path, b"\xcf\xfa\xed\xfe" * 32)
    pipeline = pipeline_for()

    result = pipeline.submit(SigningRequest.create(path, IDENTITY))
    assert result.accepted
    assert result.entitlements is None
    assert result.run.wait(timeout=10).succeeded
    assert pipeline.state is PipelineState.IDLE


class ExplodingResolver:
    def resolve_entitlements(self, archive, explicit_override_path=None):
        raise RuntimeError("disk on fire")


def test_unexpected_error_fails_and_returns_to_idle(pipeline_for, ipa, marker):
    pipeline = pipeline_for()
    pipeline.resolver = ExplodingResolver()

    result = pipeline.submit(SigningRequest.create(ipa, IDENTITY))
    assert isinstance(result.error, InternalError)
    assert "disk on fire" in result.error.message
    assert not marker.exists()
    assert not pipeline.busy
    assert pipeline.history[-2:] == [PipelineState.FAILED, PipelineState.IDLE]
    again = pipeline.submit(SigningRequest.create(ipa, IDENTITY))
    assert isinstance(again.error, InternalError)


class ResubmittingPipeline(Pipeline):
    """Submits again the moment the first run has settled to IDLE"""

    def __init__(self, request, **kwargs):
        super().__init__(**kwargs)
        self.next_request = request
        self.second = None

    def _settle(self, terminal):
        super()._settle(terminal)
        if self.second is None:
            self.second = self.submit(self.next_request)


def test_busy_belongs_to_the_run_started_after_settling(tmp_path, make_signer, ipa):
    flag = tmp_path / "first-done"
    signer = make_signer(f'if [ -e "{flag}" ]; then exec sleep 30; fi\ntouch "{flag}"')
    request = SigningRequest.create(ipa, IDENTITY)
    pipeline = ResubmittingPipeline(
        request,
        matcher=IdentityMatcher(FakeStore("TEAM123")),
        resolver=SpyResolver(),
        orchestrator=SigningOrchestrator(signer),
    )

    first = pipeline.submit(request)
    assert first.run.wait(timeout=10).succeeded

    second = pipeline.second
    assert second.accepted
    assert not second.run.done()
    assert pipeline.busy
    assert pipeline.state is PipelineState.SIGNING
    assert pipeline.current_run is second.run

    second.run.cancel()
    assert second.run.wait(timeout=10).cancelled
    assert not pipeline.busy
    assert pipeline.state is PipelineState.IDLE
