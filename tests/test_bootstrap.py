"""Tests for aisandbox.bootstrap: phase sequencing, fatal vs degraded paths."""

import copy
import stat
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from aisandbox.bootstrap import Bootstrap, BootstrapConfig, dependency_steps
from aisandbox.config import BootstrapSettings
from aisandbox.models import DeploymentPhase

LSPCI_WITH_GPU = "01:00.0 VGA compatible controller: NVIDIA Corporation AD104GL\n"
LSPCI_NO_GPU = "00:01.0 ISA bridge: Intel Corporation 82371SB PIIX3 ISA\n"

CHAT_COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hi"}}],
}

GPU_READY = {"nvidia-smi": (0, "", "")}
GPU_ABSENT = {"nvidia-smi": (127, "", "not found"), "lspci": (0, LSPCI_NO_GPU, "")}
GPU_INSTALLS = {"nvidia-smi": [(9, "", ""), (0, "", "")], "lspci": (0, LSPCI_WITH_GPU, "")}
GPU_BROKEN = {
    "nvidia-smi": (9, "", ""),
    "lspci": (0, LSPCI_WITH_GPU, ""),
    "apt-get install -y -qq nvidia-driver": (100, "", ""),
    "ubuntu-drivers": (1, "", ""),
}


def _config(tmp_path, **settings_overrides):
    settings = BootstrapSettings(
        core_listen_attempts=3,
        core_listen_interval=5,
        ui_health_attempts=2,
        ui_health_interval=2,
        core_health_attempts=2,
        core_health_interval=5,
    )
    for key, value in settings_overrides.items():
        setattr(settings, key, value)
    return BootstrapConfig(
        model_id="mistralai/Mistral-7B-Instruct-v0.3",
        settings=settings,
        model_dir=str(tmp_path / "models"),
        data_dir=str(tmp_path / "open-webui"),
        compose_dir=str(tmp_path / "ai-sandbox"),
        status_file=str(tmp_path / "motd"),
        log_dir=str(tmp_path / "log"),
        public_address="203.0.113.7",
    )


def _completion_response(status=200, body=None):
    resp = MagicMock(status_code=status)
    resp.json.return_value = body if body is not None else CHAT_COMPLETION
    resp.text = str(body if body is not None else CHAT_COMPLETION)
    return resp


@pytest.fixture
def network():
    """Patch TCP, HTTP health and chat-completion traffic to a healthy node."""
    with patch("aisandbox.poller.socket.create_connection") as connect, \
            patch("aisandbox.poller.requests.request") as request, \
            patch("aisandbox.validator.requests.post") as post:
        request.return_value = MagicMock(status_code=200)
        post.return_value = _completion_response()
        yield MagicMock(connect=connect, request=request, post=post)


def _run(tmp_path, executor, no_sleep, **settings_overrides):
    config = _config(tmp_path, **settings_overrides)
    state = Bootstrap(config, executor, sleep=no_sleep).run()
    motd = Path(config.status_file).read_text()
    return state, motd


class TestHappyPath:
    def test_completes_and_reports_success(self, tmp_path, make_executor, no_sleep, network):
        ex = make_executor(GPU_READY)
        state, motd = _run(tmp_path, ex, no_sleep)

        assert state.succeeded
        assert state.caveats == []
        assert state.history[-1] is DeploymentPhase.COMPLETE
        assert "Deployment Complete" in motd
        assert "http://203.0.113.7:3000" in motd
        assert "http://203.0.113.7:8000/v1" in motd
        assert "mistralai/Mistral-7B-Instruct-v0.3" in motd
        assert "WITHOUT authentication" in motd

    def test_phases_visited_in_order(self, tmp_path, make_executor, no_sleep, network):
        state, _ = _run(tmp_path, make_executor(GPU_READY), no_sleep)
        orders = [p.order for p in state.history]
        assert orders == sorted(orders)
        assert state.history[0] is DeploymentPhase.INITIALIZING
        assert DeploymentPhase.API_VALIDATED in state.history

    def test_manifest_written(self, tmp_path, make_executor, no_sleep, network):
        _run(tmp_path, make_executor(GPU_READY), no_sleep)
        compose = tmp_path / "ai-sandbox" / "docker-compose.yml"
        assert "mistralai/Mistral-7B-Instruct-v0.3" in compose.read_text()

    def test_chat_completion_request_shape(self, tmp_path, make_executor, no_sleep, network):
        _run(tmp_path, make_executor(GPU_READY), no_sleep)
        args, kwargs = network.post.call_args
        assert args[0] == "http://localhost:8000/v1/chat/completions"
        assert kwargs["json"]["model"] == "mistralai/Mistral-7B-Instruct-v0.3"
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "test"}]
        assert kwargs["json"]["max_tokens"] == 5


class TestServiceOrdering:
    @pytest.mark.parametrize("gpu", [GPU_READY, GPU_ABSENT, GPU_INSTALLS, GPU_BROKEN],
                             ids=["ready", "absent", "installs", "broken"])
    def test_dependent_started_after_core(self, gpu, tmp_path, make_executor, no_sleep, network):
        ex = make_executor(copy.deepcopy(gpu))
        state, _ = _run(tmp_path, ex, no_sleep)

        core = ex.index_of("docker-compose -f")
        assert ex.commands()[core].endswith("up -d api")
        ui = ex.index_of(f"docker-compose -f {tmp_path / 'ai-sandbox' / 'docker-compose.yml'} up -d ui")
        assert 0 <= core < ui
        assert state.succeeded

    def test_core_start_failure_never_starts_dependent(self, tmp_path, make_executor, no_sleep, network):
        compose = tmp_path / "ai-sandbox" / "docker-compose.yml"
        ex = make_executor({
            **GPU_READY,
            f"docker-compose -f {compose} up -d api": (1, "", "pull access denied"),
        })
        state, motd = _run(tmp_path, ex, no_sleep)

        assert state.failed
        assert state.failed_phase is DeploymentPhase.CORE_STARTING
        assert not ex.ran(f"docker-compose -f {compose} up -d ui")
        assert "DEPLOYMENT FAILED" in motd
        assert "Failed to start API service" in motd
        assert "pull access denied" in motd


class TestFatalPhases:
    def test_dependency_failure_aborts_before_services(self, tmp_path, make_executor, no_sleep, network):
        ex = make_executor({"apt-get install -y -qq ca-certificates": (100, "", "E: broken")})
        state, motd = _run(tmp_path, ex, no_sleep)

        assert state.failed
        assert state.failed_phase is DeploymentPhase.DEPENDENCIES_INSTALLING
        assert "Installing prerequisites" in state.failure_cause
        assert not ex.ran("docker-compose")
        assert not ex.ran("nvidia-smi")
        assert "DEPLOYMENT FAILED" in motd
        assert "df -h" in motd

    def test_best_effort_steps_do_not_abort(self, tmp_path, make_executor, no_sleep, network):
        ex = make_executor({
            **GPU_READY,
            "apt-get upgrade": (1, "", "held packages"),
            "apt-get remove": (100, "", "not installed"),
        })
        state, _ = _run(tmp_path, ex, no_sleep)
        assert state.succeeded

    def test_hello_world_failure_is_a_caveat(self, tmp_path, make_executor, no_sleep, network):
        ex = make_executor({**GPU_READY, "docker run --rm hello-world": (125, "", "")})
        state, _ = _run(tmp_path, ex, no_sleep)
        assert state.succeeded
        assert any("hello-world" in c.message for c in state.caveats)

    def test_dependent_start_failure(self, tmp_path, make_executor, no_sleep, network):
        compose = tmp_path / "ai-sandbox" / "docker-compose.yml"
        ex = make_executor({**GPU_READY, f"docker-compose -f {compose} up -d ui": (1, "", "port in use")})
        state, motd = _run(tmp_path, ex, no_sleep)
        assert state.failed_phase is DeploymentPhase.DEPENDENT_STARTING
        assert "Failed to start UI service" in motd

    def test_unwritable_data_dir(self, tmp_path, make_executor, no_sleep, network):
        with patch.object(Path, "touch", side_effect=PermissionError("read-only")):
            state, motd = _run(tmp_path, make_executor(GPU_READY), no_sleep)
        assert state.failed_phase is DeploymentPhase.PERSISTENCE_VALIDATED
        assert "not writable" in state.failure_cause
        assert "DEPLOYMENT FAILED" in motd

    def test_directory_creation_failure(self, tmp_path, make_executor, no_sleep, network):
        config = _config(tmp_path)
        Path(config.model_dir).write_text("not a directory")
        state = Bootstrap(config, make_executor(GPU_READY), sleep=no_sleep).run()
        assert state.failed_phase is DeploymentPhase.INITIALIZING
        assert "Failed to create directory" in state.failure_cause
        assert "DEPLOYMENT FAILED" in Path(config.status_file).read_text()


class TestDegradedPaths:
    def test_core_never_listening_still_starts_ui(self, tmp_path, make_executor, no_sleep, network):
        network.connect.side_effect = ConnectionRefusedError()
        ex = make_executor(copy.deepcopy(GPU_READY))
        state, motd = _run(tmp_path, ex, no_sleep)

        assert state.health["core_listening"].attempts == 3
        assert not state.health["core_listening"].ready
        assert ex.ran(f"docker-compose -f {tmp_path / 'ai-sandbox' / 'docker-compose.yml'} up -d ui")
        assert state.succeeded
        assert [c.phase for c in state.caveats] == [DeploymentPhase.CORE_LISTENING]
        assert "Deployment Complete" in motd
        assert "UI was started anyway" in motd

    def test_no_gpu_hardware(self, tmp_path, make_executor, no_sleep, network):
        ex = make_executor(copy.deepcopy(GPU_ABSENT))
        state, motd = _run(tmp_path, ex, no_sleep)

        assert not ex.ran("apt-get install -y -qq nvidia-driver-535")
        assert state.succeeded
        assert DeploymentPhase.MANIFEST_GENERATED in state.history
        assert any(c.phase is DeploymentPhase.GPU_CONFIGURING for c in state.caveats)
        assert "No NVIDIA GPU" in motd

    def test_driver_install_failure_continues(self, tmp_path, make_executor, no_sleep, network):
        state, _ = _run(tmp_path, make_executor(copy.deepcopy(GPU_BROKEN)), no_sleep)
        assert state.succeeded
        assert any("reboot" in c.message for c in state.caveats)

    def test_api_contract_503_is_still_loading(self, tmp_path, make_executor, no_sleep, network):
        network.post.return_value = _completion_response(503, {"error": "loading"})
        state, motd = _run(tmp_path, make_executor(GPU_READY), no_sleep)

        assert state.succeeded
        assert len(state.caveats) == 1
        assert state.caveats[0].phase is DeploymentPhase.API_VALIDATED
        assert "still loading" in state.caveats[0].message
        assert "Deployment Complete" in motd
        assert "still loading" in motd

    def test_api_contract_malformed_body(self, tmp_path, make_executor, no_sleep, network):
        network.post.return_value = _completion_response(200, {"object": "text_completion"})
        state, _ = _run(tmp_path, make_executor(GPU_READY), no_sleep)
        assert state.succeeded
        assert "text_completion" in state.caveats[0].message

    def test_health_timeouts_are_caveats_by_default(self, tmp_path, make_executor, no_sleep, network):
        network.request.return_value = MagicMock(status_code=503)
        state, _ = _run(tmp_path, make_executor(GPU_READY), no_sleep)
        assert state.succeeded
        assert state.health["ui"].attempts == 2
        assert state.health["core"].attempts == 2
        messages = " ".join(c.message for c in state.caveats)
        assert "Open WebUI" in messages
        assert "vLLM API" in messages

    def test_strict_policy_fails_on_unhealthy_core(self, tmp_path, make_executor, no_sleep, network):
        network.request.return_value = MagicMock(status_code=503)
        state, motd = _run(tmp_path, make_executor(GPU_READY), no_sleep, require_core_health=True)
        assert state.failed
        assert state.failed_phase is DeploymentPhase.CORE_HEALTHY
        assert "DEPLOYMENT FAILED" in motd
        assert not network.post.called


class TestCreateDirectories:
    def test_idempotent(self, tmp_path, make_executor, no_sleep):
        config = _config(tmp_path)
        boot = Bootstrap(config, make_executor(), sleep=no_sleep)

        boot.create_directories(state=None)
        first = {d: stat.S_IMODE(Path(d).stat().st_mode) for d in config.directories}
        boot.create_directories(state=None)
        second = {d: stat.S_IMODE(Path(d).stat().st_mode) for d in config.directories}

        assert first == second
        assert set(first.values()) == {0o755}


class TestDependencySteps:
    def test_required_steps_cover_runtime_and_toolkit(self):
        required = [" ".join(s.args) for s in dependency_steps() if s.required]
        assert any("docker-ce" in cmd for cmd in required)
        assert any("docker-compose" in cmd for cmd in required)
        assert any("nvidia-container-toolkit" in cmd for cmd in required)

    def test_upgrade_is_best_effort(self):
        upgrade = [s for s in dependency_steps() if s.args[:2] == ("apt-get", "upgrade")]
        assert upgrade and not upgrade[0].required


class TestAddressResolution:
    def test_resolver_used_without_override(self, tmp_path, make_executor, no_sleep, network):
        config = _config(tmp_path)
        config.public_address = None
        resolver = MagicMock(return_value="198.51.100.4")
        Bootstrap(config, make_executor(GPU_READY), sleep=no_sleep, address_resolver=resolver).run()
        resolver.assert_called_once()
        assert "http://198.51.100.4:3000" in Path(config.status_file).read_text()

    @patch("aisandbox.bootstrap.requests")
    def test_metadata_fallback(self, mock_requests):
        from aisandbox.bootstrap import ADDRESS_FALLBACK, resolve_public_address

        mock_requests.put.side_effect = OSError("no metadata service")
        assert resolve_public_address() == ADDRESS_FALLBACK

    @patch("aisandbox.bootstrap.requests")
    def test_metadata_public_ipv4(self, mock_requests):
        from aisandbox.bootstrap import resolve_public_address

        mock_requests.put.return_value = MagicMock(text="tok\n")
        mock_requests.get.return_value.json.return_value = {
            "ipv4": {"public": ["192.0.2.10/32"], "private": []}
        }
        assert resolve_public_address() == "192.0.2.10"
        headers = mock_requests.get.call_args[1]["headers"]
        assert headers["Metadata-Token"] == "tok"
