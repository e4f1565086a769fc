"""Tests for the deployment and teardown pipelines and the command line entry point."""

import logging
import os
import signal
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from docker_deployer.__main__ import SIGINT_EXIT_CODE, SIGTERM_EXIT_CODE, main, sigterm_handler
from docker_deployer.errors import ArtifactError, ConfigurationError, DeployError
from docker_deployer.pipeline.pipeline import run_deploy, run_teardown
from docker_deployer.source_fetcher.source_fetcher import Workspace


def fake_clone(*build_files):
    """Replacement for clone_or_update_repo writing a checkout with the given files."""

    def clone(config, workspace):
        workspace.create()
        os.makedirs(workspace.repo_dir, exist_ok=True)
        with open(os.path.join(workspace.repo_dir, "app.py"), "w") as app_file:
            app_file.write("print('hello')\n")
        for build_file in build_files:
            with open(os.path.join(workspace.repo_dir, build_file), "w") as build:
                build.write("# build\n")
        return workspace.repo_dir

    return clone


@pytest.fixture
def workspace(tmp_path, config):
    return Workspace(config.repo_url, root=str(tmp_path / "workspace"))


@pytest.fixture
def healthy_agent(fake_agent):
    """A server where the container comes up and answers."""
    fake_agent.respond("ps -q", stdout="0123456789ab\n")
    fake_agent.respond("curl", stdout="200")
    return fake_agent


class TestRunDeploy:
    """Tests for the deployment pipeline."""

    def test_missing_token_never_connects(self, config, workspace):
        """Test that a missing token aborts before any remote connection."""
        agent_factory = MagicMock()

        with pytest.raises(ConfigurationError):
            run_deploy(replace(config, token=""), workspace=workspace, agent_factory=agent_factory)

        agent_factory.assert_not_called()

    def test_no_build_file_never_connects(self, config, workspace):
        """Test that a checkout without build files aborts before any remote connection."""
        agent_factory = MagicMock()

        with patch("docker_deployer.pipeline.pipeline.clone_or_update_repo", fake_clone()):
            with pytest.raises(ArtifactError):
                run_deploy(config, workspace=workspace, agent_factory=agent_factory)

        agent_factory.assert_not_called()
        assert not os.path.exists(workspace.root)

    def test_full_deployment(self, config, workspace, healthy_agent):
        """Test that every step runs in order and the workspace is removed."""
        with patch("docker_deployer.pipeline.pipeline.clone_or_update_repo", fake_clone("Dockerfile")), \
                patch("requests.get", return_value=MagicMock(status_code=200)):
            results = run_deploy(config, workspace=workspace, agent_factory=lambda cfg: healthy_agent,
                                 sleep=lambda seconds: None)

        assert all(result.ok for result in results)
        assert healthy_agent.connected
        assert healthy_agent.closed
        assert not os.path.exists(workspace.root)

        provision = healthy_agent.index_of("bash -s")
        transfer = healthy_agent.index_of("mkdir -p /home/ubuntu/apps/hello-app")
        start = healthy_agent.index_of("docker run -d")
        check = healthy_agent.index_of("systemctl is-active")
        proxy = healthy_agent.index_of("sudo nginx -t")
        probe = healthy_agent.index_of("curl")
        assert provision < transfer < start < check < proxy < probe
        assert "/home/ubuntu/apps/hello-app/app.py" in healthy_agent.copied

    def test_probe_failure_is_not_fatal(self, config, workspace, healthy_agent):
        """Test that the deployment completes when the probes fail."""
        healthy_agent.respond("curl", stdout="502")

        with patch("docker_deployer.pipeline.pipeline.clone_or_update_repo", fake_clone("Dockerfile")), \
                patch("requests.get", return_value=MagicMock(status_code=502)):
            results = run_deploy(config, workspace=workspace, agent_factory=lambda cfg: healthy_agent,
                                 sleep=lambda seconds: None)

        assert not any(result.ok for result in results)

    def test_failure_cleans_up(self, config, workspace, healthy_agent):
        """Test that a failing step still closes the session and removes the workspace."""
        healthy_agent.respond("docker build", exit_status=1, stderr="build failed")

        with patch("docker_deployer.pipeline.pipeline.clone_or_update_repo", fake_clone("Dockerfile")):
            with pytest.raises(DeployError):
                run_deploy(config, workspace=workspace, agent_factory=lambda cfg: healthy_agent,
                           sleep=lambda seconds: None)

        assert healthy_agent.closed
        assert not os.path.exists(workspace.root)
        assert not healthy_agent.ran("nginx -t")

    def test_cleanup_failure_keeps_step_error(self, config, workspace, healthy_agent, caplog):
        """Test that a workspace that cannot be removed does not hide the error of the failing step."""
        caplog.set_level(logging.INFO)
        healthy_agent.respond("docker build", exit_status=1, stderr="build failed")

        with patch("docker_deployer.pipeline.pipeline.clone_or_update_repo", fake_clone("Dockerfile")), \
                patch.object(Workspace, "remove", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(DeployError):
                run_deploy(config, workspace=workspace, agent_factory=lambda cfg: healthy_agent,
                           sleep=lambda seconds: None)

        assert healthy_agent.closed
        assert "Could not remove temporary files" in caplog.text
        assert "Temporary files removed" not in caplog.text

    def test_interrupt_cleans_up(self, config, workspace, healthy_agent):
        """Test that an interrupt unwinds through the workspace cleanup."""

        def interrupted(seconds):
            raise KeyboardInterrupt

        with patch("docker_deployer.pipeline.pipeline.clone_or_update_repo", fake_clone("Dockerfile")):
            with pytest.raises(KeyboardInterrupt):
                run_deploy(replace(config, settle_delay=5), workspace=workspace,
                           agent_factory=lambda cfg: healthy_agent, sleep=interrupted)

        assert not os.path.exists(workspace.root)


class TestRunTeardown:
    """Tests for the teardown pipeline."""

    def test_teardown_removes_everything(self, config, fake_agent):
        """Test that the container, the nginx site and the application directory are removed."""
        run_teardown(config, agent_factory=lambda cfg: fake_agent)

        assert fake_agent.connected
        assert fake_agent.ran("docker rm -f hello-app")
        assert fake_agent.ran("sudo rm -f /etc/nginx/sites-enabled/hello-app /etc/nginx/sites-available/hello-app")
        assert fake_agent.ran("rm -rf /home/ubuntu/apps/hello-app")
        assert fake_agent.index_of("sudo nginx -t") < fake_agent.index_of("sudo systemctl reload nginx")
        assert fake_agent.closed

    def test_teardown_requires_configuration(self, config):
        """Test that teardown validates the configuration before connecting."""
        agent_factory = MagicMock()

        with pytest.raises(ConfigurationError):
            run_teardown(replace(config, token=""), agent_factory=agent_factory)

        agent_factory.assert_not_called()


class TestMain:
    """Tests for the command line entry point."""

    def test_missing_token_exit_code(self, init_file, tmp_path, monkeypatch):
        """Test that a missing token exits non-zero without creating an ssh agent."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("GIT_PAT", raising=False)
        log_dir = tmp_path / "logs"

        with patch("docker_deployer.pipeline.pipeline.SSHAgent") as agent_class:
            exit_code = main(["-i", str(init_file()), "--log-dir", str(log_dir)])

        assert exit_code == 1
        agent_class.assert_not_called()
        log_files = list(log_dir.glob("deploy_*.log"))
        assert len(log_files) == 1
        assert "GIT_PAT environment variable is not set" in log_files[0].read_text()

    def test_cleanup_flag(self, init_file, tmp_path, monkeypatch):
        """Test that --cleanup runs the teardown instead of the deployment."""
        monkeypatch.setenv("GIT_PAT", "ghp_abc")

        with patch("docker_deployer.__main__.run_teardown") as teardown, \
                patch("docker_deployer.__main__.run_deploy") as deploy:
            exit_code = main(["-i", str(init_file()), "--cleanup", "--log-dir", str(tmp_path / "logs")])

        assert exit_code == 0
        teardown.assert_called_once()
        deploy.assert_not_called()

    def test_strict_probe_flag(self, init_file, tmp_path, monkeypatch):
        """Test that --strict-probe reaches the pipeline."""
        monkeypatch.setenv("GIT_PAT", "ghp_abc")

        with patch("docker_deployer.__main__.run_deploy") as deploy:
            main(["-i", str(init_file()), "--strict-probe", "--log-dir", str(tmp_path / "logs")])

        assert deploy.call_args.kwargs["strict_probe"] is True

    def test_remote_exit_status_is_propagated(self, init_file, tmp_path, monkeypatch):
        """Test that the exit code of the failing step becomes the exit code of the run."""
        monkeypatch.setenv("GIT_PAT", "ghp_abc")

        with patch("docker_deployer.__main__.run_deploy", side_effect=DeployError("boom", exit_code=42)):
            exit_code = main(["-i", str(init_file()), "--log-dir", str(tmp_path / "logs")])

        assert exit_code == 42

    def test_interrupt_exit_code(self, init_file, tmp_path, monkeypatch):
        """Test that an interrupted run exits with 130."""
        monkeypatch.setenv("GIT_PAT", "ghp_abc")

        with patch("docker_deployer.__main__.run_deploy", side_effect=KeyboardInterrupt):
            exit_code = main(["-i", str(init_file()), "--log-dir", str(tmp_path / "logs")])

        assert exit_code == SIGINT_EXIT_CODE == 130

    def test_sigterm_handler(self):
        """Test that SIGTERM becomes a SystemExit with 143."""
        with pytest.raises(SystemExit) as exc_info:
            sigterm_handler(signal.SIGTERM, None)

        assert exc_info.value.code == SIGTERM_EXIT_CODE == 143
