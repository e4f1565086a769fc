"""Tests for the http probes run after a deployment."""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest
import requests

from docker_deployer.endpoint_prober.endpoint_prober import probe_endpoints, probe_on_server, probe_url
from docker_deployer.errors import ProbeError


def session_answering(*status_codes):
    """A requests session stub answering the given status codes in order."""
    session = MagicMock()
    session.get.side_effect = [MagicMock(status_code=code) for code in status_codes]
    return session


class TestProbeOnServer:
    """Tests for the probe run with curl on the server."""

    def test_status_from_curl(self, fake_agent):
        """Test that the http code printed by curl is used."""
        fake_agent.respond("curl", stdout="200")

        result = probe_on_server(fake_agent, 5000)

        assert result.ok
        assert result.status_code == 200
        assert fake_agent.ran("http://localhost:5000")

    def test_connection_refused(self, fake_agent):
        """Test that curl printing 000 is a failed probe."""
        fake_agent.respond("curl", exit_status=7, stdout="000")

        result = probe_on_server(fake_agent, 5000)

        assert not result.ok
        assert result.status_code is None


class TestProbeUrl:
    """Tests for probes sent from this machine."""

    def test_redirect_counts_as_success(self):
        """Test that redirects are answers and are not followed."""
        session = session_answering(302)

        result = probe_url("Nginx (IP)", "http://203.0.113.10", session=session)

        assert result.ok
        session.get.assert_called_once_with("http://203.0.113.10", timeout=10, allow_redirects=False)

    def test_server_error(self):
        """Test that a 502 from nginx is a failed probe."""
        assert not probe_url("Nginx (IP)", "http://203.0.113.10", session=session_answering(502)).ok

    def test_connection_error(self):
        """Test that network errors are captured instead of raised."""
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")

        result = probe_url("Nginx (IP)", "http://203.0.113.10", session=session)

        assert not result.ok
        assert "refused" in result.error


class TestProbeEndpoints:
    """Tests for the complete probe step."""

    def test_all_probes(self, fake_agent, config):
        """Test that the server, the ip and the host name are probed."""
        fake_agent.respond("curl", stdout="200")
        session = session_answering(200, 301)

        results = probe_endpoints(fake_agent, config, sleep=lambda seconds: None, session=session)

        assert [result.url for result in results] == [
            "http://localhost:5000",
            "http://203.0.113.10",
            "http://ec2-203-0-113-10.compute.amazonaws.com",
        ]
        assert all(result.ok for result in results)

    def test_failures_are_warnings(self, fake_agent, config, caplog):
        """Test that failed probes do not fail the deployment by default."""
        fake_agent.respond("curl", stdout="502")

        results = probe_endpoints(fake_agent, config, sleep=lambda seconds: None, session=session_answering(502, 502))

        assert not any(result.ok for result in results)
        assert "502" in caplog.text

    def test_strict_probing(self, fake_agent, config):
        """Test that strict probing turns failures into a ProbeError."""
        fake_agent.respond("curl", stdout="200")

        with pytest.raises(ProbeError) as exc_info:
            probe_endpoints(fake_agent, config, strict=True, sleep=lambda seconds: None,
                            session=session_answering(200, 500))
        assert "1 of 3" in str(exc_info.value)

    def test_single_host_probed_once(self, fake_agent, config):
        """Test that the host is not probed twice when it is also the public ip."""
        fake_agent.respond("curl", stdout="200")
        session = session_answering(200)

        results = probe_endpoints(fake_agent, replace(config, server_ip=None), sleep=lambda seconds: None,
                                  session=session)

        assert len(results) == 2
