#!/usr/bin/env python3
"""
    Probes the deployed application over http once everything is in place.

    The application is asked for directly on the server, through its loopback port, and from this machine through
    nginx using both the server ip and the ssh host name. A deployment is complete before the probes run, so a failing
    probe is a warning unless strict probing was asked for.
"""

import logging
import shlex
import time
from dataclasses import dataclass

import requests

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import ProbeError

logger = logging.getLogger(__name__)

SUCCESS_STATUS_CODES = (200, 301, 302)
PROBE_TIMEOUT = 10


@dataclass
class ProbeResult:

    target: str
    url: str
    status_code: int = None
    error: str = None

    @property
    def ok(self):
        return self.status_code in SUCCESS_STATUS_CODES


def probe_on_server(ssh_agent, port):
    """
        Asks for http://localhost:<port> with curl on the server itself, bypassing nginx.
    """

    url = f"http://localhost:{port}"
    command = "curl -s -o /dev/null -w '%{{http_code}}' --max-time {} {}".format(PROBE_TIMEOUT, shlex.quote(url))
    result = ssh_agent.run_command(command, check=False)

    status = result.stdout.strip()
    if status.isdigit() and int(status) != 0:
        return ProbeResult("server loopback", url, status_code=int(status))

    return ProbeResult("server loopback", url, error=result.stderr.strip() or f"curl exited with {result.exit_status}")


def probe_url(target, url, session=None):
    """
        Asks for url from this machine. Redirects are not followed, a 301 or 302 from the application counts as an
        answer.
    """

    http = session or requests

    try:
        response = http.get(url, timeout=PROBE_TIMEOUT, allow_redirects=False)

    except requests.RequestException as e:
        return ProbeResult(target, url, error=str(e))

    return ProbeResult(target, url, status_code=response.status_code)


def probe_endpoints(ssh_agent, config, strict=False, sleep=time.sleep, session=None):
    """
        Runs the three probes and logs their outcome.

        :param SSHAgent ssh_agent: Connected agent of the target server.
        :param DeploymentConfig config: The configuration of this run.
        :param bool strict: Raise a ProbeError when any probe fails instead of only warning.
        :param sleep: Function used to wait for nginx to finish reloading, replaced in tests.
        :param session: requests session used for the probes through nginx.

        :return: The list of ProbeResults.
    """

    logger.info("=== Testing Application Endpoint ===")

    sleep(config.probe_delay)

    results = []

    logger.info("Testing local endpoint on server...")
    results.append(probe_on_server(ssh_agent, config.app_port))

    hosts = [("Nginx (IP)", config.public_ip)]
    if config.ssh_host != config.public_ip:
        hosts.append(("Nginx (hostname)", config.ssh_host))

    for target, host in hosts:
        logger.info("Testing via %s...", target)
        results.append(probe_url(target, f"http://{host}", session=session))

    for result in results:
        if result.ok:
            log_success(logger, "Application is accessible at %s (HTTP %s)", result.url, result.status_code)
        elif result.status_code is not None:
            logger.warning("%s answered HTTP %s at %s. Check logs.", result.target, result.status_code, result.url)
        else:
            logger.warning("%s did not answer at %s: %s", result.target, result.url, result.error)

    failed = [result for result in results if not result.ok]
    if strict and failed:
        raise ProbeError("{} of {} endpoint probes failed".format(len(failed), len(results)),
                         context=", ".join(result.url for result in failed))

    return results
