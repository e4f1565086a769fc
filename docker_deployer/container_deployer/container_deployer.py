#!/usr/bin/env python3
"""
    Starts the application containers on the server and checks that they keep running.

    A deployment always stops the previous containers before starting the new ones. There is a short window where the
    application is down and nothing is kept to roll back to.
"""

import logging
import shlex
import time

from docker_deployer.artifact_inspector.artifact_inspector import COMPOSE_FILE_NAMES
from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import DeployError, RemoteCommandError, ValidationError

logger = logging.getLogger(__name__)

# The ssh session predates the docker group membership given during provisioning
DOCKER = ("sudo", "docker")
DOCKER_COMPOSE = ("sudo", "docker-compose")

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


def image_tag(config):

    return f"{config.app_name}:latest"


def in_app_dir(config, args):

    return "cd {} && {}".format(shlex.quote(config.remote_app_dir), shlex.join(args))


def compose_args(config, plan, *args):

    return list(DOCKER_COMPOSE) + ["-p", config.app_name, "-f", plan.build_file] + list(args)


def remove_container_command(config):
    """
        Command removing the container named after the application. Succeeds when there is no such container.
    """

    return "{} 2>/dev/null || true".format(shlex.join(list(DOCKER) + ["rm", "-f", config.app_name]))


def deploy_application(ssh_agent, config, plan):
    """
        Replaces the running application with a fresh build of the synced checkout.

            Dockerfile: the container is removed, the image is built and a new container is started on
                        127.0.0.1:<port> with the unless-stopped restart policy.
            Compose:    the project is brought down, built and brought up detached.

        :param SSHAgent ssh_agent: Connected agent of the target server.
        :param DeploymentConfig config: The configuration of this run.
        :param BuildPlan plan: The build strategy detected in the checkout.
    """

    logger.info("=== Deploying Dockerized Application ===")

    try:
        logger.info("Stopping existing containers...")
        ssh_agent.run_command(remove_container_command(config))

        if plan.uses_compose:

            logger.info("Deploying with Docker Compose...")
            ssh_agent.run_command(in_app_dir(config, compose_args(config, plan, "down")), check=False)
            ssh_agent.run_command(in_app_dir(config, compose_args(config, plan, "build")))
            ssh_agent.run_command(in_app_dir(config, compose_args(config, plan, "up", "-d")))

        else:

            logger.info("Building Docker image...")
            ssh_agent.run_command(in_app_dir(config, list(DOCKER) + ["build", "-t", image_tag(config), "."]))

            logger.info("Running Docker container...")
            port_mapping = f"127.0.0.1:{config.app_port}:{config.app_port}"
            ssh_agent.run_command(shlex.join(list(DOCKER) + [
                "run", "-d",
                "--name", config.app_name,
                "--restart", "unless-stopped",
                "-p", port_mapping,
                image_tag(config)
            ]))

    except RemoteCommandError as e:
        raise DeployError("Application deployment failed", context=e.context, exit_code=e.exit_code) from e

    log_success(logger, "Application deployment complete")


def container_filter_args(config, plan):

    if plan.uses_compose:
        return ["--filter", f"label={COMPOSE_PROJECT_LABEL}={config.app_name}"]
    return ["--filter", f"name=^{config.app_name}$"]


def validate_deployment(ssh_agent, config, plan, sleep=time.sleep):
    """
        Waits for the containers to settle and checks that the docker service is active and that at least one
        container of the deployment is running. The last lines of the container logs are written to the log.

        :param SSHAgent ssh_agent: Connected agent of the target server.
        :param DeploymentConfig config: The configuration of this run.
        :param BuildPlan plan: The build strategy used by the deployment.
        :param sleep: Function used to wait, replaced in tests.
    """

    logger.info("=== Validating Deployment ===")

    sleep(config.settle_delay)

    logger.info("Checking Docker service...")
    if not ssh_agent.run_command("sudo systemctl is-active --quiet docker", check=False).ok:
        raise ValidationError("Docker service is not running")

    logger.info("Checking container status...")
    status = ssh_agent.run_command(shlex.join(list(DOCKER) + ["ps", "-a"] + container_filter_args(config, plan)),
                                   check=False)
    for line in status.stdout.splitlines():
        logger.info("  %s", line)

    logger.info("Checking container health...")
    container_ids = ssh_agent.run_command(
        shlex.join(list(DOCKER) + ["ps", "-q"] + container_filter_args(config, plan)), check=False)
    if not container_ids.ok or not container_ids.stdout.strip():
        raise ValidationError("Container is not running", context=f"Application: {config.app_name}")

    logger.info("Container logs (last %d lines):", config.log_lines)
    if plan.uses_compose:
        logs_command = in_app_dir(config, compose_args(config, plan, "logs", "--tail", str(config.log_lines)))
    else:
        logs_command = shlex.join(list(DOCKER) + ["logs", "--tail", str(config.log_lines), config.app_name])

    logs = ssh_agent.run_command(logs_command + " 2>&1", check=False)
    for line in logs.stdout.splitlines():
        logger.info("  %s", line)

    log_success(logger, "Deployment validated")


def remove_application(ssh_agent, config):
    """
        Removes the containers of the application. A compose project is brought down when the application directory
        still holds its compose file. Nothing fails when the application was never deployed.
    """

    logger.info("Stopping and removing containers...")

    ssh_agent.run_command(remove_container_command(config))

    for compose_file in COMPOSE_FILE_NAMES:
        compose_path = "{}/{}".format(config.remote_app_dir, compose_file)
        if ssh_agent.file_exists_on_server(compose_path):
            down_args = list(DOCKER_COMPOSE) + ["-p", config.app_name, "-f", compose_file, "down"]
            ssh_agent.run_command(in_app_dir(config, down_args) + " || true")
            break
