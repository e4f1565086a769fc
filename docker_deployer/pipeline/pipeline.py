#!/usr/bin/env python3
"""
    Runs the deployment and the teardown steps in order.

    Steps never run in parallel and the first failing step ends the run. The scratch workspace is removed whatever
    happens, the changes already made on the server are left as they are.
"""

import logging
import time

from docker_deployer.artifact_inspector.artifact_inspector import detect_build_strategy
from docker_deployer.container_deployer.container_deployer import (
    deploy_application,
    remove_application,
    validate_deployment,
)
from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.endpoint_prober.endpoint_prober import probe_endpoints
from docker_deployer.errors import DeployError, RemoteCommandError
from docker_deployer.file_sync.file_sync import sync_directory
from docker_deployer.init_file_parser.init_file_parser import validate_configuration
from docker_deployer.provisioner.provisioner import setup_remote_environment
from docker_deployer.reverse_proxy.reverse_proxy import configure_nginx, remove_nginx_site
from docker_deployer.source_fetcher.source_fetcher import Workspace, clone_or_update_repo
from docker_deployer.ssh_agent.ssh_agent import SSHAgent

logger = logging.getLogger(__name__)

SUMMARY_RULE = "=" * 67


def create_ssh_agent(config):

    return SSHAgent(config.ssh_host, config.ssh_user, config.ssh_key_path, port=config.ssh_port)


def run_deploy(config, workspace=None, agent_factory=create_ssh_agent, strict_probe=False, sleep=time.sleep,
               log_file=None):
    """
        Deploys the application described by config.

            validate -> fetch -> inspect -> connect -> provision -> sync -> deploy -> validate -> proxy -> probe

        Nothing touches the server before the configuration and the checkout are known to be usable.

        :param DeploymentConfig config: The configuration of this run.
        :param Workspace workspace: Scratch workspace, a process scoped one under /tmp by default.
        :param agent_factory: Callable building the SSHAgent from config.
        :param bool strict_probe: Fail the run when an endpoint probe fails.
        :param sleep: Function used for the settle delays.
        :param str log_file: Path of the run log, only used in the summary.

        :return: The ProbeResults of the endpoint probes.
    """

    if workspace is None:
        workspace = Workspace(config.repo_url)

    logger.info("Starting deployment process...")

    ssh_agent = None

    try:
        validate_configuration(config)
        repo_dir = clone_or_update_repo(config, workspace)
        plan = detect_build_strategy(repo_dir)

        ssh_agent = agent_factory(config)
        ssh_agent.check_connection()
        log_success(logger, "SSH connection to %s successful", config.ssh_host)

        setup_remote_environment(ssh_agent)
        sync_directory(ssh_agent, repo_dir, config.remote_app_dir, config.excluded_files, prune=config.prune_remote)
        deploy_application(ssh_agent, config, plan)
        validate_deployment(ssh_agent, config, plan, sleep=sleep)
        configure_nginx(ssh_agent, config)
        probe_results = probe_endpoints(ssh_agent, config, strict=strict_probe, sleep=sleep)

    finally:
        if ssh_agent is not None:
            ssh_agent.close()

        logger.info("=== Final Cleanup ===")
        try:
            workspace.remove()
        except OSError as e:
            # Never replaces the error of the failing step
            logger.warning("Could not remove temporary files in %s: %s", workspace.root, e)
        else:
            logger.info("Temporary files removed")

    log_summary(config, log_file)

    return probe_results


def run_teardown(config, agent_factory=create_ssh_agent):
    """
        Removes everything a deployment created on the server: the containers, the nginx site and the application
        directory. Works without a checkout, the build strategy is not needed.

        :param DeploymentConfig config: The configuration of this run.
        :param agent_factory: Callable building the SSHAgent from config.
    """

    validate_configuration(config)

    ssh_agent = agent_factory(config)

    try:
        ssh_agent.check_connection()
        log_success(logger, "SSH connection to %s successful", config.ssh_host)

        logger.info("=== Cleaning Up Deployment ===")

        try:
            remove_application(ssh_agent, config)
        except RemoteCommandError as e:
            raise DeployError("Removing the containers failed", context=e.context, exit_code=e.exit_code) from e

        remove_nginx_site(ssh_agent, config)

        logger.info("Removing application files...")
        try:
            ssh_agent.delete_file_from_server(config.remote_app_dir)
        except RemoteCommandError as e:
            raise DeployError("Removing the application files failed", context=e.context,
                              exit_code=e.exit_code) from e

    finally:
        ssh_agent.close()

    log_success(logger, "Deployment cleaned up")


def log_summary(config, log_file=None):

    log_success(logger, SUMMARY_RULE)
    log_success(logger, "Deployment completed successfully!")
    log_success(logger, "Application URLs:")
    for host in dict.fromkeys((config.public_ip, config.ssh_host)):
        log_success(logger, "  - http://%s", host)
    log_success(logger, "Container name: %s", config.app_name)
    if log_file:
        log_success(logger, "Log file: %s", log_file)
    log_success(logger, SUMMARY_RULE)
    logger.info("To cleanup this deployment, run: docker-deployer -i <init file> --cleanup")
