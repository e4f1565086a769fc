#!/usr/bin/env python3
"""
    Parses and validates the init file of the docker_deployer and checks the credentials it points to.

    The init file is a json file with the following format:

        {
            "Repository": {"URL": "https://github.com/org/app.git", "Branch": "main"},
            "SSH Connection": {"Host": "ec2-1-2-3-4.compute.amazonaws.com", "User": "ubuntu",
                               "Key Path": "~/.ssh/app.pem", "Server IP": "1.2.3.4"},
            "Application": {"Name": "my-docker-app", "Port": 5000},
            "Deployment": {"Excluded Files": [".git", "*.log"], "Prune Remote": false}
        }

    The "Deployment" group and the keys wrapped in Optional below may be left out. The git credential is never
    stored in the init file, it is read from the environment variable named by "Token Env Var" (GIT_PAT by default).
"""

import json
import logging
import os
import stat
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv
from schema import And, Optional, Or, Regex, Schema, SchemaError

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import ConfigurationError

logger = logging.getLogger(__name__)

REPOSITORY_CFG_GROUP = "Repository"
URL_CFG_KEY = "URL"
BRANCH_CFG_KEY = "Branch"

SSH_CONNECTION_CFG_GROUP = "SSH Connection"
HOST_CFG_KEY = "Host"
USER_CFG_KEY = "User"
KEY_PATH_CFG_KEY = "Key Path"
PORT_CFG_KEY = "Port"
SERVER_IP_CFG_KEY = "Server IP"

APPLICATION_CFG_GROUP = "Application"
NAME_CFG_KEY = "Name"
REMOTE_ROOT_CFG_KEY = "Remote Root"

DEPLOYMENT_CFG_GROUP = "Deployment"
EXCLUDED_FILES_CFG_KEY = "Excluded Files"
PRUNE_REMOTE_CFG_KEY = "Prune Remote"
SETTLE_DELAY_CFG_KEY = "Settle Delay"
LOG_LINES_CFG_KEY = "Log Lines"
PROBE_DELAY_CFG_KEY = "Probe Delay"
TOKEN_ENV_VAR_CFG_KEY = "Token Env Var"

DEFAULT_EXCLUDED_FILES = (".git", "node_modules", "__pycache__", "*.log")
DEFAULT_TOKEN_ENV_VAR = "GIT_PAT"

# Usable as a docker image name and as a compose project name
APP_NAME_PATTERN = r"^[a-z0-9][a-z0-9_-]*$"

# Key modes ssh accepts without complaining
SECURE_KEY_MODES = (0o600, 0o400)

_port = And(int, lambda port: 0 < port < 65536, error="Port must be an integer between 1 and 65535")
_non_empty_str = And(str, len, error="Value must be a non-empty string")
_delay = And(Or(int, float), lambda delay: delay >= 0, error="Delay must be a non-negative number")

CFG_FILE_VALIDATION = Schema({
    REPOSITORY_CFG_GROUP: {
        URL_CFG_KEY: _non_empty_str,
        BRANCH_CFG_KEY: _non_empty_str
    },
    SSH_CONNECTION_CFG_GROUP: {
        HOST_CFG_KEY: _non_empty_str,
        USER_CFG_KEY: _non_empty_str,
        KEY_PATH_CFG_KEY: _non_empty_str,
        Optional(PORT_CFG_KEY): _port,
        Optional(SERVER_IP_CFG_KEY): _non_empty_str
    },
    APPLICATION_CFG_GROUP: {
        NAME_CFG_KEY: Regex(APP_NAME_PATTERN,
                            error="Application name may only hold lowercase letters, digits, '_' and '-'"),
        PORT_CFG_KEY: _port,
        Optional(REMOTE_ROOT_CFG_KEY): _non_empty_str
    },
    Optional(DEPLOYMENT_CFG_GROUP): {
        Optional(EXCLUDED_FILES_CFG_KEY): [str],
        Optional(PRUNE_REMOTE_CFG_KEY): bool,
        Optional(SETTLE_DELAY_CFG_KEY): _delay,
        Optional(LOG_LINES_CFG_KEY): And(int, lambda lines: lines > 0),
        Optional(PROBE_DELAY_CFG_KEY): _delay,
        Optional(TOKEN_ENV_VAR_CFG_KEY): _non_empty_str
    }
})


@dataclass(frozen=True)
class DeploymentConfig:
    """
        Everything one deployment needs. Built once by the InitFileParser and never changed afterwards.
    """

    repo_url: str
    branch: str
    token: str
    ssh_host: str
    ssh_user: str
    ssh_key_path: str
    app_name: str
    app_port: int
    server_ip: str = None
    ssh_port: int = 22
    remote_root: str = None
    excluded_files: tuple = DEFAULT_EXCLUDED_FILES
    prune_remote: bool = False
    settle_delay: float = 5
    log_lines: int = 20
    probe_delay: float = 3
    token_env_var: str = DEFAULT_TOKEN_ENV_VAR

    @property
    def public_ip(self):
        return self.server_ip or self.ssh_host

    @property
    def remote_app_dir(self):
        """
            The directory on the server that holds the application, <remote root>/apps/<app name>. The remote root
            defaults to the home directory of the ssh user.
        """

        remote_root = self.remote_root
        if not remote_root:
            remote_root = "/root" if self.ssh_user == "root" else f"/home/{self.ssh_user}"

        return "{}/apps/{}".format(remote_root.rstrip("/"), self.app_name)

    @property
    def masked_token(self):
        return "***" if self.token else "<not set>"

    def describe(self):
        """
            Returns the lines logged at the start of every run. The token is masked.
        """

        return [
            f"Repository: {self.repo_url}",
            f"Branch: {self.branch}",
            f"Token: {self.masked_token} (from ${self.token_env_var})",
            f"Server: {self.ssh_user}@{self.public_ip}",
            f"SSH Host: {self.ssh_host}:{self.ssh_port}",
            f"App Port: {self.app_port}",
            f"App Name: {self.app_name}",
            f"Remote Dir: {self.remote_app_dir}",
        ]


class InitFileParser():

    def __init__(self, init_file_path, environ=None, dotenv_path=None):

        self.init_file_path = init_file_path
        self.environ = os.environ if environ is None else environ
        self.dotenv_path = dotenv_path

    def load_init_json(self):
        """
            Reads the init file and validates it against CFG_FILE_VALIDATION.

            :return: The validated content of the init file as a dictionary.
        """

        try:
            with open(self.init_file_path) as init_json_file:
                init_json = json.load(init_json_file)

        except (OSError, ValueError) as e:
            raise ConfigurationError("Could not read init file", context=f"{self.init_file_path}: {e}") from e

        try:
            return CFG_FILE_VALIDATION.validate(init_json)

        except SchemaError as e:
            raise ConfigurationError("Init file is not in the correct format", context=str(e)) from e

    def parse_init_file(self):
        """
            Builds the DeploymentConfig from the init file and the environment. A .env file is loaded first so the
            token can live there, variables already set in the environment win over it.

            :return: The DeploymentConfig of this run.
        """

        init_json = self.load_init_json()

        if self.environ is os.environ:
            load_dotenv(self.dotenv_path or find_dotenv(usecwd=True), override=False)

        repository = init_json[REPOSITORY_CFG_GROUP]
        ssh_connection = init_json[SSH_CONNECTION_CFG_GROUP]
        application = init_json[APPLICATION_CFG_GROUP]
        deployment = init_json.get(DEPLOYMENT_CFG_GROUP, {})

        token_env_var = deployment.get(TOKEN_ENV_VAR_CFG_KEY, DEFAULT_TOKEN_ENV_VAR)

        return DeploymentConfig(
            repo_url=repository[URL_CFG_KEY].strip(),
            branch=repository[BRANCH_CFG_KEY],
            token=self.environ.get(token_env_var, "").strip(),
            ssh_host=ssh_connection[HOST_CFG_KEY],
            ssh_user=ssh_connection[USER_CFG_KEY],
            ssh_key_path=os.path.expanduser(ssh_connection[KEY_PATH_CFG_KEY]),
            ssh_port=ssh_connection.get(PORT_CFG_KEY, 22),
            server_ip=ssh_connection.get(SERVER_IP_CFG_KEY),
            app_name=application[NAME_CFG_KEY],
            app_port=application[PORT_CFG_KEY],
            remote_root=application.get(REMOTE_ROOT_CFG_KEY),
            excluded_files=tuple(deployment.get(EXCLUDED_FILES_CFG_KEY, DEFAULT_EXCLUDED_FILES)),
            prune_remote=deployment.get(PRUNE_REMOTE_CFG_KEY, False),
            settle_delay=deployment.get(SETTLE_DELAY_CFG_KEY, 5),
            log_lines=deployment.get(LOG_LINES_CFG_KEY, 20),
            probe_delay=deployment.get(PROBE_DELAY_CFG_KEY, 3),
            token_env_var=token_env_var
        )


def validate_configuration(config):
    """
        Checks that the git credential is set and that the ssh key exists. A key that is readable by anyone but its
        owner is fixed to mode 600 instead of failing, the same thing ssh would ask the user to do.

        :param DeploymentConfig config: The configuration of this run.
    """

    logger.info("=== Validating Configuration ===")

    if not config.token:
        raise ConfigurationError(
            f"{config.token_env_var} environment variable is not set",
            context=f"Set it with: export {config.token_env_var}='your_token_here'"
        )

    if not os.path.isfile(config.ssh_key_path):
        raise ConfigurationError(f"SSH key not found: {config.ssh_key_path}")

    key_mode = stat.S_IMODE(os.stat(config.ssh_key_path).st_mode)
    if key_mode not in SECURE_KEY_MODES:
        logger.warning("SSH key has insecure permissions (%o). Setting to 600...", key_mode)
        os.chmod(config.ssh_key_path, 0o600)

    log_success(logger, "Configuration validated")
