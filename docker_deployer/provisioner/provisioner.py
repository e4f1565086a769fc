#!/usr/bin/env python3
"""
    Installs the runtime of the application on the server: docker, docker-compose and nginx.

    Every component is only installed when its command is missing, so running the script again on a provisioned
    server only refreshes the package index.
"""

import logging

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import ProvisioningError, RemoteCommandError

logger = logging.getLogger(__name__)

PREREQUISITE_PACKAGES = ("apt-transport-https", "ca-certificates", "curl", "software-properties-common")

DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
COMPOSE_RELEASE_URL = "https://github.com/docker/compose/releases/latest/download"

PROVISION_SCRIPT = """
set -euo pipefail
export DEBIAN_FRONTEND=noninteractive

echo "[INFO] Updating system packages..."
sudo -E apt-get update -qq

echo "[INFO] Installing prerequisites..."
sudo -E apt-get install -y -qq {prerequisites}

# Install Docker if not present
if ! command -v docker &> /dev/null; then
    echo "[INFO] Installing Docker..."
    curl -fsSL {docker_script_url} -o /tmp/get-docker.sh
    sudo sh /tmp/get-docker.sh
    rm -f /tmp/get-docker.sh
else
    echo "[INFO] Docker already installed"
fi
sudo systemctl enable docker
sudo systemctl start docker

# Install Docker Compose if not present
if ! command -v docker-compose &> /dev/null; then
    echo "[INFO] Installing Docker Compose..."
    sudo curl -fsSL "{compose_release_url}/docker-compose-$(uname -s)-$(uname -m)" \\
         -o /usr/local/bin/docker-compose
    sudo chmod +x /usr/local/bin/docker-compose
else
    echo "[INFO] Docker Compose already installed"
fi

# Install Nginx if not present
if ! command -v nginx &> /dev/null; then
    echo "[INFO] Installing Nginx..."
    sudo -E apt-get install -y -qq nginx
else
    echo "[INFO] Nginx already installed"
fi
sudo systemctl enable nginx
sudo systemctl start nginx

# Add user to docker group
sudo usermod -aG docker "$(id -un)"

echo "[SUCCESS] Environment setup complete"
echo "[INFO] Docker version: $(docker --version)"
echo "[INFO] Docker Compose version: $(docker-compose --version)"
echo "[INFO] Nginx version: $(nginx -v 2>&1)"
"""


def build_provision_script():

    return PROVISION_SCRIPT.format(
        prerequisites=" ".join(PREREQUISITE_PACKAGES),
        docker_script_url=DOCKER_INSTALL_SCRIPT_URL,
        compose_release_url=COMPOSE_RELEASE_URL
    )


def setup_remote_environment(ssh_agent):
    """
        Runs the provisioning script on the server. The script stops at the first failing command and the failure is
        raised as a ProvisioningError carrying the exit status of that command.

        :param SSHAgent ssh_agent: Connected agent of the target server.
    """

    logger.info("=== Setting Up Remote Environment ===")

    try:
        result = ssh_agent.run_script(build_provision_script())

    except RemoteCommandError as e:
        raise ProvisioningError("Remote environment setup failed", context=e.stderr or None,
                                exit_code=e.exit_code) from e

    for line in result.stdout.splitlines():
        if line.startswith("[INFO] ") and "version" in line:
            logger.info(line[len("[INFO] "):])

    log_success(logger, "Remote environment configured")
