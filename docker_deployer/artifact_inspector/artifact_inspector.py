#!/usr/bin/env python3
"""
    Decides how the application is built from the files at the root of the checkout.
"""

import enum
import logging
import os
from dataclasses import dataclass

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import ArtifactError

logger = logging.getLogger(__name__)

# Checked in order, the first one found is used
COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml")
DOCKERFILE_NAME = "Dockerfile"


class BuildStrategy(enum.Enum):

    SINGLE_DOCKERFILE = "dockerfile"
    COMPOSE = "compose"


@dataclass(frozen=True)
class BuildPlan:

    strategy: BuildStrategy
    build_file: str

    @property
    def uses_compose(self):
        return self.strategy is BuildStrategy.COMPOSE


def detect_build_strategy(repo_dir):
    """
        A compose file wins over a Dockerfile. A checkout with neither cannot be deployed.

        :param str repo_dir: Root of the checkout.

        :return: The BuildPlan naming the strategy and the file it is built from.
    """

    logger.info("=== Verifying Docker Configuration ===")

    for compose_file in COMPOSE_FILE_NAMES:
        if os.path.isfile(os.path.join(repo_dir, compose_file)):
            log_success(logger, "Found Docker Compose file: %s", compose_file)
            return BuildPlan(BuildStrategy.COMPOSE, compose_file)

    if os.path.isfile(os.path.join(repo_dir, DOCKERFILE_NAME)):
        log_success(logger, "Found Dockerfile")
        return BuildPlan(BuildStrategy.SINGLE_DOCKERFILE, DOCKERFILE_NAME)

    raise ArtifactError(
        "No Dockerfile or docker-compose.yml found in repository",
        context=f"Looked in {repo_dir} for: {', '.join(COMPOSE_FILE_NAMES + (DOCKERFILE_NAME,))}"
    )
