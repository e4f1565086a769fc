#!/usr/bin/env python3
"""
    Fetches the source repository into the scratch workspace of the run.

    The workspace is a directory under /tmp named after the process id, so two deployers running at the same time
    never share a checkout. It is removed when the run ends, whatever the outcome.
"""

import logging
import os
import posixpath
import shutil
import subprocess
import tempfile
from urllib.parse import urlsplit, urlunsplit

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import SourceError

logger = logging.getLogger(__name__)

TOKEN_MASK = "***"


class Workspace():
    """
        Process scoped scratch directory holding the checkout of the repository.
    """

    def __init__(self, repo_url, root=None):

        if root is None:
            root = os.path.join(tempfile.gettempdir(), "deploy_{}".format(os.getpid()))

        self.root = root
        self.repo_name = get_repo_name(repo_url)
        self.repo_dir = os.path.join(self.root, self.repo_name)

    def create(self):

        os.makedirs(self.root, exist_ok=True)

    def has_checkout(self):

        return os.path.isdir(os.path.join(self.repo_dir, ".git"))

    def remove(self):

        if os.path.exists(self.root):
            logger.info("Cleaning up temporary files...")
            shutil.rmtree(self.root)


def get_repo_name(repo_url):
    """
        Returns the name of the repository in the url, "https://github.com/org/app.git/" gives "app".
    """

    path = urlsplit(clean_repo_url(repo_url)).path or repo_url
    name = posixpath.basename(path.rstrip("/")).split(":")[-1]

    if name.endswith(".git"):
        name = name[:-len(".git")]

    return name or "repo"


def clean_repo_url(repo_url):

    return repo_url.strip().rstrip("/")


def build_auth_url(repo_url, token):
    """
        Injects the token into the authority of an http(s) repository url:

            https://github.com/org/app.git -> https://<token>@github.com/org/app.git

        Any user info already in the url is replaced. Urls of other schemes (ssh, git@host:path) are returned cleaned
        but otherwise unchanged as they do not authenticate with a token.

        :param str repo_url: The repository url from the init file.
        :param str token: The git credential.

        :return: The url used to clone the repository.
    """

    url = clean_repo_url(repo_url)
    parts = urlsplit(url)

    if parts.scheme not in ("http", "https") or not token:
        return url

    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))


def mask_token(text, token):

    if not token:
        return text
    return text.replace(token, TOKEN_MASK)


def run_git(args, token, cwd=None):
    """
        Runs one git command and raises a SourceError when it fails. The token never appears in the log or in the
        error message.

        :param list args: Arguments given to git.
        :param str token: The git credential, masked from any output.
        :param str cwd: Directory the command runs in.
    """

    display_cmd = mask_token(" ".join(["git"] + args), token)
    logger.debug("$ %s", display_cmd)

    result = subprocess.run(
        ["git"] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
        env=dict(os.environ, GIT_TERMINAL_PROMPT="0")
    )

    for line in (result.stdout + result.stderr).splitlines():
        logger.debug("  %s", mask_token(line, token))

    if result.returncode != 0:
        raise SourceError(
            f"git command failed with exit code {result.returncode}",
            context=f"Command: {display_cmd}\n{mask_token(result.stderr.strip(), token)}",
            exit_code=result.returncode
        )

    return result


def clone_or_update_repo(config, workspace):
    """
        Leaves workspace.repo_dir at the tip of the configured branch. An existing checkout is fetched and pulled,
        otherwise the branch is cloned with the token embedded in the url. A pull that cannot fast-forward fails the run.

        :param DeploymentConfig config: The configuration of this run.
        :param Workspace workspace: The scratch workspace of this run.

        :return: The path to the checkout.
    """

    logger.info("=== Cloning/Updating Repository ===")

    workspace.create()

    if workspace.has_checkout():

        logger.info("Repository exists, pulling latest changes...")
        run_git(["fetch", "origin"], config.token, cwd=workspace.repo_dir)
        run_git(["checkout", config.branch], config.token, cwd=workspace.repo_dir)
        run_git(["pull", "origin", config.branch], config.token, cwd=workspace.repo_dir)

    else:

        logger.info("Cloning repository...")
        auth_url = build_auth_url(config.repo_url, config.token)
        run_git(["clone", "-b", config.branch, auth_url, workspace.repo_dir], config.token)

    log_success(logger, "Repository ready at: %s", workspace.repo_dir)

    return workspace.repo_dir
