#!/usr/bin/env python3
"""
    Exception hierarchy of the docker_deployer.

    Every failure of a pipeline step is raised as a DeployerError subclass. The command line entry point catches
    DeployerError, logs it and exits with the error's exit_code.
"""


class DeployerError(Exception):
    """
        Base exception for all deployer errors.
    """

    exit_code = 1

    def __init__(self, message, context=None, exit_code=None):

        self.message = message
        self.context = context
        if exit_code:
            self.exit_code = exit_code
        super().__init__(self.format_message())

    def format_message(self):

        if self.context:
            return f"{self.message}\nContext: {self.context}"
        return self.message


class ConfigurationError(DeployerError):
    """Raised when the init file, the credential or the SSH key is invalid or missing."""


class SourceError(DeployerError):
    """Raised when cloning or updating the source repository fails."""


class ArtifactError(DeployerError):
    """Raised when the repository holds neither a compose file nor a Dockerfile."""


class ConnectivityError(DeployerError):
    """Raised when the target host cannot be reached over SSH."""


class RemoteCommandError(DeployerError):
    """
        Raised when a command run on the server exits with a non-zero status. The exit status of the remote command
        becomes the exit code of the deployer.
    """

    def __init__(self, command, exit_status, stderr=""):

        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr.strip()

        context = f"Command: {command}"
        if self.stderr:
            context += f"\nStderr: {self.stderr}"

        super().__init__(f"Remote command exited with status {exit_status}", context=context, exit_code=exit_status)


class ProvisioningError(DeployerError):
    """Raised when installing the runtime packages on the server fails."""


class DeployError(DeployerError):
    """Raised when copying files or starting the containers fails."""


class ValidationError(DeployerError):
    """Raised when the docker service or the application container is not running after a deployment."""


class ProxyConfigError(DeployerError):
    """Raised when the nginx configuration fails its syntax check."""


class ProbeError(DeployerError):
    """Raised for failed endpoint probes when strict probing is requested."""
