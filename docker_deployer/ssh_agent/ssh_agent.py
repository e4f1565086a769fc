#!/usr/bin/env python3

"""
    This python file holds the ssh_agent used to connect and run commands via ssh to a given server.

    Every step of the deployment that touches the server goes through one SSHAgent. Commands block until the server
    reports their exit status and a non-zero status raises a RemoteCommandError unless the caller asks otherwise.
"""

import io
import logging
import os
import posixpath
import shlex
import socket
import stat
import threading
from dataclasses import dataclass

import paramiko

from docker_deployer.errors import ConnectivityError, RemoteCommandError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10

# Number of files hashed by a single sha1sum call when scanning the server
HASH_BATCH_SIZE = 200


@dataclass
class CommandResult:
    """
        Outcome of one command run on the server.
    """

    command: str
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self):
        return self.exit_status == 0


class SSHAgent():
    """
        This is the ssh_agent class. It is used to send commands and copy files to a given server via ssh.
    """
    def __init__(self, host, username, key_path, port=22):

        self.host = host
        self.username = username
        self.key_path = key_path
        self.port = port

        self.ssh = None
        self.sftp = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def connect(self, timeout=CONNECT_TIMEOUT):
        """
            Opens the ssh connection and the sftp session. Any failure to reach or authenticate against the server is
            raised as a ConnectivityError.

            :param int timeout: Seconds to wait for the tcp connection, the ssh banner and the authentication.
        """

        try:
            self._ssh_connect(timeout)
            self._ssh_sftp_connect()

        except (paramiko.SSHException, socket.error) as e:
            self.close()
            raise ConnectivityError(f"Cannot connect to {self.host} via SSH", context=str(e)) from e

    def check_connection(self):
        """
            Connects to the server and runs a no-op command on it. Used before anything is changed on the server.
        """

        logger.info("=== Testing SSH Connection ===")

        if self.ssh is None:
            self.connect()

        result = self.run_command("echo 'SSH connection successful'", check=False)
        if not result.ok:
            self.close()
            raise ConnectivityError(f"Cannot run commands on {self.host}", context=result.stderr.strip())

    def close(self):

        # Closes SFTP connection
        if self.sftp is not None:
            self.sftp.close()
            self.sftp = None

        # Closed connection with the SSH server
        if self.ssh is not None:
            self.ssh.close()
            self.ssh = None
            logger.debug("Connection to %s closed.", self.host)

    def run_command(self, command, check=True, input_data=None):
        """
            Runs a command on the server and waits for it to finish. Every line the command prints on stdout is
            logged on the DEBUG level as it arrives.

            :param str command: Command to run, already quoted for the remote shell.
            :param bool check: Raise a RemoteCommandError when the command exits with a non-zero status.
            :param str input_data: Text written to the stdin of the command before it is closed.

            :return: The CommandResult of the command.
        """

        logger.debug("$ %s", command)

        stdin, stdout, stderr = self.ssh.exec_command(command)

        if input_data is not None:
            stdin.write(input_data)
            stdin.flush()
        stdin.channel.shutdown_write()

        # Both streams share the channel window, an unread stderr stalls the command once the window is full
        err_chunks = []
        err_reader = threading.Thread(target=lambda: err_chunks.append(stderr.read()), daemon=True)
        err_reader.start()

        out_lines = []
        for line in stdout:
            line = line.rstrip("\n")
            logger.debug("  %s", line)
            out_lines.append(line)

        err_reader.join()
        err = b"".join(err_chunks).decode("utf-8", errors="replace")
        exit_status = stdout.channel.recv_exit_status()

        for line in err.splitlines():
            logger.debug("  %s", line)

        result = CommandResult(command, exit_status, "\n".join(out_lines), err)

        if check and not result.ok:
            raise RemoteCommandError(command, exit_status, err)

        return result

    def run_script(self, script, check=True):
        """
            Feeds a multi-line bash script to "bash -s" on the server.

            :param str script: The script to run.
            :param bool check: Raise a RemoteCommandError when the script exits with a non-zero status.

            :return: The CommandResult of the script.
        """

        return self.run_command("bash -s", check=check, input_data=script)

    def get_server_directory_structure(self, directory, is_excluded=None):
        """
            This method will use the sftp connection to list the server directory and populate a directory structure of the
            repo. The structure of the repo will be denoted by a dictionary with each key being the name of an element in
            the repo. The value to each element will either be the sha1 hash of the file, or a dictionary representing the
            directory of the element. If while going through the repo, an element is excluded, it is skipped and will not
            appear in the returned structure.

            example_repo_structure = {
                "foo": "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed",
                "bar": { ... }
            }

            :param str directory: The path to the server directory/repo.
            :param is_excluded: Callable taking a path relative to directory, True when the element must be skipped.

            :return: The structure of the repo in type dictionary.
        """

        ret_val = {}
        file_paths = {}

        self._scan_server_directory(directory, "", ret_val, file_paths, is_excluded)

        # Hash the files in batches instead of one command per file
        relative_paths = sorted(file_paths)
        for start in range(0, len(relative_paths), HASH_BATCH_SIZE):
            batch = relative_paths[start:start + HASH_BATCH_SIZE]
            hashes = self._hash_server_files([posixpath.join(directory, path) for path in batch])

            for relative_path in batch:
                parent, name = file_paths[relative_path]
                parent[name] = hashes.get(posixpath.join(directory, relative_path))

        return ret_val

    def file_exists_on_server(self, file_path):
        """
            This method will check if the file path given as a parameter exists on the ssh server. It will return T/F.

            :param str file_path: The path to determine if it exists or not.

            :return: T/F based on if the path exists or not.
        """

        try:
            self.sftp.stat(file_path)

        except IOError:
            return False

        return True

    def make_server_directory(self, directory):

        self.run_command("mkdir -p {}".format(shlex.quote(directory)))

    def copy_file_to_server(self, local_file, server_path):
        """
            This method will use the put() method to copy a file over to the ssh server from the local machine. The
            parent directory is created when it does not exist yet.

            :param str local_file: The local path to the file that needs to be copied.
            :param str server_path: The server path the file is copied to.
        """

        logger.debug("Copying %s to %s", local_file, server_path)

        server_dir = posixpath.dirname(server_path)
        if not self.file_exists_on_server(file_path=server_dir):
            self.make_server_directory(server_dir)

        self.sftp.put(local_file, server_path)

        # Keep the executable bit, build scripts rely on it
        local_mode = stat.S_IMODE(os.stat(local_file).st_mode)
        self.sftp.chmod(server_path, local_mode)

    def write_file(self, content, server_path, sudo=False):
        """
            Writes text content to a file on the server. Files owned by root are written to /tmp first and then moved
            in place with sudo.

            :param str content: The content of the file.
            :param str server_path: The path of the file on the server.
            :param bool sudo: The destination is only writable by root.
        """

        data = io.BytesIO(content.encode("utf-8"))

        if not sudo:
            self.sftp.putfo(data, server_path)
            return

        tmp_path = "/tmp/{}.{}".format(posixpath.basename(server_path), os.getpid())
        self.sftp.putfo(data, tmp_path)
        self.run_command("sudo mv {} {} && sudo chown root:root {}".format(
            shlex.quote(tmp_path), shlex.quote(server_path), shlex.quote(server_path)))

    def delete_file_from_server(self, file_path):
        """
            This method will delete a file in the ssh server.

            :param str file_path: The path to the file that needs to be deleted
        """
        logger.debug("Deleting %s", file_path)
        self.run_command("rm -rf {}".format(shlex.quote(file_path)))

    # ////////////////////// Helpers ////////////////////// #

    def _scan_server_directory(self, directory, relative_dir, tree, file_paths, is_excluded):

        # Iterate through all elements in the server repo
        for element in self.sftp.listdir_attr(posixpath.join(directory, relative_dir) if relative_dir else directory):

            relative_path = posixpath.join(relative_dir, element.filename) if relative_dir else element.filename

            if is_excluded is not None and is_excluded(relative_path):
                continue

            # If the element is a directory we recursively call this method to get the structure of the directory
            if stat.S_ISDIR(element.st_mode):

                tree[element.filename] = {}
                self._scan_server_directory(directory, relative_path, tree[element.filename], file_paths, is_excluded)

            # Files are hashed once the whole tree is known
            elif stat.S_ISREG(element.st_mode):

                tree[element.filename] = None
                file_paths[relative_path] = (tree, element.filename)

            else:

                logger.warning("Did not recognize [%s] element type in directory: [%s]", element.filename, directory)

    def _hash_server_files(self, paths):

        # -z ends records with NUL and leaves names holding "\" or newlines unescaped
        result = self.run_command("sha1sum -z -- " + " ".join(shlex.quote(path) for path in paths))

        hashes = {}
        for record in result.stdout.split("\0"):
            file_hash = self._extract_hash(record)
            # "<hash>  <path>", or "<hash> *<path>" for files read in binary mode
            if file_hash:
                hashes[record[len(file_hash) + 2:]] = file_hash

        return hashes

    def _ssh_connect(self, timeout):
        """
            This method will connect to an ssh server given its class variables instantiated in the init method.
            Host keys of unknown servers are accepted and remembered for the session.
        """

        logger.debug("SSH Connecting to: Host-%s, Username-%s", self.host, self.username)
        self.ssh = paramiko.SSHClient()
        self.ssh.load_system_host_keys()
        self.ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        self.ssh.connect(
            hostname=self.host,
            port=self.port,
            username=self.username,
            key_filename=self.key_path,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            look_for_keys=False,
            allow_agent=False
        )
        logger.debug("Connected")

    def _ssh_sftp_connect(self):
        """
            This method will use the open_sftp() method to establish an SFTP connection with the ssh server
        """

        logger.debug("SFTP Connecting")
        self.sftp = self.ssh.open_sftp()
        logger.debug("Connected")

    def _extract_hash(self, output):
        hash_value = output.split(" ", 1)[0]
        if len(hash_value) == 40 and all(char in "0123456789abcdef" for char in hash_value):
            return hash_value
        return None
