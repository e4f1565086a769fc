#!/usr/bin/env python3
"""
    One way mirror of the local checkout to the application directory on the server.

    Both sides are scanned into a repo structure, a dictionary with each key being the name of an element in the repo.
    The value of a key is either the sha1 hash of a file or a dictionary holding the structure of a directory:

        example_repo_structure = {
            "foo": "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed",
            "bar": { ... }
        }

    Comparing the two structures gives the files to copy and the files to delete, so only changed files are sent.
"""

import fnmatch
import hashlib
import logging
import os
import posixpath

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import DeployError, RemoteCommandError

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def make_exclusion_matcher(patterns):
    """
        Builds the callable used to skip excluded elements. A path is excluded when any of its components, or the
        whole relative path, matches one of the glob patterns.

            matcher = make_exclusion_matcher([".git", "*.log"])
            matcher("src/.git/config")   -> True
            matcher("logs/app.log")      -> True
            matcher("src/app.py")        -> False

        :param list patterns: Glob patterns such as ".git", "node_modules" or "*.log".

        :return: A callable taking a relative posix path and returning T/F.
    """

    patterns = tuple(patterns)

    def is_excluded(relative_path):

        components = relative_path.split("/")
        for pattern in patterns:
            if fnmatch.fnmatchcase(relative_path, pattern):
                return True
            if any(fnmatch.fnmatchcase(component, pattern) for component in components):
                return True
        return False

    return is_excluded


def hash_local_file(file_path):

    sha1 = hashlib.sha1()
    with open(file_path, "rb") as local_file:
        for chunk in iter(lambda: local_file.read(HASH_CHUNK_SIZE), b""):
            sha1.update(chunk)
    return sha1.hexdigest()


def get_local_directory_structure(directory_path, is_excluded=None, relative_dir=""):
    """
        This method will use the os library to scan the local directory and populate a directory structure of the local
        repo. If while going through the repo, an element is excluded, it is skipped and will not appear in the returned
        structure. Symbolic links to files are followed, anything that is neither a file nor a directory is skipped.

        :param str directory_path: The path to the local directory/repo.
        :param is_excluded: Callable taking a path relative to the repo root, True when the element must be skipped.
        :param str relative_dir: Path of directory_path relative to the repo root, used by the recursion.

        :return: The structure of the repo in type dictionary.
    """

    ret_val = {}

    # Scan the directory and iterate through all elements
    with os.scandir(directory_path) as directory_scan:
        elements = sorted(directory_scan, key=lambda element: element.name)

    for element in elements:

        relative_path = posixpath.join(relative_dir, element.name) if relative_dir else element.name

        if is_excluded is not None and is_excluded(relative_path):
            continue

        # If the element is a directory we recursively call this method to get the structure of the directory
        if element.is_dir(follow_symlinks=False):

            ret_val[element.name] = get_local_directory_structure(element.path, is_excluded, relative_path)

        # If the element is a file, we set the element's value to its hash
        elif element.is_file():

            ret_val[element.name] = hash_local_file(element.path)

        else:

            logger.warning("Skipping [%s], not a regular file or directory", relative_path)

    return ret_val


def get_copy_actions_from_diff(local_tree, server_tree):
    """
        This method will go through each file in the local repo and check to see if the same file exists in the server
        repo. It will use the logic below to determine and return a list of files to copy over to the server repo.

            If the server does not have the file -> file needs to be copied to the server.
            If the server has the file but they differ -> file needs to be copied to the server.
            If the server has the file and they are the same -> no action.

        An element that is a directory on one side and a file on the other is treated as missing on the server, see
        get_type_conflicts_from_diff.

        :param dict local_tree: The repo structure of the repo on the local machine.
        :param dict server_tree: The repo structure of the repo on the server machine.

        :return: A list of files needed to be copied on the server machine.
    """

    ret_val = []

    # Iterate through each element of the local repo
    for element_name, element_value in local_tree.items():

        is_dir = isinstance(element_value, dict)
        server_value = server_tree.get(element_name)
        element_exists_in_server = element_name in server_tree and isinstance(server_value, dict) == is_dir

        if not element_exists_in_server:

            # A new directory means every file in it is copied
            if is_dir:

                ret_val += [element_name + "/" + copy_path for copy_path in get_all_directory_paths(element_value)]

            else:

                ret_val.append(element_name)

        elif element_value != server_value:

            # If the elements are both directories then we recursively look for the files that differ
            if is_dir:

                new_actions = get_copy_actions_from_diff(element_value, server_value)
                ret_val += [element_name + "/" + copy_path for copy_path in new_actions]

            else:

                ret_val.append(element_name)

    return ret_val


def get_delete_actions_from_diff(local_tree, server_tree):
    """
        This method will go through each element in the server repo structure and will compare with the local repo
        structure to find what no longer exists locally.

            If the element in the server does not exist in the local repo -> element needs to be deleted from the server
            If the element is a directory on both sides -> recursively call the method to find any files to delete

        :param dict local_tree: The repo structure of the repo on the local machine.
        :param dict server_tree: The repo structure of the repo on the server machine.

        :return: A list of files/directories needed to be deleted on the server machine.
    """
    ret_val = []

    # Go through each element in the server repo
    for element_name, element_value in server_tree.items():

        if element_name not in local_tree:

            ret_val.append(element_name)

        elif isinstance(element_value, dict) and isinstance(local_tree[element_name], dict):

            new_actions = get_delete_actions_from_diff(local_tree[element_name], element_value)
            ret_val += [element_name + "/" + delete_path for delete_path in new_actions]

    return ret_val


def get_type_conflicts_from_diff(local_tree, server_tree):
    """
        Returns the server paths that are a file where the local repo has a directory or the other way around. They
        have to be removed from the server before the local elements can be copied.
    """

    ret_val = []

    for element_name, element_value in local_tree.items():

        if element_name not in server_tree:
            continue

        server_value = server_tree[element_name]
        local_is_dir = isinstance(element_value, dict)

        if local_is_dir != isinstance(server_value, dict):

            ret_val.append(element_name)

        elif local_is_dir:

            new_conflicts = get_type_conflicts_from_diff(element_value, server_value)
            ret_val += [element_name + "/" + conflict_path for conflict_path in new_conflicts]

    return ret_val


def get_all_directory_paths(directory_tree):
    """
        This method takes in a directory structure and returns the path to each file in the directory as list of strings.

        :param dict directory_tree: This is a directory structure in a dictionary.

        :return: A list of all paths to each file in the dictionary.
    """
    ret_val = []

    for name, element in directory_tree.items():

        if isinstance(element, dict):

            ret_val += [name + "/" + file for file in get_all_directory_paths(element)]

        else:

            ret_val.append(name)

    return ret_val


def sync_directory(ssh_agent, local_dir, server_dir, excluded_files, prune=False):
    """
        Mirrors local_dir to server_dir. Files that are new or changed are copied, unchanged files are left alone.
        Server files that no longer exist locally are only removed when prune is set. Excluded elements are neither
        copied nor pruned.

        :param SSHAgent ssh_agent: Connected agent of the target server.
        :param str local_dir: The local checkout.
        :param str server_dir: The application directory on the server.
        :param list excluded_files: Glob patterns of elements that are never synced.
        :param bool prune: Delete server files that are not in the local checkout.

        :return: A tuple of the copied and the deleted relative paths.
    """

    logger.info("=== Transferring Files to Remote Server ===")

    is_excluded = make_exclusion_matcher(excluded_files)

    try:
        ssh_agent.make_server_directory(server_dir)

        local_tree = get_local_directory_structure(local_dir, is_excluded)
        server_tree = ssh_agent.get_server_directory_structure(server_dir, is_excluded)

        files_to_copy = get_copy_actions_from_diff(local_tree, server_tree)
        files_to_del = get_type_conflicts_from_diff(local_tree, server_tree)
        if prune:
            files_to_del += get_delete_actions_from_diff(local_tree, server_tree)

        logger.info("Syncing files to %s:%s (%d to copy, %d to delete)...",
                    ssh_agent.host, server_dir, len(files_to_copy), len(files_to_del))

        for file in files_to_del:
            ssh_agent.delete_file_from_server(posixpath.join(server_dir, file))

        for file in files_to_copy:
            local_file = os.path.join(local_dir, *file.split("/"))
            ssh_agent.copy_file_to_server(local_file, posixpath.join(server_dir, file))

    except (OSError, RemoteCommandError) as e:
        raise DeployError(f"Could not transfer files to {server_dir}", context=str(e),
                          exit_code=getattr(e, "exit_code", None)) from e

    log_success(logger, "Files transferred successfully")

    return files_to_copy, files_to_del
