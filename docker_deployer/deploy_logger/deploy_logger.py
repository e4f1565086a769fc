#!/usr/bin/env python3
"""
    Logging setup for the docker_deployer.

    Every run writes to the console and to a timestamped log file. Lines look like:

        [INFO] 2024-05-01 12:00:00 - Cloning repository...

    A SUCCESS level sits between INFO and WARNING so the end of every step stands out in the log.
"""

import datetime
import logging
import os

ROOT_LOGGER_NAME = "docker_deployer"

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "[%(levelname)s] %(asctime)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def log_success(logger, msg, *args):
    """
        Logs msg on the SUCCESS level of the given logger.
    """

    if logger.isEnabledFor(SUCCESS):
        logger.log(SUCCESS, msg, *args)


def get_log_file_path(log_dir, now=None):
    """
        Builds the path of the log file of a run, deploy_YYYYmmdd_HHMMSS.log inside log_dir.

        :param str log_dir: Directory that holds the run logs.
        :param datetime.datetime now: Start time of the run, defaults to the current time.

        :return: The path to the log file.
    """

    if now is None:
        now = datetime.datetime.now()

    return os.path.join(log_dir, "deploy_{}.log".format(now.strftime("%Y%m%d_%H%M%S")))


def setup_logging(log_dir, verbose=False):
    """
        Attaches a console handler and a file handler to the docker_deployer logger. The file always receives DEBUG
        output, which includes everything the remote commands print. The console only shows it when verbose is set.

        :param str log_dir: Directory that will hold the log file. It is created when missing.
        :param bool verbose: Show remote command output on the console.

        :return: The path to the log file of this run.
    """

    os.makedirs(log_dir, exist_ok=True)
    log_file = get_log_file_path(log_dir)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return log_file
