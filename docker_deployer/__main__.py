#!/usr/bin/env python3

import argparse
import logging
import signal
import sys

from docker_deployer.deploy_logger.deploy_logger import setup_logging
from docker_deployer.errors import DeployerError
from docker_deployer.init_file_parser.init_file_parser import InitFileParser
from docker_deployer.pipeline.pipeline import run_deploy, run_teardown

logger = logging.getLogger("docker_deployer")

DEFAULT_LOG_DIR = "logs"

SIGINT_EXIT_CODE = 128 + signal.SIGINT
SIGTERM_EXIT_CODE = 128 + signal.SIGTERM


def parse_args(argv=None):

    parser = argparse.ArgumentParser(prog="docker-deployer", formatter_class=argparse.ArgumentDefaultsHelpFormatter,
                                     description="Deploys a dockerized git repository to a server behind nginx.")

    parser.add_argument('-i', '--init_path', dest='init_path', action='store', required=True,
                        help='Specify the path of the deployer init json file')
    parser.add_argument('--cleanup', dest='cleanup', action='store_true', default=False,
                        help='Remove the deployed container, nginx site and application files instead of deploying')
    parser.add_argument('--strict-probe', dest='strict_probe', action='store_true', default=False,
                        help='Fail the deployment when the application does not answer the endpoint probes')
    parser.add_argument('--log-dir', dest='log_dir', action='store', default=DEFAULT_LOG_DIR,
                        help='Directory the run log is written to')
    parser.add_argument('-v', '--verbose', dest='verbose', action='store_true', required=False, default=False,
                        help='Turns on verbosity')

    return parser.parse_args(argv)


def main(argv=None):

    args = parse_args(argv)

    signal.signal(signal.SIGTERM, sigterm_handler)

    log_file = setup_logging(args.log_dir, verbose=args.verbose)
    logger.info("=== Deployment Script Started ===")

    try:
        config = InitFileParser(init_file_path=args.init_path).parse_init_file()

        logger.info("Configuration:")
        for line in config.describe():
            logger.info("  %s", line)

        if args.cleanup:
            run_teardown(config)
        else:
            run_deploy(config, strict_probe=args.strict_probe, log_file=log_file)

    except DeployerError as e:
        logger.error("%s", e)
        logger.error("Script failed with exit code: %s", e.exit_code)
        logger.info("Check log file for details: %s", log_file)
        return e.exit_code

    except KeyboardInterrupt:
        logger.error("Interrupted, cleaned up temporary files")
        logger.info("Check log file for details: %s", log_file)
        return SIGINT_EXIT_CODE

    return 0


def sigterm_handler(signum, frame):

    # Unwinds through the cleanup of the running step
    raise SystemExit(SIGTERM_EXIT_CODE)


def run():

    sys.exit(main())


if __name__ == "__main__":

    run()
