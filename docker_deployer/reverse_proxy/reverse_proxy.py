#!/usr/bin/env python3
"""
    Configures nginx on the server as a reverse proxy in front of the application.

    The site is written to sites-available, enabled with a symlink in sites-enabled and the whole configuration is
    checked with "nginx -t" before nginx is reloaded. When the check fails, the files touched by this module are put
    back the way they were and nginx keeps serving its current configuration.
"""

import logging
import re
import shlex
from dataclasses import dataclass

from docker_deployer.deploy_logger.deploy_logger import log_success
from docker_deployer.errors import DeployError, ProxyConfigError, RemoteCommandError

logger = logging.getLogger(__name__)

NGINX_CONF = "/etc/nginx/nginx.conf"
SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"
DEFAULT_SITE = "default"

HASH_BUCKET_SIZE_DIRECTIVE = "server_names_hash_bucket_size"
HASH_BUCKET_SIZE = 128

# Only an uncommented directive counts, stock nginx.conf ships it commented out
ACTIVE_HASH_BUCKET_SIZE = re.compile(r"^[ \t]*{}\s".format(HASH_BUCKET_SIZE_DIRECTIVE), re.MULTILINE)

SITE_TEMPLATE = """server {{
    listen 80 default_server;
    server_name {server_names};

    location / {{
        proxy_pass http://127.0.0.1:{app_port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_cache_bypass $http_upgrade;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
}}
"""


def site_available_path(config):
    return f"{SITES_AVAILABLE}/{config.app_name}"


def site_enabled_path(config):
    return f"{SITES_ENABLED}/{config.app_name}"


def site_backup_path(config):
    return f"{SITES_AVAILABLE}/{config.app_name}.bak"


def default_site_backup_path(config):
    # sites-available is not included by nginx.conf, backups there are never loaded
    return f"{SITES_AVAILABLE}/{DEFAULT_SITE}.{config.app_name}.bak"


def render_site_config(config):
    """
        Builds the nginx server block proxying port 80 of the server ip and the ssh host name to the application on
        127.0.0.1. The Upgrade and Connection headers let websockets through.
    """

    server_names = []
    for name in (config.public_ip, config.ssh_host):
        if name not in server_names:
            server_names.append(name)

    return SITE_TEMPLATE.format(server_names=" ".join(server_names), app_port=config.app_port)


@dataclass
class ProxyState:
    """
        What existed on the server before the site was written.
    """

    site_existed: bool = False
    site_enabled: bool = False
    default_enabled: bool = False


def _path_exists(ssh_agent, path, test_flag="-e"):

    return ssh_agent.run_command("sudo test {} {}".format(test_flag, shlex.quote(path)), check=False).ok


def ensure_hash_bucket_size(ssh_agent):
    """
        Long host names such as ec2 public dns names do not fit nginx's default server names hash bucket. The
        directive is added to the http block of nginx.conf unless it is already set.
    """

    logger.info("Fixing Nginx hash bucket size...")

    nginx_conf = ssh_agent.run_command("sudo cat {}".format(NGINX_CONF)).stdout
    if ACTIVE_HASH_BUCKET_SIZE.search(nginx_conf):
        logger.info("%s already configured", HASH_BUCKET_SIZE_DIRECTIVE)
        return

    sed_script = "/http {{/a \\    {} {};".format(HASH_BUCKET_SIZE_DIRECTIVE, HASH_BUCKET_SIZE)
    ssh_agent.run_command("sudo sed -i {} {}".format(shlex.quote(sed_script), NGINX_CONF))
    logger.info("Added %s to nginx.conf", HASH_BUCKET_SIZE_DIRECTIVE)


def save_proxy_state(ssh_agent, config):
    """
        Records and backs up the site file and the default site link before they are changed.

        :return: The ProxyState used by restore_proxy_state.
    """

    state = ProxyState(
        site_existed=_path_exists(ssh_agent, site_available_path(config), "-f"),
        site_enabled=_path_exists(ssh_agent, site_enabled_path(config), "-L"),
        default_enabled=_path_exists(ssh_agent, f"{SITES_ENABLED}/{DEFAULT_SITE}", "-e")
    )

    if state.site_existed:
        ssh_agent.run_command("sudo cp -p {} {}".format(
            shlex.quote(site_available_path(config)), shlex.quote(site_backup_path(config))))

    if state.default_enabled:
        # -P keeps the link a link
        ssh_agent.run_command("sudo cp -P {} {}".format(
            shlex.quote(f"{SITES_ENABLED}/{DEFAULT_SITE}"), shlex.quote(default_site_backup_path(config))))

    return state


def restore_proxy_state(ssh_agent, config, state):
    """
        Puts back what save_proxy_state recorded. Called when "nginx -t" rejects the new configuration.
    """

    logger.warning("Restoring the previous Nginx configuration...")

    if state.site_existed:
        ssh_agent.run_command("sudo mv -f {} {}".format(
            shlex.quote(site_backup_path(config)), shlex.quote(site_available_path(config))))
    else:
        ssh_agent.run_command("sudo rm -f {}".format(shlex.quote(site_available_path(config))))

    if not state.site_enabled:
        ssh_agent.run_command("sudo rm -f {}".format(shlex.quote(site_enabled_path(config))))

    if state.default_enabled:
        ssh_agent.run_command("sudo mv -f {} {}".format(
            shlex.quote(default_site_backup_path(config)), shlex.quote(f"{SITES_ENABLED}/{DEFAULT_SITE}")))


def discard_backups(ssh_agent, config):

    ssh_agent.run_command("sudo rm -f {} {}".format(
        shlex.quote(site_backup_path(config)), shlex.quote(default_site_backup_path(config))))


def check_nginx_config(ssh_agent):
    """
        Runs "nginx -t".

        :return: The CommandResult of the check, its stderr holds the nginx messages.
    """

    logger.info("Testing Nginx configuration...")
    return ssh_agent.run_command("sudo nginx -t", check=False)


def reload_nginx(ssh_agent):

    logger.info("Reloading Nginx...")
    ssh_agent.run_command("sudo systemctl reload nginx")


def configure_nginx(ssh_agent, config):
    """
        Writes and enables the site of the application and reloads nginx. The default site is disabled because both
        would claim default_server on port 80.

        :param SSHAgent ssh_agent: Connected agent of the target server.
        :param DeploymentConfig config: The configuration of this run.
    """

    logger.info("=== Configuring Nginx Reverse Proxy ===")

    try:
        ensure_hash_bucket_size(ssh_agent)

        state = save_proxy_state(ssh_agent, config)

        logger.info("Creating Nginx configuration...")
        ssh_agent.write_file(render_site_config(config), site_available_path(config), sudo=True)

        logger.info("Removing default Nginx site to prevent conflicts...")
        ssh_agent.run_command("sudo rm -f {}".format(shlex.quote(f"{SITES_ENABLED}/{DEFAULT_SITE}")))

        logger.info("Enabling site...")
        ssh_agent.run_command("sudo ln -sf {} {}".format(
            shlex.quote(site_available_path(config)), shlex.quote(site_enabled_path(config))))

        check = check_nginx_config(ssh_agent)
        if not check.ok:
            restore_proxy_state(ssh_agent, config, state)
            raise ProxyConfigError("Nginx configuration test failed, reload skipped",
                                   context=check.stderr.strip() or None)

        reload_nginx(ssh_agent)
        discard_backups(ssh_agent, config)

    except RemoteCommandError as e:
        raise DeployError("Nginx configuration failed", context=e.context, exit_code=e.exit_code) from e

    except OSError as e:
        raise DeployError("Could not write the Nginx site file", context=str(e)) from e

    log_success(logger, "Nginx reverse proxy configured")


def remove_nginx_site(ssh_agent, config):
    """
        Removes the site of the application and reloads nginx. The stock default site is enabled again when the
        server still has it, so nginx goes back to answering port 80 the way it did before the first deployment.
    """

    logger.info("Removing Nginx configuration...")

    try:
        ssh_agent.run_command("sudo rm -f {} {}".format(
            shlex.quote(site_enabled_path(config)), shlex.quote(site_available_path(config))))

        default_available = f"{SITES_AVAILABLE}/{DEFAULT_SITE}"
        default_enabled = f"{SITES_ENABLED}/{DEFAULT_SITE}"
        if _path_exists(ssh_agent, default_available, "-f") and not _path_exists(ssh_agent, default_enabled, "-e"):
            ssh_agent.run_command("sudo ln -s {} {}".format(
                shlex.quote(default_available), shlex.quote(default_enabled)))

        check = check_nginx_config(ssh_agent)
        if not check.ok:
            raise ProxyConfigError("Nginx configuration test failed, reload skipped",
                                   context=check.stderr.strip() or None)

        reload_nginx(ssh_agent)

    except RemoteCommandError as e:
        raise DeployError("Removing the Nginx site failed", context=e.context, exit_code=e.exit_code) from e
