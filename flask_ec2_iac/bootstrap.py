# flask_ec2_iac/bootstrap.py
"""
Boot-time script for the Flask host.

Everything here is a pure function returning text, so the script can be
checked in unit tests without synthesizing a stack. The stack feeds the
result of `render_bootstrap_commands` into `ec2.UserData.add_commands`,
which prepends the `#!/bin/bash` line.
"""

import json
import shlex

from flask_ec2_iac.config import DeploymentConfig, SourcePatch

USER_DATA_LOG = "/var/log/user-data.log"
LOGIN_USER = "ubuntu"

CLOUDWATCH_AGENT_HOME = "/opt/aws/amazon-cloudwatch-agent"
CLOUDWATCH_AGENT_CONFIG = f"{CLOUDWATCH_AGENT_HOME}/etc/amazon-cloudwatch-agent.json"

SYSTEM_PACKAGES = (
    "python3",
    "python3-venv",
    "python3-pip",
    "git",
    "nginx",
    "curl",
)


def _heredoc(path: str, content: str, marker: str = "EOF") -> list:
    # Quoted marker: the shell must not expand $host etc. inside the file
    return [f"cat > {path} <<'{marker}'", *content.rstrip("\n").split("\n"), marker]


def _echo(message: str) -> str:
    return f"echo {shlex.quote(message)}"


def _section(title: str) -> list:
    rule = "# " + "-" * 60
    return ["", rule, f"# {title}", rule]


# ------------------------------------------------------------
# File renderers
# ------------------------------------------------------------

def render_sed_command(patch: SourcePatch, app_dir: str) -> str:
    """
    In-place ERE substitution on one file of the cloned app.

    A missing file logs a warning instead of aborting the boot, so a
    default patch never breaks an app laid out differently.
    """
    pattern = patch.pattern.replace("|", r"\|")
    replacement = patch.replacement.replace("|", r"\|")
    expression = shlex.quote(f"s|{pattern}|{replacement}|g")
    target = shlex.quote(f"{app_dir}/{patch.path}")

    return (
        f"if [ -f {target} ]; then sed -i -E {expression} {target}; "
        f"else {_echo(f'[PATCH] WARNING: {patch.path} not found, skipping')}; fi"
    )


def render_systemd_unit(config: DeploymentConfig) -> str:
    log_file = f"{config.app_log_dir}/app.log"
    return "\n".join([
        "[Unit]",
        f"Description=Flask application {config.project_name}",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        f"User={LOGIN_USER}",
        f"Group={LOGIN_USER}",
        f"WorkingDirectory={config.app_dir}",
        "Environment=PYTHONUNBUFFERED=1",
        f"Environment=PORT={config.app_port}",
        f"ExecStart={config.app_dir}/venv/bin/python {config.app_dir}/{config.app_entrypoint}",
        "Restart=always",
        "RestartSec=5",
        f"StandardOutput=append:{log_file}",
        f"StandardError=append:{log_file}",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ])


def render_nginx_site(config: DeploymentConfig) -> str:
    return "\n".join([
        "server {",
        "    listen 80 default_server;",
        "    listen [::]:80 default_server;",
        "    server_name _;",
        "",
        "    location / {",
        f"        proxy_pass http://127.0.0.1:{config.app_port};",
        "        proxy_http_version 1.1;",
        "        proxy_set_header Host $host;",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
        "        proxy_connect_timeout 10s;",
        "        proxy_read_timeout 60s;",
        "    }",
        "}",
        "",
    ])


def render_cloudwatch_agent_config(config: DeploymentConfig) -> str:
    """
    CloudWatch agent config: one log stream per file, per instance.
    """
    sources = [
        (f"{config.app_log_dir}/app.log", "app"),
        ("/var/log/nginx/access.log", "nginx-access"),
        ("/var/log/nginx/error.log", "nginx-error"),
        (USER_DATA_LOG, "user-data"),
    ]

    document = {
        "agent": {"run_as_user": "root"},
        "logs": {
            "logs_collected": {
                "files": {
                    "collect_list": [
                        {
                            "file_path": path,
                            "log_group_name": config.log_group_name,
                            "log_stream_name": f"{{instance_id}}/{stream}",
                        }
                        for path, stream in sources
                    ]
                }
            }
        },
    }
    return json.dumps(document, indent=2)


# ------------------------------------------------------------
# Script sections
# ------------------------------------------------------------

def _preamble() -> list:
    return [
        "set -euo pipefail",
        f"exec > >(tee -a {USER_DATA_LOG}) 2>&1",
        "export DEBIAN_FRONTEND=noninteractive",
        "echo '===== [BOOT] Flask host bootstrap started ====='",
    ]


def _install_packages() -> list:
    return _section("1. System packages") + [
        "echo '[APT] Installing system packages'",
        "apt-get update -y",
        f"apt-get install -y {' '.join(SYSTEM_PACKAGES)}",
    ]


def _install_cloudwatch_agent(config: DeploymentConfig) -> list:
    region = config.region
    package_url = (
        f"https://amazoncloudwatch-agent-{region}.s3.{region}.amazonaws.com"
        "/ubuntu/amd64/latest/amazon-cloudwatch-agent.deb"
    )
    return (
        _section("2. CloudWatch agent")
        + [
            "echo '[CW] Installing CloudWatch agent'",
            f"mkdir -p {config.app_log_dir}",
            f"chown {LOGIN_USER}:{LOGIN_USER} {config.app_log_dir}",
            f"curl -fsSL -o /tmp/amazon-cloudwatch-agent.deb {package_url}",
            "dpkg -i -E /tmp/amazon-cloudwatch-agent.deb",
            f"mkdir -p {CLOUDWATCH_AGENT_HOME}/etc",
        ]
        + _heredoc(CLOUDWATCH_AGENT_CONFIG, render_cloudwatch_agent_config(config), "CWEOF")
        + [
            f"{CLOUDWATCH_AGENT_HOME}/bin/amazon-cloudwatch-agent-ctl "
            f"-a fetch-config -m ec2 -s -c file:{CLOUDWATCH_AGENT_CONFIG}",
        ]
    )


def _clone_app(config: DeploymentConfig) -> list:
    return _section("3. Application source") + [
        _echo(f"[APP] Cloning {config.app_repo_url} ({config.app_branch})"),
        f"rm -rf {config.app_dir}",
        "git clone --depth 1 "
        f"--branch {shlex.quote(config.app_branch)} "
        f"{shlex.quote(config.app_repo_url)} {config.app_dir}",
    ]


def _patch_app(config: DeploymentConfig) -> list:
    lines = _section("4. Source patches") + ["echo '[PATCH] Patching application source'"]
    for patch in config.patches:
        lines.append(render_sed_command(patch, config.app_dir))
    lines.append(f"chown -R {LOGIN_USER}:{LOGIN_USER} {config.app_dir}")
    return lines


def _install_app_dependencies(config: DeploymentConfig) -> list:
    venv = f"{config.app_dir}/venv"
    return _section("5. Python virtual environment") + [
        "echo '[APP] Creating virtual environment'",
        f"sudo -u {LOGIN_USER} python3 -m venv {venv}",
        f"sudo -u {LOGIN_USER} {venv}/bin/pip install --upgrade pip",
        f"if [ -f {config.app_dir}/requirements.txt ]; then",
        f"  sudo -u {LOGIN_USER} {venv}/bin/pip install -r {config.app_dir}/requirements.txt",
        "else",
        "  echo '[APP] No requirements.txt, installing Flask only'",
        f"  sudo -u {LOGIN_USER} {venv}/bin/pip install flask",
        "fi",
    ]


def _install_service(config: DeploymentConfig) -> list:
    unit_path = f"/etc/systemd/system/{config.service_name}.service"
    return (
        _section("6. systemd service")
        + ["echo '[SYSTEMD] Installing service unit'"]
        + _heredoc(unit_path, render_systemd_unit(config), "UNITEOF")
        + [
            "systemctl daemon-reload",
            f"systemctl enable {config.service_name}",
            f"systemctl restart {config.service_name}",
        ]
    )


def _configure_nginx(config: DeploymentConfig) -> list:
    site = f"/etc/nginx/sites-available/{config.project_name}"
    return (
        _section("7. Nginx reverse proxy")
        + ["echo '[NGINX] Writing reverse proxy config'"]
        + _heredoc(site, render_nginx_site(config), "NGINXEOF")
        + [
            f"ln -sf {site} /etc/nginx/sites-enabled/{config.project_name}",
            "rm -f /etc/nginx/sites-enabled/default",
            "nginx -t || (echo '[FATAL] nginx config invalid' && exit 1)",
            "systemctl enable nginx",
            "systemctl restart nginx",
        ]
    )


def _wait_for_port(config: DeploymentConfig) -> list:
    attempts = config.startup_wait_attempts
    port = config.app_port
    return _section("8. Wait for the app port") + [
        _echo(f"[WAIT] Waiting for {config.service_name} on 127.0.0.1:{port}"),
        f"for attempt in $(seq 1 {attempts}); do",
        f"  if (exec 3<>/dev/tcp/127.0.0.1/{port}) 2>/dev/null; then",
        f"    echo \"[WAIT] Port {port} open after $attempt attempt(s)\"",
        "    break",
        "  fi",
        f"  if [ \"$attempt\" -eq {attempts} ]; then",
        "    " + _echo(f"[FATAL] {config.service_name} never listened on port {port}"),
        f"    journalctl -u {config.service_name} --no-pager -n 50 || true",
        "    exit 1",
        "  fi",
        f"  sleep {config.startup_wait_interval}",
        "done",
    ]


def _health_check(config: DeploymentConfig) -> list:
    attempts = config.health_check_attempts
    url = shlex.quote(f"http://127.0.0.1{config.health_check_path}")
    return _section("9. Health check through Nginx") + [
        _echo(f"[HEALTH] Checking {config.health_check_path} through Nginx"),
        f"for attempt in $(seq 1 {attempts}); do",
        f"  if curl -fsS -o /dev/null {url}; then",
        "    echo \"[HEALTH] Healthy after $attempt attempt(s)\"",
        "    break",
        "  fi",
        f"  if [ \"$attempt\" -eq {attempts} ]; then",
        "    echo '[FATAL] Health check failed'",
        "    tail -n 50 /var/log/nginx/error.log || true",
        "    exit 1",
        "  fi",
        f"  sleep {config.health_check_interval}",
        "done",
    ]


def render_bootstrap_commands(config: DeploymentConfig) -> list:
    """
    Full boot script, one shell line per list item.

    Order matters: the CloudWatch agent starts before the app so a failed
    boot still ships /var/log/user-data.log.
    """
    return (
        _preamble()
        + _install_packages()
        + _install_cloudwatch_agent(config)
        + _clone_app(config)
        + _patch_app(config)
        + _install_app_dependencies(config)
        + _install_service(config)
        + _configure_nginx(config)
        + _wait_for_port(config)
        + _health_check(config)
        + ["", "echo '===== [SUCCESS] Flask host fully initialized ====='"]
    )
