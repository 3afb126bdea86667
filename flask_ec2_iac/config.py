# flask_ec2_iac/config.py
"""
Deployment settings for the Flask EC2 stack.

Every value is looked up in this order:
1. CDK context (cdk.json or `cdk deploy -c key=value`)
2. Environment variable
3. Built-in default
"""

import ipaddress
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from constructs import Node

from flask_ec2_iac.logger import get_logger, set_log_level

logger = get_logger()


# CloudWatch Logs only accepts these retention periods
SUPPORTED_LOG_RETENTION_DAYS = (1, 3, 5, 7, 14, 30, 60, 90, 180, 365)

_PROJECT_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
_REPO_URL_PREFIXES = ("https://", "ssh://", "git@")
_ENTRYPOINT_RE = re.compile(r"^[A-Za-z0-9_./-]+\.py$")
_REGION_RE = re.compile(r"^[a-z]{2}(-[a-z]+)+-[0-9]+$")


class ConfigError(ValueError):
    """Raised when a deployment setting is missing or invalid."""


@dataclass(frozen=True)
class SourcePatch:
    """
    One in-place `sed -E` substitution on a file of the cloned app.

    `path` is relative to the application directory.
    """

    path: str
    pattern: str
    replacement: str


def default_source_patches(entrypoint: str, app_port: int) -> tuple:
    """
    Patches that make a stock `app.run(...)` Flask script safe to put
    behind Nginx: no debugger, loopback only, fixed port.
    """
    return (
        SourcePatch(entrypoint, r"debug=True", "debug=False"),
        SourcePatch(entrypoint, "host=[\"']0\\.0\\.0\\.0[\"']", 'host="127.0.0.1"'),
        SourcePatch(entrypoint, r"port=[0-9]+", f"port={app_port}"),
    )


@dataclass(frozen=True)
class DeploymentConfig:
    app_repo_url: str
    project_name: str = "flask-app"
    account: Optional[str] = None
    region: str = "us-east-1"

    # Networking
    vpc_cidr: str = "10.0.0.0/16"
    subnet_cidr_mask: int = 24
    ssh_allowed_cidr: str = "0.0.0.0/0"

    # Instance
    instance_type: str = "t2.micro"
    root_volume_size: int = 20
    key_name: Optional[str] = None
    public_key: Optional[str] = None

    # Application
    app_branch: str = "main"
    app_entrypoint: str = "app.py"
    app_port: int = 5000
    health_check_path: str = "/"
    source_patches: Optional[tuple] = None

    # Boot-time retry loops
    startup_wait_attempts: int = 30
    startup_wait_interval: int = 2
    health_check_attempts: int = 10
    health_check_interval: int = 3

    log_retention_days: int = 7
    log_level: str = "INFO"

    tags: dict = field(default_factory=dict)

    # ---------------------------------------------------------
    # Derived values
    # ---------------------------------------------------------
    @property
    def app_dir(self) -> str:
        return f"/opt/{self.project_name}"

    @property
    def service_name(self) -> str:
        return self.project_name

    @property
    def log_group_name(self) -> str:
        return f"/{self.project_name}/app"

    @property
    def app_log_dir(self) -> str:
        return f"/var/log/{self.project_name}"

    @property
    def resolved_key_name(self) -> str:
        return self.key_name or f"{self.project_name}-key"

    @property
    def patches(self) -> tuple:
        if self.source_patches is None:
            return default_source_patches(self.app_entrypoint, self.app_port)
        return self.source_patches

    @property
    def generates_key_pair(self) -> bool:
        return not self.public_key

    # ---------------------------------------------------------
    # Validation
    # ---------------------------------------------------------
    def validate(self) -> "DeploymentConfig":
        if not self.app_repo_url:
            raise ConfigError(
                "app_repo_url is required "
                "(set -c app_repo_url=... or FLASK_APP_REPO_URL)"
            )
        if not self.app_repo_url.startswith(_REPO_URL_PREFIXES):
            raise ConfigError(
                f"app_repo_url must be an https://, ssh:// or git@ URL, got {self.app_repo_url!r}"
            )

        if not _PROJECT_NAME_RE.match(self.project_name):
            raise ConfigError(
                f"project_name must be lowercase letters, digits and dashes, got {self.project_name!r}"
            )

        if not _REGION_RE.match(self.region):
            raise ConfigError(f"region must look like us-east-1, got {self.region!r}")

        vpc = _parse_network(self.vpc_cidr, "vpc_cidr")
        _parse_network(self.ssh_allowed_cidr, "ssh_allowed_cidr")
        if not vpc.prefixlen < self.subnet_cidr_mask <= 28:
            raise ConfigError(
                f"subnet_cidr_mask must be between /{vpc.prefixlen + 1} and /28, got /{self.subnet_cidr_mask}"
            )

        if not 1024 <= self.app_port <= 65535:
            raise ConfigError(
                f"app_port must be in 1024-65535 (Nginx owns port 80), got {self.app_port}"
            )

        # Lands unquoted in the systemd ExecStart line
        entrypoint_parts = Path(self.app_entrypoint).parts
        if (
            not _ENTRYPOINT_RE.match(self.app_entrypoint)
            or self.app_entrypoint.startswith("/")
            or ".." in entrypoint_parts
        ):
            raise ConfigError(
                "app_entrypoint must be a relative .py path of letters, digits, '_', '-', '.' and '/', "
                f"got {self.app_entrypoint!r}"
            )

        if not self.health_check_path.startswith("/"):
            raise ConfigError(
                f"health_check_path must start with '/', got {self.health_check_path!r}"
            )

        if self.log_retention_days not in SUPPORTED_LOG_RETENTION_DAYS:
            raise ConfigError(
                f"log_retention_days must be one of {SUPPORTED_LOG_RETENTION_DAYS}, got {self.log_retention_days}"
            )

        if self.root_volume_size < 8:
            raise ConfigError(f"root_volume_size must be at least 8 GiB, got {self.root_volume_size}")

        for name in (
            "startup_wait_attempts",
            "startup_wait_interval",
            "health_check_attempts",
            "health_check_interval",
        ):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        for patch in self.patches:
            if patch.path.startswith("/") or ".." in Path(patch.path).parts:
                raise ConfigError(
                    f"source patch path must stay inside the app directory, got {patch.path!r}"
                )
            if not patch.pattern:
                raise ConfigError(f"source patch for {patch.path!r} has an empty pattern")

        if self.ssh_allowed_cidr == "0.0.0.0/0":
            logger.warning("SSH (22) is open to the whole internet, set ssh_allowed_cidr to restrict it")

        return self


def _parse_network(value: str, name: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(value)
    except ValueError as exc:
        raise ConfigError(f"{name} is not a valid IPv4 CIDR: {value!r}") from exc


def parse_source_patches(raw: Any) -> Optional[tuple]:
    """
    Accepts a list of {"path", "pattern", "replacement"} mappings,
    or the same list as a JSON string (environment variables).
    """
    if raw is None or raw == "":
        return None

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"source_patches is not valid JSON: {exc}") from exc

    if not isinstance(raw, list):
        raise ConfigError("source_patches must be a list")

    patches = []
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigError(f"source patch must be an object, got {item!r}")
        try:
            patches.append(
                SourcePatch(
                    path=str(item["path"]),
                    pattern=str(item["pattern"]),
                    replacement=str(item.get("replacement", "")),
                )
            )
        except KeyError as exc:
            raise ConfigError(f"source patch is missing {exc.args[0]!r}: {item!r}") from exc

    return tuple(patches)


# -------------------------------------------------------
# Loading
# -------------------------------------------------------

# field -> environment variable
_ENV_VARS = {
    "project_name": "PROJECT_NAME",
    "account": "CDK_DEFAULT_ACCOUNT",
    "region": "CDK_DEFAULT_REGION",
    "vpc_cidr": "VPC_CIDR",
    "subnet_cidr_mask": "SUBNET_CIDR_MASK",
    "ssh_allowed_cidr": "SSH_ALLOWED_CIDR",
    "instance_type": "INSTANCE_TYPE",
    "root_volume_size": "ROOT_VOLUME_SIZE",
    "key_name": "KEY_NAME",
    "app_repo_url": "FLASK_APP_REPO_URL",
    "app_branch": "FLASK_APP_BRANCH",
    "app_entrypoint": "FLASK_APP_ENTRYPOINT",
    "app_port": "FLASK_APP_PORT",
    "health_check_path": "HEALTH_CHECK_PATH",
    "startup_wait_attempts": "STARTUP_WAIT_ATTEMPTS",
    "startup_wait_interval": "STARTUP_WAIT_INTERVAL",
    "health_check_attempts": "HEALTH_CHECK_ATTEMPTS",
    "health_check_interval": "HEALTH_CHECK_INTERVAL",
    "log_retention_days": "LOG_RETENTION_DAYS",
    "log_level": "LOG_LEVEL",
}

_INT_FIELDS = {
    "subnet_cidr_mask",
    "root_volume_size",
    "app_port",
    "startup_wait_attempts",
    "startup_wait_interval",
    "health_check_attempts",
    "health_check_interval",
    "log_retention_days",
}


def _lookup(node: Node, key: str, env_var: Optional[str] = None) -> Any:
    value = node.try_get_context(key)
    if value is None and env_var:
        value = os.environ.get(env_var)
    return value


def _to_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _read_public_key(node: Node) -> Optional[str]:
    material = _lookup(node, "public_key")
    if material:
        return str(material).strip()

    key_path = _lookup(node, "public_key_path", "PUBLIC_KEY_PATH")
    if not key_path:
        return None

    path = Path(key_path).expanduser()
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(f"cannot read public key file {path}: {exc}") from exc


def load_config(node: Node) -> DeploymentConfig:
    """
    Builds a validated DeploymentConfig from a CDK construct node
    (normally `app.node`).
    """
    values = {}

    log_level = _lookup(node, "log_level", "LOG_LEVEL")
    if log_level:
        try:
            set_log_level(log_level)
        except ValueError as exc:
            raise ConfigError(f"log_level: {exc}") from exc

    for key, env_var in _ENV_VARS.items():
        value = _lookup(node, key, env_var)
        if value is None or value == "":
            continue
        values[key] = _to_int(key, value) if key in _INT_FIELDS else str(value)

    if "log_level" in values:
        values["log_level"] = values["log_level"].strip().upper()

    values["public_key"] = _read_public_key(node)
    values["source_patches"] = parse_source_patches(
        _lookup(node, "source_patches", "FLASK_APP_PATCHES")
    )

    tags = node.try_get_context("tags")
    if tags is not None:
        if not isinstance(tags, dict):
            raise ConfigError("tags must be a mapping of tag name to value")
        values["tags"] = {str(k): str(v) for k, v in tags.items()}

    values.setdefault("app_repo_url", "")

    config = DeploymentConfig(**values).validate()

    logger.info(
        "Loaded config: project=%s region=%s instance_type=%s repo=%s@%s",
        config.project_name,
        config.region,
        config.instance_type,
        config.app_repo_url,
        config.app_branch,
    )
    return config
