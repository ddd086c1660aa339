"""
Configuration management for automationlab.

Precedence, lowest first:
1. Dataclass defaults
2. <AUTOMATIONLAB_HOME>/config.yaml (optional)
3. env_file named in the YAML, loaded into os.environ without overriding
4. Environment variables (AWS_REGION, WORKSPACE, STATE_BACKEND, ...)
5. Explicit overrides passed by the CLI
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from automationlab.errors import ConfigError
from automationlab import validation


STATE_BACKENDS = ("local", "s3")


@dataclass
class RetryPolicy:
    """
    Timing constants for locks, deletion retries and AWS waiters.

    Attributes:
        lock_timeout: Seconds to wait for a lock before giving up
        lock_poll_interval: Seconds between lock attempts
        lock_stale_after: Lock age in seconds after which it is reclaimed
        sg_delete_attempts: Attempts to delete a security group still in use
        sg_delete_backoff: Initial wait between security group attempts
        sg_delete_backoff_multiplier: Growth factor for that wait
        waiter_delay: Seconds between EC2 waiter polls
        waiter_max_attempts: Polls before an EC2 waiter gives up
        aws_max_attempts: botocore retry budget per API call
    """
    lock_timeout: float = 30.0
    lock_poll_interval: float = 1.0
    lock_stale_after: float = 30.0
    sg_delete_attempts: int = 5
    sg_delete_backoff: float = 10.0
    sg_delete_backoff_multiplier: float = 1.5
    waiter_delay: int = 15
    waiter_max_attempts: int = 40
    aws_max_attempts: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryPolicy":
        known = {f.name: f.type for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"Unknown retry setting: {key}")
            kwargs[key] = _number(key, value, int if known[key] is int else float)
        return cls(**kwargs)


@dataclass
class AutomationLabConfig:
    workspace: str = "default"
    state_dir: str = ".state"
    region: str = "us-east-1"
    profile: str = "default"

    state_backend: str = "local"
    state_s3_bucket: str = ""
    state_s3_prefix: str = "automationlab/state"

    project_tag: str = "AutomationLab"
    tag_key: str = "Project"
    name_prefix: str = "automationlab"

    security_group_name: str = ""
    security_group_description: str = "AutomationLab security group (SSH and HTTP)"
    ingress_cidr: str = "0.0.0.0/0"
    ingress_ports: list[int] = field(default_factory=lambda: [22, 80])
    vpc_id: Optional[str] = None

    instance_type: str = "t3.micro"
    instance_name: str = ""
    key_name: str = ""
    key_dir: str = "."
    ami_ssm_parameter: str = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"

    bucket_prefix: str = ""
    sample_object_key: str = "welcome.txt"
    sample_object_body: str = "Welcome to AutomationLab!\n"

    auto_approve: bool = False
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if self.state_backend not in STATE_BACKENDS:
            raise ConfigError(
                f"state_backend must be one of {', '.join(STATE_BACKENDS)} (got {self.state_backend!r})"
            )
        self.security_group_name = self.security_group_name or f"{self.name_prefix}-sg"
        self.instance_name = self.instance_name or f"{self.name_prefix}-instance"
        self.key_name = self.key_name or f"{self.name_prefix}-key"
        self.bucket_prefix = self.bucket_prefix or f"{self.name_prefix}-bucket"

    @property
    def state_file(self) -> Path:
        return Path(self.state_dir) / f"{self.workspace}.json"

    @property
    def lock_file(self) -> Path:
        return Path(self.state_dir) / f"{self.workspace}.lock"

    @property
    def remote_enabled(self) -> bool:
        return self.state_backend == "s3"

    @property
    def remote_state_key(self) -> str:
        return f"{self.state_s3_prefix.strip('/')}/{self.workspace}.json"

    @property
    def remote_lock_key(self) -> str:
        return f"{self.state_s3_prefix.strip('/')}/{self.workspace}.lock"

    def validate(self) -> None:
        """Validate user-supplied names before any AWS call is made."""
        validation.validate_workspace_name(self.workspace)
        validation.validate_region(self.region)
        validation.validate_security_group_name(self.security_group_name)
        validation.validate_key_pair_name(self.key_name)
        validation.validate_instance_type(self.instance_type)
        validation.validate_cidr(self.ingress_cidr)
        for port in self.ingress_ports:
            validation.validate_port(port)
        if self.vpc_id:
            validation.validate_vpc_id(self.vpc_id)
        if self.state_s3_bucket:
            validation.validate_bucket_name(self.state_s3_bucket)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# Environment variable -> (field, converter)
ENV_OVERRIDES = {
    "AWS_REGION": ("region", str),
    "AWS_PROFILE": ("profile", str),
    "WORKSPACE": ("workspace", str),
    "STATE_DIR": ("state_dir", str),
    "STATE_BACKEND": ("state_backend", str),
    "STATE_S3_BUCKET": ("state_s3_bucket", str),
    "PROJECT_TAG": ("project_tag", str),
    "NAME_PREFIX": ("name_prefix", str),
    "INSTANCE_TYPE": ("instance_type", str),
    "AUTO_APPROVE": ("auto_approve", "bool"),
    "LOG_LEVEL": ("log_level", str),
}

RETRY_ENV_OVERRIDES = {
    "STATE_LOCK_TIMEOUT": "lock_timeout",
    "STATE_LOCK_STALE_AFTER": "lock_stale_after",
}


def get_automationlab_home() -> Path:
    """Return the config directory: $AUTOMATIONLAB_HOME or ~/.config/automationlab."""
    home = os.environ.get("AUTOMATIONLAB_HOME")
    if home:
        return Path(home)
    return Path("~/.config/automationlab").expanduser()


def _number(name: str, value: Any, kind=float):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number (got {value!r})")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    return data


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> AutomationLabConfig:
    """
    Load configuration from config.yaml, the environment and CLI overrides.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml;
            a missing file means defaults only.
        overrides: Values that win over everything else (None values ignored)

    Returns:
        AutomationLabConfig instance

    Raises:
        ConfigError: If the file or any value is invalid
    """
    if config_path is None:
        config_path = get_automationlab_home() / "config.yaml"

    data: dict[str, Any] = _read_yaml(config_path) if config_path.exists() else {}

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    retry_data = dict(data.pop("retry", None) or {})

    known = {f.name for f in fields(AutomationLabConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown config keys in {config_path}: {', '.join(sorted(unknown))}")

    for env_name, (field_name, kind) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field_name] = _as_bool(value) if kind == "bool" else value
    for env_name, field_name in RETRY_ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            retry_data[field_name] = value

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    if "auto_approve" in data:
        data["auto_approve"] = _as_bool(data["auto_approve"])
    if "ingress_ports" in data:
        data["ingress_ports"] = [int(_number("ingress_ports", p, int)) for p in data["ingress_ports"]]

    return AutomationLabConfig(retry=RetryPolicy.from_dict(retry_data), **data)
