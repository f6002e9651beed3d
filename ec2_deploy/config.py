"""Run configuration and default values."""

import ipaddress
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError

from .errors import ConfigError

# --- Constants ---

# Ubuntu 22.04 LTS in ap-northeast-1 (Tokyo). Change along with the region.
DEFAULT_AMI_ID: str = "ami-0ac6fa9865c21266e"
DEFAULT_INSTANCE_TYPE: str = "t2.micro"
DEFAULT_REGION: str = "ap-northeast-1"
DEFAULT_SSH_USER: str = "ubuntu"
SECURITY_GROUP_PREFIX: str = "MyEC2DockerSG"
SECURITY_GROUP_DESCRIPTION: str = "Security group for EC2 with Docker"
INSTANCE_NAME_TAG: str = "ec2-docker-host"

# (protocol, port, cidr): SSH, HTTP and HTTPS open to the world
DEFAULT_INGRESS_RULES: List[Tuple[str, int, str]] = [
    ("tcp", 22, "0.0.0.0/0"),
    ("tcp", 80, "0.0.0.0/0"),
    ("tcp", 443, "0.0.0.0/0"),
]

RUNNING_TIMEOUT_SECONDS: int = 300
SSH_TIMEOUT_SECONDS: int = 300
SSH_INITIAL_DELAY_SECONDS: int = 30
SSH_CONNECT_TIMEOUT_SECONDS: int = 10
POLLING_INTERVAL_SECONDS: int = 5

DNS_TTL: int = 300
DNS_MAX_ATTEMPTS: int = 10
DNS_INTERVAL_SECONDS: int = 30

VERIFY_COMMAND: str = "docker --version"


def default_region() -> str:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or DEFAULT_REGION


@dataclass(frozen=True)
class IngressRule:
    """One inbound rule of a security group."""

    protocol: str
    port: int
    cidr: str = "0.0.0.0/0"

    def to_permission(self) -> dict:
        permission = {
            "IpProtocol": self.protocol,
            "FromPort": self.port,
            "ToPort": self.port,
        }
        if ipaddress.ip_network(self.cidr).version == 6:
            permission["Ipv6Ranges"] = [{"CidrIpv6": self.cidr}]
        else:
            permission["IpRanges"] = [{"CidrIp": self.cidr}]
        return permission


def default_ingress_rules() -> List[IngressRule]:
    return [IngressRule(protocol, port, cidr) for protocol, port, cidr in DEFAULT_INGRESS_RULES]


@dataclass(frozen=True)
class SshCredentials:
    """How to log in to the instance."""

    key_path: str
    username: str = DEFAULT_SSH_USER
    port: int = 22


@dataclass
class ProvisionerConfig:
    """
    Everything one provisioning run needs to know.

    Simple Explanation:
    Instead of hiding account details and file paths in global variables at
    the top of a script, we collect them in one object and hand it to the
    Provisioner. Two runs with two configs never step on each other.
    """

    key_name: str
    key_path: str
    image_id: str = DEFAULT_AMI_ID
    instance_type: str = DEFAULT_INSTANCE_TYPE
    region: str = field(default_factory=default_region)
    profile: Optional[str] = None
    vpc_id: Optional[str] = None
    subnet_id: Optional[str] = None
    security_group_id: Optional[str] = None
    disk_size_gib: Optional[int] = None
    ingress_rules: List[IngressRule] = field(default_factory=default_ingress_rules)
    ssh_user: str = DEFAULT_SSH_USER
    security_group_prefix: str = SECURITY_GROUP_PREFIX
    instance_name: str = INSTANCE_NAME_TAG
    running_timeout: float = RUNNING_TIMEOUT_SECONDS
    ssh_timeout: float = SSH_TIMEOUT_SECONDS
    ssh_initial_delay: float = SSH_INITIAL_DELAY_SECONDS
    ssh_connect_timeout: float = SSH_CONNECT_TIMEOUT_SECONDS
    poll_interval: float = POLLING_INTERVAL_SECONDS
    setup_script: Optional[str] = None
    verify_command: Optional[str] = VERIFY_COMMAND

    @property
    def credentials(self) -> SshCredentials:
        return SshCredentials(key_path=self.key_path, username=self.ssh_user)

    def validate(self) -> None:
        """Raises ConfigError for values that would only fail later, halfway through a run."""
        if not self.key_name:
            raise ConfigError("A key pair name is required")
        if not os.path.isfile(self.key_path):
            raise ConfigError(f"SSH key file not found: {self.key_path}")
        for name in ("running_timeout", "ssh_timeout", "poll_interval", "ssh_connect_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.ssh_initial_delay < 0:
            raise ConfigError(f"ssh_initial_delay must not be negative, got {self.ssh_initial_delay}")
        if self.disk_size_gib is not None and self.disk_size_gib < 1:
            raise ConfigError(f"disk_size_gib must be at least 1, got {self.disk_size_gib}")
        for rule in self.ingress_rules:
            _validate_rule(rule)


@dataclass
class DnsConfig:
    """Where the A record goes and how long to wait for it to show up."""

    hosted_zone_id: str
    domain_name: str
    ttl: int = DNS_TTL
    max_attempts: int = DNS_MAX_ATTEMPTS
    interval: float = DNS_INTERVAL_SECONDS
    region: str = field(default_factory=default_region)
    profile: Optional[str] = None

    def validate(self) -> None:
        if not self.hosted_zone_id:
            raise ConfigError("A hosted zone id is required")
        if not self.domain_name:
            raise ConfigError("A domain name is required")
        if self.ttl < 0:
            raise ConfigError(f"ttl must not be negative, got {self.ttl}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.interval < 0:
            raise ConfigError(f"interval must not be negative, got {self.interval}")


def _validate_rule(rule: IngressRule) -> None:
    if rule.protocol not in ("tcp", "udp", "icmp", "-1"):
        raise ConfigError(f"Unsupported protocol in ingress rule: {rule.protocol}")
    if not 0 <= rule.port <= 65535:
        raise ConfigError(f"Invalid port in ingress rule: {rule.port}")
    try:
        ipaddress.ip_network(rule.cidr)
    except ValueError as e:
        raise ConfigError(f"Invalid CIDR in ingress rule: {rule.cidr}") from e


def parse_ingress_rule(text: str) -> IngressRule:
    """Parses ``tcp:8080`` or ``tcp:8080:10.0.0.0/8`` into an IngressRule."""
    parts = text.split(":", 2)
    if len(parts) < 2:
        raise ConfigError(f"Ingress rule must look like PROTOCOL:PORT[:CIDR], got '{text}'")
    try:
        port = int(parts[1])
    except ValueError as e:
        raise ConfigError(f"Invalid port in ingress rule '{text}'") from e
    rule = IngressRule(parts[0].lower(), port, parts[2] if len(parts) == 3 else "0.0.0.0/0")
    _validate_rule(rule)
    return rule


def make_session(region: str, profile: Optional[str] = None) -> boto3.session.Session:
    """Creates the boto3 session every client of a run is built from."""
    try:
        return boto3.session.Session(region_name=region, profile_name=profile)
    except BotoCoreError as e:
        raise ConfigError(f"Could not create an AWS session: {e}") from e
