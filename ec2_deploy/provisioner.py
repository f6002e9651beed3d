"""
==============================================================
 EC2 Docker Host Provisioner
==============================================================

What this module does:
----------------------
Creates one EC2 instance that is ready to run Docker containers:
1. Finds the network to use (the account's default VPC and subnet, unless told otherwise).
2. Creates a security group that lets SSH, HTTP and HTTPS traffic in.
3. Launches the instance with your key pair.
4. Waits until AWS reports it as 'running' and it has a public IP address.
5. Waits until it accepts SSH logins.
6. Copies a setup script to it (by default: install Docker) and runs it.

Every step either succeeds or raises an error naming the step and the last
resource it created. Nothing is deleted automatically when a later step
fails; the identifiers are reported so you can inspect or clean up by hand
(see ``ec2-deploy cleanup``).
"""

import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import paramiko
from botocore.exceptions import BotoCoreError, ClientError

from .config import SECURITY_GROUP_DESCRIPTION, IngressRule, ProvisionerConfig, SshCredentials
from .errors import (
    InstanceNotRunning,
    LaunchFailed,
    NetworkNotFound,
    PolicyCreationFailed,
    PollTimeout,
    ProvisionFailed,
    Unreachable,
)
from .polling import poll_until
from .remote import CommandOutput, RemoteSession, probe

logger = logging.getLogger(__name__)

# --- Constants ---

TERMINAL_STATES: Tuple[str, ...] = ("shutting-down", "terminated", "stopping", "stopped")
REMOTE_SCRIPT_PATH: str = "setup_instance.sh"

# Installs Docker CE and Compose from Docker's apt repository (Ubuntu).
DOCKER_INSTALL_SCRIPT: str = """#!/bin/bash
set -euo pipefail
export DEBIAN_FRONTEND=noninteractive
sudo apt-get update -y
sudo apt-get install -y ca-certificates curl gnupg
sudo install -m 0755 -d /etc/apt/keyrings
curl -fsSL https://download.docker.com/linux/ubuntu/gpg | sudo gpg --batch --yes --dearmor -o /etc/apt/keyrings/docker.gpg
sudo chmod a+r /etc/apt/keyrings/docker.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo "$VERSION_CODENAME") stable" | sudo tee /etc/apt/sources.list.d/docker.list > /dev/null
sudo apt-get update -y
sudo apt-get install -y docker-ce docker-ce-cli containerd.io docker-buildx-plugin docker-compose-plugin
sudo usermod -aG docker "$USER"
"""


@dataclass(frozen=True)
class NetworkContext:
    vpc_id: str
    subnet_id: str


@dataclass
class InstanceRecord:
    instance_id: str
    state: str
    public_ip: Optional[str] = None


@dataclass
class DeploymentRecord:
    """Identifiers produced so far in one run. Printed on success and on failure."""

    vpc_id: Optional[str] = None
    subnet_id: Optional[str] = None
    security_group_id: Optional[str] = None
    instance_id: Optional[str] = None
    instance_state: Optional[str] = None
    public_ip: Optional[str] = None
    verify_output: Optional[str] = None

    def rows(self) -> List[Tuple[str, str]]:
        labels = [
            ("Instance ID", self.instance_id),
            ("Public IP", self.public_ip),
            ("Instance State", self.instance_state),
            ("VPC ID", self.vpc_id),
            ("Subnet ID", self.subnet_id),
            ("Security Group ID", self.security_group_id),
            ("Verification", self.verify_output),
        ]
        return [(label, value) for label, value in labels if value]


def _error_code(e: Exception) -> str:
    # BotoCoreError has no response, use the class name
    response = getattr(e, "response", None) or {}
    return response.get("Error", {}).get("Code", type(e).__name__)


class Provisioner:
    """
    Drives one EC2 instance from "nothing" to "Docker installed".

    All AWS calls go through the EC2 client passed in, and all SSH work
    through ``probe_fn`` and ``session_factory``, so each piece can be
    replaced in tests. ``clock`` and ``sleep`` drive the waiting loops.
    """

    def __init__(
        self,
        config: ProvisionerConfig,
        ec2_client: Any,
        probe_fn: Callable[[str, SshCredentials, float], bool] = probe,
        session_factory: Callable[..., RemoteSession] = RemoteSession,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.config = config
        self.ec2 = ec2_client
        self.probe_fn = probe_fn
        self.session_factory = session_factory
        self.clock = clock
        self.sleep = sleep
        self.record = DeploymentRecord(
            vpc_id=config.vpc_id,
            subnet_id=config.subnet_id,
            security_group_id=config.security_group_id,
        )

    # --- Network ---

    def resolve_network(self, vpc_override: Optional[str] = None,
                        subnet_override: Optional[str] = None) -> NetworkContext:
        """
        Works out which VPC and subnet the instance goes into.

        Simple Explanation:
        Every AWS account comes with a ready-made 'default' network in each
        region. If you didn't name a network yourself, we ask AWS for that
        default one and its default subnet. If you gave both a VPC and a
        subnet, we trust you and use them as they are without asking AWS.

        Args:
            vpc_override (Optional[str]): VPC id to use instead of the default VPC.
            subnet_override (Optional[str]): Subnet id to use instead of looking one up.

        Returns:
            NetworkContext: The VPC and subnet ids.

        Raises:
            NetworkNotFound: If no suitable VPC or subnet exists, or the lookup fails.
        """
        if vpc_override and subnet_override:
            network = NetworkContext(vpc_override, subnet_override)
        else:
            try:
                if subnet_override:
                    network = NetworkContext(self._vpc_of_subnet(subnet_override), subnet_override)
                elif vpc_override:
                    network = NetworkContext(vpc_override, self._find_subnet(vpc_override, default_only=False))
                else:
                    vpc_id = self._find_default_vpc()
                    network = NetworkContext(vpc_id, self._find_subnet(vpc_id, default_only=True))
            except (ClientError, BotoCoreError) as e:
                raise NetworkNotFound(f"Network lookup failed: {e}",
                                      resource_id=vpc_override or subnet_override) from e

        self.record.vpc_id = network.vpc_id
        self.record.subnet_id = network.subnet_id
        logger.info(f"Using VPC {network.vpc_id}, subnet {network.subnet_id}")
        return network

    def _find_default_vpc(self) -> str:
        response = self.ec2.describe_vpcs(Filters=[{"Name": "isDefault", "Values": ["true"]}])
        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise NetworkNotFound("No default VPC found in this region")
        return vpcs[0]["VpcId"]

    def _find_subnet(self, vpc_id: str, default_only: bool) -> str:
        filters: List[Dict[str, Any]] = [{"Name": "vpc-id", "Values": [vpc_id]}]
        response = self.ec2.describe_subnets(
            Filters=filters + [{"Name": "default-for-az", "Values": ["true"]}]
        )
        subnets = response.get("Subnets", [])
        if not subnets and not default_only:
            subnets = self.ec2.describe_subnets(Filters=filters).get("Subnets", [])
        if not subnets:
            raise NetworkNotFound(f"No subnet found in VPC {vpc_id}", resource_id=vpc_id)
        return subnets[0]["SubnetId"]

    def _vpc_of_subnet(self, subnet_id: str) -> str:
        subnets = self.ec2.describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        if not subnets:
            raise NetworkNotFound(f"Subnet {subnet_id} not found", resource_id=subnet_id)
        return subnets[0]["VpcId"]

    # --- Security group ---

    def create_security_group(self, network: NetworkContext, rules: List[IngressRule]) -> str:
        """
        Creates a fresh security group in the network's VPC and opens the given ports.

        The group name carries a timestamp so repeated runs never collide. If
        this provisioner already holds a group id (from the config or an
        earlier call) that group is reused and nothing is created.

        Returns:
            str: The security group id.

        Raises:
            PolicyCreationFailed: If AWS rejects the group or any rule. Rules
                applied before the failure are left in place.
        """
        if self.record.security_group_id:
            logger.info(f"Reusing security group {self.record.security_group_id}")
            return self.record.security_group_id

        group_name = f"{self.config.security_group_prefix}-{datetime.now().strftime('%Y%m%d%H%M%S')}"
        logger.info(f"Creating security group {group_name} in {network.vpc_id}...")
        try:
            response = self.ec2.create_security_group(
                GroupName=group_name,
                Description=SECURITY_GROUP_DESCRIPTION,
                VpcId=network.vpc_id,
            )
        except (ClientError, BotoCoreError) as e:
            raise PolicyCreationFailed(f"Could not create security group {group_name}: {e}",
                                       resource_id=network.vpc_id) from e

        group_id = response.get("GroupId")
        if not group_id:
            raise PolicyCreationFailed(f"No group id returned for {group_name}", resource_id=network.vpc_id)
        self.record.security_group_id = group_id

        for rule in rules:
            try:
                self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=[rule.to_permission()])
            except (ClientError, BotoCoreError) as e:
                raise PolicyCreationFailed(
                    f"Could not allow {rule.protocol}/{rule.port} from {rule.cidr}: {e}", resource_id=group_id
                ) from e
            logger.info(f"Allowed {rule.protocol}/{rule.port} from {rule.cidr}")

        logger.info(f"✅ Security group ready: {group_id}")
        return group_id

    # --- Instance ---

    def launch_instance(self, image_id: str, instance_type: str, key_name: str, network: NetworkContext,
                        group_id: str, disk_size_gib: Optional[int] = None) -> InstanceRecord:
        """
        Sends exactly one run_instances request for one instance.

        If this provisioner already launched an instance it is returned as is.
        With ``disk_size_gib`` the root volume is resized; the device name
        comes from the image, since it differs between AMIs.

        Raises:
            LaunchFailed: On an AWS error or an empty response.
        """
        if self.record.instance_id:
            logger.info(f"Instance {self.record.instance_id} already launched, not launching another")
            return InstanceRecord(self.record.instance_id, self.record.instance_state or "pending",
                                  self.record.public_ip)

        params: Dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": instance_type,
            "KeyName": key_name,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": network.subnet_id,
            "SecurityGroupIds": [group_id],
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": [{"Key": "Name", "Value": self.config.instance_name}]}
            ],
        }

        logger.info(f"Launching {instance_type} instance from {image_id}...")
        try:
            if disk_size_gib:
                params["BlockDeviceMappings"] = [
                    {
                        "DeviceName": self._root_device_name(image_id),
                        "Ebs": {"VolumeSize": disk_size_gib, "VolumeType": "gp3", "DeleteOnTermination": True},
                    }
                ]
            response = self.ec2.run_instances(**params)
        except (ClientError, BotoCoreError) as e:
            raise LaunchFailed(f"run_instances failed ({_error_code(e)}): {e}", resource_id=group_id) from e

        instances = response.get("Instances") or []
        if not instances or not instances[0].get("InstanceId"):
            raise LaunchFailed("run_instances returned no instance", resource_id=group_id)

        data = instances[0]
        instance = InstanceRecord(
            instance_id=data["InstanceId"],
            state=data.get("State", {}).get("Name", "pending"),
            public_ip=data.get("PublicIpAddress"),
        )
        self.record.instance_id = instance.instance_id
        self.record.instance_state = instance.state
        logger.info(f"Instance ID: {instance.instance_id}")
        return instance

    def _root_device_name(self, image_id: str) -> str:
        images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
        if not images or not images[0].get("RootDeviceName"):
            raise LaunchFailed(f"Image {image_id} not found or has no root device", resource_id=image_id)
        return images[0]["RootDeviceName"]

    def describe_instance(self, instance_id: str) -> Optional[InstanceRecord]:
        """Current state of an instance, or None while AWS doesn't know it yet."""
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in response.get("Reservations", []):
            for data in reservation.get("Instances", []):
                return InstanceRecord(
                    instance_id=data["InstanceId"],
                    state=data.get("State", {}).get("Name", "unknown"),
                    public_ip=data.get("PublicIpAddress"),
                )
        return None

    def wait_until_running(self, instance_id: str, timeout: float, poll_interval: Optional[float] = None) -> InstanceRecord:
        """
        Waits until AWS reports the instance as 'running'.

        Simple Explanation:
        A new instance starts in the 'pending' state while AWS finds it a
        home and boots it. We check its state every few seconds. If it turns
        'running' we're done; if it goes somewhere it can't come back from
        ('terminated', 'stopped'...) or the time is up, we give up.

        Args:
            instance_id (str): The instance to watch.
            timeout (float): Seconds to wait. Still not running at exactly this point counts as failure.
            poll_interval (Optional[float]): Seconds between checks, defaults to the config's interval.

        Returns:
            InstanceRecord: The running instance with its public IP.

        Raises:
            InstanceNotRunning: On timeout, a terminal state, a failed lookup or a missing public IP.
        """
        interval = poll_interval if poll_interval is not None else self.config.poll_interval
        start = self.clock()
        last_state = {"state": "unknown"}

        def check() -> Optional[InstanceRecord]:
            try:
                instance = self.describe_instance(instance_id)
            except (ClientError, BotoCoreError) as e:
                raise InstanceNotRunning(f"Could not read instance state: {e}", resource_id=instance_id) from e
            if instance is None:
                return None
            last_state["state"] = instance.state
            self.record.instance_state = instance.state
            if instance.state == "running":
                return instance
            if instance.state in TERMINAL_STATES:
                raise InstanceNotRunning(f"Instance entered state '{instance.state}'", resource_id=instance_id)
            logger.info(f"⏳ Instance {instance_id} is '{instance.state}' ({int(self.clock() - start)}s elapsed)")
            return None

        logger.info(f"Waiting for instance {instance_id} to be running...")
        try:
            instance = poll_until(check, timeout, interval, f"instance {instance_id} to run",
                                  clock=self.clock, sleep=self.sleep)
        except PollTimeout as e:
            raise InstanceNotRunning(
                f"Instance still '{last_state['state']}' after {int(timeout)}s", resource_id=instance_id
            ) from e

        if not instance.public_ip:
            raise InstanceNotRunning("Instance is running but has no public IPv4 address", resource_id=instance_id)

        self.record.public_ip = instance.public_ip
        logger.info(f"✅ Instance {instance_id} is running at {instance.public_ip}")
        return instance

    # --- SSH ---

    def wait_until_reachable(self, address: str, timeout: float, poll_interval: Optional[float] = None,
                             initial_delay: float = 0, credentials: Optional[SshCredentials] = None) -> None:
        """
        Waits until the instance accepts an SSH login.

        'running' only means the machine is switched on; the SSH server needs
        a little longer. We optionally sit out ``initial_delay`` seconds
        first, then try to log in straight away and every ``poll_interval``
        seconds after that. The initial delay counts towards ``timeout``.

        Raises:
            Unreachable: If no login succeeds within ``timeout`` seconds.
        """
        interval = poll_interval if poll_interval is not None else self.config.poll_interval
        creds = credentials or self.config.credentials
        remaining = timeout

        if initial_delay:
            logger.info(f"Giving SSH {int(initial_delay)}s to come up on {address}...")
            started = self.clock()
            self.sleep(min(initial_delay, timeout))
            remaining = timeout - (self.clock() - started)

        logger.info(f"Checking SSH access to {creds.username}@{address}...")
        try:
            poll_until(
                lambda: self.probe_fn(address, creds, self.config.ssh_connect_timeout),
                remaining,
                interval,
                f"SSH on {address}",
                clock=self.clock,
                sleep=self.sleep,
            )
        except PollTimeout as e:
            raise Unreachable(f"No SSH login possible within {int(timeout)}s", resource_id=address) from e
        logger.info(f"✅ SSH is reachable on {address}")

    def provision(self, address: str, credentials: Optional[SshCredentials] = None,
                  script: Optional[str] = None) -> CommandOutput:
        """
        Copies a setup script to the instance and runs it with bash.

        Args:
            address (str): Public IP or host name of the instance.
            credentials (Optional[SshCredentials]): Defaults to the config's key and user.
            script (Optional[str]): Script content, defaults to the Docker installer.

        Returns:
            CommandOutput: What the script printed.

        Raises:
            ProvisionFailed: If the connection fails or the script exits non-zero.
                The captured stderr is kept on the error.
        """
        creds = credentials or self.config.credentials
        script = script or self.config.setup_script or DOCKER_INSTALL_SCRIPT
        logger.info(f"Copying setup script to {address} and running it (this can take a few minutes)...")
        output = self._run_remote(address, creds, f"bash {REMOTE_SCRIPT_PATH}", upload=script)
        logger.info(f"✅ Setup script finished on {address}")
        return output

    def verify(self, address: str, command: str, credentials: Optional[SshCredentials] = None) -> CommandOutput:
        """Runs a check command (e.g. ``docker --version``) and fails if it exits non-zero."""
        output = self._run_remote(address, credentials or self.config.credentials, command)
        logger.info(f"✅ '{command}' -> {output.stdout.strip()}")
        return output

    def _run_remote(self, address: str, creds: SshCredentials, command: str,
                    upload: Optional[str] = None) -> CommandOutput:
        try:
            with self.session_factory(address, creds, connect_timeout=self.config.ssh_connect_timeout) as session:
                if upload is not None:
                    session.upload(upload, REMOTE_SCRIPT_PATH)
                output = session.execute(command)
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise ProvisionFailed(f"SSH error while running '{command}': {e}", resource_id=address) from e

        if not output.ok:
            logger.error(f"'{command}' exited with status {output.exit_status}:\n{output.stderr.strip()}")
            raise ProvisionFailed(
                f"'{command}' exited with status {output.exit_status}", resource_id=address, output=output
            )
        return output

    # --- Whole run ---

    def run(self) -> DeploymentRecord:
        """
        Runs every stage in order and returns the identifiers it produced.

        Stops at the first failure. ``self.record`` always holds whatever was
        created up to that point.
        """
        cfg = self.config
        network = self.resolve_network(cfg.vpc_id, cfg.subnet_id)
        group_id = self.create_security_group(network, cfg.ingress_rules)
        instance = self.launch_instance(cfg.image_id, cfg.instance_type, cfg.key_name, network, group_id,
                                        cfg.disk_size_gib)
        instance = self.wait_until_running(instance.instance_id, cfg.running_timeout, cfg.poll_interval)
        self.wait_until_reachable(instance.public_ip, cfg.ssh_timeout, cfg.poll_interval,
                                  initial_delay=cfg.ssh_initial_delay)
        self.provision(instance.public_ip, cfg.credentials, cfg.setup_script)
        if cfg.verify_command:
            output = self.verify(instance.public_ip, cfg.verify_command)
            self.record.verify_output = output.stdout.strip()
        return self.record
