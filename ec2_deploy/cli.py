"""
==============================================================
 ec2-deploy: EC2 Docker host provisioning from the command line
==============================================================

Subcommands:
------------
- launch:  create a security group and an EC2 instance, wait for it, install Docker.
- dns:     point a Route 53 A record at an IP (or an instance) and wait for it to resolve.
- deploy:  copy a Docker Compose project to the instance and start it.
- cleanup: terminate the instance, delete its security group and DNS record.

Every subcommand exits with 0 on success and 1 on failure. On failure the
identifiers created so far are printed, so you can clean up by hand.

Requirements:
-------------
- AWS credentials configured (``aws configure`` or environment variables) with
  EC2, Route 53 and STS permissions.
- An existing EC2 key pair and its private key file (``.pem``).
"""

import argparse
import logging
import os
import sys
from typing import List, Optional, Tuple

import paramiko
from botocore.exceptions import BotoCoreError, ClientError

from . import __version__
from .cleanup import confirm_deletion, delete_security_group, terminate_instance
from .config import (
    DEFAULT_AMI_ID,
    DEFAULT_INSTANCE_TYPE,
    DEFAULT_SSH_USER,
    DNS_INTERVAL_SECONDS,
    DNS_MAX_ATTEMPTS,
    DNS_TTL,
    POLLING_INTERVAL_SECONDS,
    RUNNING_TIMEOUT_SECONDS,
    SSH_INITIAL_DELAY_SECONDS,
    SSH_TIMEOUT_SECONDS,
    VERIFY_COMMAND,
    DnsConfig,
    ProvisionerConfig,
    SshCredentials,
    default_ingress_rules,
    default_region,
    make_session,
    parse_ingress_rule,
)
from .deploy import deploy_project, find_compose_file
from .dns import DnsChecker, lookup_public_ip
from .errors import ConfigError, DeploymentError, ProvisionFailed
from .provisioner import Provisioner
from .remote import RemoteSession

logger = logging.getLogger(__name__)

LOG_FORMAT: str = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    # boto and paramiko are very chatty at DEBUG
    for name in ("botocore", "boto3", "urllib3", "paramiko"):
        logging.getLogger(name).setLevel(logging.WARNING)


def verify_credentials(session) -> str:
    """Fails early if AWS credentials are missing or rejected. Returns the account id."""
    try:
        identity = session.client("sts").get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        raise ConfigError(f"AWS credentials are not usable: {e}") from e
    logger.info(f"Using AWS account {identity.get('Account')} ({identity.get('Arn')})")
    return identity.get("Account", "")


def print_summary(title: str, rows: List[Tuple[str, str]], status: str) -> None:
    print("\n" + "=" * 60)
    print(f"          {title}")
    print("=" * 60)
    print(f" {'Status':<22}{status}")
    print("-" * 60)
    for label, value in rows:
        print(f" {label + ':':<22}{value}")
    print("=" * 60 + "\n")


def _ingress_rule(text: str):
    try:
        return parse_ingress_rule(text)
    except ConfigError as e:
        raise argparse.ArgumentTypeError(e.message)


def _read_file(path: str) -> str:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise ConfigError(f"Could not read {path}: {e}") from e


# --- Subcommands ---

def cmd_launch(args: argparse.Namespace) -> int:
    config = ProvisionerConfig(
        key_name=args.key_name,
        key_path=args.key_path,
        image_id=args.image_id,
        instance_type=args.instance_type,
        region=args.region,
        profile=args.profile,
        vpc_id=args.vpc_id,
        subnet_id=args.subnet_id,
        security_group_id=args.security_group_id,
        disk_size_gib=args.disk_size,
        ingress_rules=args.ingress or default_ingress_rules(),
        ssh_user=args.ssh_user,
        running_timeout=args.running_timeout,
        ssh_timeout=args.ssh_timeout,
        ssh_initial_delay=args.ssh_delay,
        poll_interval=args.poll_interval,
        setup_script=_read_file(args.setup_script) if args.setup_script else None,
        verify_command=args.verify_command or None,
    )
    config.validate()

    session = make_session(config.region, config.profile)
    verify_credentials(session)
    provisioner = Provisioner(config, session.client("ec2"))

    try:
        record = provisioner.run()
    except (DeploymentError, KeyboardInterrupt):
        print_summary("DEPLOYMENT SUMMARY", provisioner.record.rows(), "FAILED (resources below were NOT deleted)")
        raise

    print_summary("DEPLOYMENT SUMMARY", record.rows(), "SUCCESS")
    print(f" Log in with: ssh -i {config.key_path} {config.ssh_user}@{record.public_ip}\n")
    return 0


def cmd_dns(args: argparse.Namespace) -> int:
    config = DnsConfig(
        hosted_zone_id=args.hosted_zone_id,
        domain_name=args.domain,
        ttl=args.ttl,
        max_attempts=args.max_attempts,
        interval=args.interval,
        region=args.region,
        profile=args.profile,
    )
    config.validate()

    session = make_session(config.region, config.profile)
    verify_credentials(session)
    checker = DnsChecker(session.client("route53"))

    checker.check_hosted_zone(config.hosted_zone_id)
    address = args.ip or lookup_public_ip(session.client("ec2"), args.instance_id)
    checker.upsert_record(config.hosted_zone_id, config.domain_name, "A", address, config.ttl)
    checker.wait_for_resolution(config.domain_name, address, config.max_attempts, config.interval)

    print_summary("DNS SUMMARY", [("Domain", config.domain_name), ("Address", address),
                                  ("Hosted Zone", config.hosted_zone_id)], "SUCCESS")
    return 0


def cmd_deploy(args: argparse.Namespace) -> int:
    credentials = SshCredentials(key_path=args.key_path, username=args.ssh_user)
    find_compose_file(args.project_dir)
    remote_dir = args.remote_dir or os.path.basename(os.path.abspath(args.project_dir))
    if not remote_dir:
        raise ConfigError(f"Cannot name a remote directory after {args.project_dir}, pass --remote-dir")
    try:
        with RemoteSession(args.host, credentials) as session:
            deploy_project(session, args.project_dir, remote_dir)
    except (paramiko.SSHException, OSError) as e:
        raise ProvisionFailed(f"SSH error: {e}", resource_id=args.host, stage="deploy") from e

    print(f"\nApplication deployed. It should be available at http://{args.host}\n")
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    if not args.instance_id and not args.security_group_id and not args.domain:
        raise ConfigError("Nothing to clean up: pass --instance-id, --security-group-id and/or --domain")
    if args.domain and not (args.hosted_zone_id and args.ip):
        raise ConfigError("Deleting a DNS record needs --hosted-zone-id, --domain and --ip")

    if not args.yes and not confirm_deletion(args.instance_id, args.security_group_id, args.domain):
        return 0

    session = make_session(args.region, args.profile)
    verify_credentials(session)
    ec2 = session.client("ec2")
    rows: List[Tuple[str, str]] = []

    if args.domain:
        deleted = DnsChecker(session.client("route53")).delete_record(
            args.hosted_zone_id, args.domain, "A", args.ip, args.ttl)
        rows.append((f"DNS ({args.domain})", "DELETED" if deleted else "NOT FOUND"))
    if args.instance_id:
        deleted = terminate_instance(ec2, args.instance_id)
        rows.append((f"Instance ({args.instance_id})", "DELETED" if deleted else "NOT FOUND"))
    if args.security_group_id:
        deleted = delete_security_group(ec2, args.security_group_id)
        rows.append((f"SG ({args.security_group_id})", "DELETED" if deleted else "NOT FOUND"))

    print_summary("CLEANUP SUMMARY", rows, "SUCCESS")
    return 0


# --- Argument parsing ---

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ec2-deploy", description="Provision an EC2 Docker host and point DNS at it.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")

    aws = argparse.ArgumentParser(add_help=False)
    aws.add_argument("--region", default=default_region(), help="AWS region (default: $AWS_REGION or %(default)s)")
    aws.add_argument("--profile", default=None, help="AWS credentials profile")

    subparsers = parser.add_subparsers(dest="command", required=True)

    launch = subparsers.add_parser("launch", parents=[aws], help="Create an EC2 instance and install Docker")
    launch.add_argument("--key-name", required=True, help="Name of an existing EC2 key pair")
    launch.add_argument("--key-path", required=True, help="Private key file for that key pair")
    launch.add_argument("--image-id", default=DEFAULT_AMI_ID, help="AMI id (default: %(default)s)")
    launch.add_argument("--instance-type", default=DEFAULT_INSTANCE_TYPE, help="Instance type (default: %(default)s)")
    launch.add_argument("--vpc-id", help="Use this VPC instead of the default VPC")
    launch.add_argument("--subnet-id", help="Use this subnet instead of looking one up")
    launch.add_argument("--security-group-id", help="Use this security group instead of creating one")
    launch.add_argument("--disk-size", type=int, help="Root volume size in GiB")
    launch.add_argument("--ingress", action="append", type=_ingress_rule, metavar="PROTO:PORT[:CIDR]",
                        help="Inbound rule, repeatable (default: tcp:22, tcp:80, tcp:443 from anywhere)")
    launch.add_argument("--ssh-user", default=DEFAULT_SSH_USER, help="Login user (default: %(default)s)")
    launch.add_argument("--running-timeout", type=float, default=RUNNING_TIMEOUT_SECONDS,
                        help="Seconds to wait for 'running' (default: %(default)s)")
    launch.add_argument("--ssh-timeout", type=float, default=SSH_TIMEOUT_SECONDS,
                        help="Seconds to wait for SSH (default: %(default)s)")
    launch.add_argument("--ssh-delay", type=float, default=SSH_INITIAL_DELAY_SECONDS,
                        help="Seconds to wait before the first SSH attempt (default: %(default)s)")
    launch.add_argument("--poll-interval", type=float, default=POLLING_INTERVAL_SECONDS,
                        help="Seconds between checks (default: %(default)s)")
    launch.add_argument("--setup-script", help="Script to run on the instance instead of the Docker installer")
    launch.add_argument("--verify-command", default=VERIFY_COMMAND,
                        help="Command that must succeed after setup, '' to skip (default: %(default)s)")
    launch.set_defaults(func=cmd_launch)

    dns = subparsers.add_parser("dns", parents=[aws], help="Point a Route 53 A record at an instance")
    dns.add_argument("--hosted-zone-id", required=True, help="Route 53 hosted zone id")
    dns.add_argument("--domain", required=True, help="Record name, e.g. example.com")
    target = dns.add_mutually_exclusive_group(required=True)
    target.add_argument("--ip", help="Address to point the record at")
    target.add_argument("--instance-id", help="Use this instance's public IP")
    dns.add_argument("--ttl", type=int, default=DNS_TTL, help="Record TTL (default: %(default)s)")
    dns.add_argument("--max-attempts", type=int, default=DNS_MAX_ATTEMPTS,
                     help="DNS lookups before giving up (default: %(default)s)")
    dns.add_argument("--interval", type=float, default=DNS_INTERVAL_SECONDS,
                     help="Seconds between lookups (default: %(default)s)")
    dns.set_defaults(func=cmd_dns)

    deploy = subparsers.add_parser("deploy", help="Copy a Docker Compose project to the instance and start it")
    deploy.add_argument("--host", required=True, help="Instance public IP or host name")
    deploy.add_argument("--key-path", required=True, help="Private key file")
    deploy.add_argument("--ssh-user", default=DEFAULT_SSH_USER, help="Login user (default: %(default)s)")
    deploy.add_argument("--project-dir", required=True, help="Local project directory")
    deploy.add_argument("--remote-dir", help="Directory on the instance (default: project directory name)")
    deploy.set_defaults(func=cmd_deploy)

    cleanup = subparsers.add_parser("cleanup", parents=[aws], help="Delete resources a launch created")
    cleanup.add_argument("--instance-id", help="Instance to terminate")
    cleanup.add_argument("--security-group-id", help="Security group to delete")
    cleanup.add_argument("--hosted-zone-id", help="Hosted zone of the record to delete")
    cleanup.add_argument("--domain", help="A record to delete")
    cleanup.add_argument("--ip", help="Current value of the A record")
    cleanup.add_argument("--ttl", type=int, default=DNS_TTL, help="Current TTL of the A record (default: %(default)s)")
    cleanup.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")
    cleanup.set_defaults(func=cmd_cleanup)

    return parser


def run(argv: Optional[List[str]] = None) -> int:
    """Parses arguments, runs one subcommand and returns the exit status."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        return args.func(args)
    except DeploymentError as e:
        logger.error(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user. Resources created so far were NOT deleted.")
        return 130


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
