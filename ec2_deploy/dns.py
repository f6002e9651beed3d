"""
Route 53 record updates and DNS propagation checks.

Simple Explanation:
A domain name (like example.com) is only useful once it points at your
server's IP address. We ask Route 53 to create (or update) an 'A record' for
the domain, then keep looking the name up, the same way a browser would,
until the answer is the new IP.
"""

import logging
import socket
import time
from typing import Any, Callable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import PollTimeout, RecordUpdateFailed, ResolutionTimeout
from .polling import retry_attempts

logger = logging.getLogger(__name__)

# --- Constants ---
CHANGE_WAIT_DELAY_SECONDS: int = 10
CHANGE_WAIT_MAX_ATTEMPTS: int = 60


def system_resolver(name: str) -> List[str]:
    """IPv4 addresses the local resolver currently returns for ``name``."""
    _, _, addresses = socket.gethostbyname_ex(name)
    return addresses


def lookup_public_ip(ec2_client: Any, instance_id: str) -> str:
    """Public IPv4 address of an existing instance."""
    try:
        response = ec2_client.describe_instances(InstanceIds=[instance_id])
    except (ClientError, BotoCoreError) as e:
        raise RecordUpdateFailed(f"Could not look up instance: {e}", resource_id=instance_id) from e

    for reservation in response.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            if instance.get("PublicIpAddress"):
                logger.info(f"Instance {instance_id} has public IP {instance['PublicIpAddress']}")
                return instance["PublicIpAddress"]
    raise RecordUpdateFailed("Instance has no public IP address", resource_id=instance_id)


class DnsChecker:
    """Points a record at an address and waits for the change to be visible."""

    def __init__(self, route53_client: Any, resolver: Callable[[str], List[str]] = system_resolver,
                 sleep: Callable[[float], Any] = time.sleep):
        self.route53 = route53_client
        self.resolver = resolver
        self.sleep = sleep

    def check_hosted_zone(self, zone_id: str) -> List[str]:
        """
        Confirms the hosted zone exists and returns its name servers.

        The name servers are logged: if the registrar's delegation doesn't
        list these, the record will never resolve publicly.

        Raises:
            RecordUpdateFailed: If the zone doesn't exist or can't be read.
        """
        try:
            response = self.route53.get_hosted_zone(Id=zone_id)
        except ClientError as e:
            if e.response["Error"]["Code"] == "NoSuchHostedZone":
                raise RecordUpdateFailed("Hosted zone not found", resource_id=zone_id) from e
            raise RecordUpdateFailed(f"Could not read hosted zone: {e}", resource_id=zone_id) from e
        except BotoCoreError as e:
            raise RecordUpdateFailed(f"Could not read hosted zone: {e}", resource_id=zone_id) from e

        name_servers = sorted(response.get("DelegationSet", {}).get("NameServers", []))
        zone_name = response.get("HostedZone", {}).get("Name", zone_id)
        logger.info(f"Hosted zone {zone_name} is served by: {', '.join(name_servers) or '(none listed)'}")
        logger.info("Make sure your registrar lists the same name servers for the domain.")
        return name_servers

    def upsert_record(self, zone_id: str, name: str, record_type: str, value: str, ttl: int,
                      wait: bool = True) -> str:
        """
        Creates the record, or updates it if it already exists.

        Calling this twice with the same arguments is harmless: UPSERT leaves
        the record exactly as the first call did.

        Args:
            zone_id (str): Route 53 hosted zone id.
            name (str): Record name, e.g. 'example.com'.
            record_type (str): Record type, e.g. 'A'.
            value (str): Record value, e.g. the instance's public IP.
            ttl (int): Time to live, in seconds.
            wait (bool): Block until Route 53 reports the change as INSYNC.

        Returns:
            str: The Route 53 change id.

        Raises:
            RecordUpdateFailed: If Route 53 rejects the change or never applies it.
        """
        logger.info(f"Setting {record_type} record {name} -> {value} (TTL {ttl}) in zone {zone_id}...")
        change_batch = {
            "Comment": f"Add {record_type} record for {name}",
            "Changes": [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": name,
                        "Type": record_type,
                        "TTL": ttl,
                        "ResourceRecords": [{"Value": value}],
                    },
                }
            ],
        }
        try:
            response = self.route53.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch=change_batch)
        except (ClientError, BotoCoreError) as e:
            raise RecordUpdateFailed(f"Route 53 rejected the change for {name}: {e}", resource_id=zone_id) from e

        change_id = response["ChangeInfo"]["Id"]
        if wait:
            logger.info(f"⏳ Waiting for change {change_id} to reach all Route 53 name servers...")
            try:
                self.route53.get_waiter("resource_record_sets_changed").wait(
                    Id=change_id,
                    WaiterConfig={"Delay": CHANGE_WAIT_DELAY_SECONDS, "MaxAttempts": CHANGE_WAIT_MAX_ATTEMPTS},
                )
            except (ClientError, BotoCoreError) as e:
                raise RecordUpdateFailed(f"Change {change_id} was not applied: {e}", resource_id=zone_id) from e
        logger.info(f"✅ {record_type} record for {name} now points to {value}")
        return change_id

    def delete_record(self, zone_id: str, name: str, record_type: str, value: str, ttl: int) -> bool:
        """
        Removes the record. Returns False if it wasn't there (nothing to do).

        Route 53 only deletes a record when name, type, TTL and value all match.
        """
        change_batch = {
            "Comment": f"Remove {record_type} record for {name}",
            "Changes": [
                {
                    "Action": "DELETE",
                    "ResourceRecordSet": {
                        "Name": name,
                        "Type": record_type,
                        "TTL": ttl,
                        "ResourceRecords": [{"Value": value}],
                    },
                }
            ],
        }
        try:
            self.route53.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch=change_batch)
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidChangeBatch" and "not found" in str(e):
                logger.warning(f"{record_type} record {name} -> {value} not found. Nothing to delete.")
                return False
            raise RecordUpdateFailed(f"Could not delete {record_type} record {name}: {e}", resource_id=zone_id) from e
        except BotoCoreError as e:
            raise RecordUpdateFailed(f"Could not delete {record_type} record {name}: {e}", resource_id=zone_id) from e
        logger.info(f"✅ Deleted {record_type} record {name} -> {value}")
        return True

    def resolve(self, name: str) -> Optional[List[str]]:
        try:
            return sorted(self.resolver(name))
        except (socket.gaierror, socket.herror, OSError) as e:
            logger.debug(f"Lookup of {name} failed: {e}")
            return None

    def wait_for_resolution(self, name: str, expected: str, max_attempts: int, interval: float) -> bool:
        """
        Looks the name up until it resolves to ``expected``.

        Simple Explanation:
        DNS changes take a while to spread across the internet. We look the
        name up, and if the answer isn't our IP yet, we wait ``interval``
        seconds and try again, at most ``max_attempts`` times. The moment the
        answer is right we stop asking.

        Returns:
            bool: True as soon as the name resolves to exactly ``expected``.

        Raises:
            ResolutionTimeout: If it never did within ``max_attempts`` lookups.
        """
        last_answer = {"value": None}

        def check(attempt: int) -> bool:
            logger.info(f"Checking DNS for {name}... ({attempt}/{max_attempts})")
            answer = self.resolve(name)
            last_answer["value"] = answer
            if answer == [expected]:
                return True
            logger.info(f"⏳ {name} resolves to {answer or 'nothing'}, expecting {expected}")
            return False

        try:
            retry_attempts(check, max_attempts, interval, f"{name} to resolve to {expected}", sleep=self.sleep)
        except PollTimeout as e:
            raise ResolutionTimeout(
                f"{name} does not resolve to {expected} after {max_attempts} attempts "
                f"(currently: {last_answer['value'] or 'nothing'})",
                resource_id=name,
            ) from e

        logger.info(f"✅ {name} resolves to {expected}")
        return True
