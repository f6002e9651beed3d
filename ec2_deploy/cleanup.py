"""
========================================================
 EC2 Instance & Security Group Cleanup
========================================================

Provisioning never deletes anything on its own, even when a step fails. This
module removes what a run reported, in the right order:
1. Terminate the instance and wait until AWS says it's gone.
2. Delete the security group. AWS refuses while the instance's network
   interface is still attached, so we retry for a while.
3. Optionally remove the DNS record that pointed at the instance.

Resources that are already gone count as deleted.
"""

import logging
import time
from typing import Any, Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from .errors import CleanupFailed, PollTimeout
from .polling import poll_until

logger = logging.getLogger(__name__)

# --- Constants ---
POLLING_INTERVAL_SECONDS: int = 10
SECURITY_GROUP_TIMEOUT_SECONDS: int = 300
TERMINATE_WAIT_DELAY_SECONDS: int = 15
TERMINATE_WAIT_MAX_ATTEMPTS: int = 40


def confirm_deletion(instance_id: Optional[str], security_group_id: Optional[str],
                     record_name: Optional[str] = None, input_fn: Callable[[str], str] = input) -> bool:
    """
    Asks the user to type 'yes' before anything is deleted.

    Simple Explanation:
    This is the safety check. It lists what is about to be removed and only
    carries on if you type 'yes'. Anything else (or closing the input) cancels.
    """
    print("\n" + "=" * 60)
    print("!!! WARNING: RESOURCE DELETION !!!")
    print("=" * 60)
    print("You are about to permanently delete the following AWS resources:")
    print(f"  - EC2 Instance:       {instance_id or '(none)'}")
    print(f"  - Security Group:     {security_group_id or '(none)'}")
    if record_name:
        print(f"  - DNS Record:         {record_name}")
    print("\nTHIS ACTION CANNOT BE UNDONE.")
    print("=" * 60)

    try:
        confirmation = input_fn("Type 'yes' to confirm deletion: ").strip().lower()
    except EOFError:
        logger.warning("Input stream closed. Deletion cancelled.")
        return False
    if confirmation == "yes":
        logger.info("User confirmed deletion.")
        return True
    logger.warning("Deletion cancelled by user.")
    return False


def terminate_instance(ec2_client: Any, instance_id: str) -> bool:
    """
    Terminates an instance and waits until it is 'terminated'.

    Returns:
        bool: True when terminated, False if it didn't exist in the first place.

    Raises:
        CleanupFailed: On any other AWS error or if the wait times out.
    """
    logger.info(f"--- Terminating EC2 instance {instance_id} ---")
    try:
        ec2_client.terminate_instances(InstanceIds=[instance_id])
        logger.info(f"Terminate request sent for {instance_id}. Waiting for confirmation...")
        ec2_client.get_waiter("instance_terminated").wait(
            InstanceIds=[instance_id],
            WaiterConfig={"Delay": TERMINATE_WAIT_DELAY_SECONDS, "MaxAttempts": TERMINATE_WAIT_MAX_ATTEMPTS},
        )
    except WaiterError as e:
        raise CleanupFailed(f"Error or timeout waiting for termination: {e}", resource_id=instance_id) from e
    except ClientError as e:
        if e.response["Error"]["Code"] == "InvalidInstanceID.NotFound":
            logger.warning(f"Instance {instance_id} not found. Assuming it is already deleted.")
            return False
        raise CleanupFailed(f"Could not terminate instance: {e}", resource_id=instance_id) from e
    except BotoCoreError as e:
        raise CleanupFailed(f"Could not terminate instance: {e}", resource_id=instance_id) from e

    logger.info(f"✅ Instance {instance_id} terminated.")
    return True


def delete_security_group(ec2_client: Any, group_id: str, timeout: float = SECURITY_GROUP_TIMEOUT_SECONDS,
                          interval: float = POLLING_INTERVAL_SECONDS,
                          clock: Callable[[], float] = time.monotonic,
                          sleep: Callable[[float], Any] = time.sleep) -> bool:
    """
    Deletes a security group, retrying while it is still in use.

    Right after an instance is terminated its network interface can hang
    around for a minute, and AWS answers 'DependencyViolation' until it's
    released.

    Returns:
        bool: True when deleted, False if the group didn't exist.

    Raises:
        CleanupFailed: On any other AWS error, or if it is still in use after ``timeout``.
    """
    logger.info(f"--- Deleting security group {group_id} ---")
    outcome = {"deleted": True}

    def attempt() -> bool:
        try:
            ec2_client.delete_security_group(GroupId=group_id)
            return True
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code == "InvalidGroup.NotFound":
                logger.warning(f"Security group {group_id} not found. Assuming it is already deleted.")
                outcome["deleted"] = False
                return True
            if code == "DependencyViolation":
                logger.info(f"⏳ Security group {group_id} is still in use. Retrying...")
                return False
            raise CleanupFailed(f"Could not delete security group: {e}", resource_id=group_id) from e
        except BotoCoreError as e:
            raise CleanupFailed(f"Could not delete security group: {e}", resource_id=group_id) from e

    try:
        poll_until(attempt, timeout, interval, f"security group {group_id} to be released", clock=clock, sleep=sleep)
    except PollTimeout as e:
        raise CleanupFailed(f"Security group still in use after {int(timeout)}s", resource_id=group_id) from e

    if outcome["deleted"]:
        logger.info(f"✅ Security group {group_id} deleted.")
    return outcome["deleted"]
