"""Tests for Route 53 updates and DNS convergence checks."""

import socket
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from ec2_deploy.dns import DnsChecker, lookup_public_ip
from ec2_deploy.errors import RecordUpdateFailed, ResolutionTimeout

from .conftest import client_error

ZONE_ID = "Z08247233V8S47A7YSZ4O"
DOMAIN = "repairmanager.com"
ADDRESS = "203.0.113.5"


def upsert_params(value: str = ADDRESS, ttl: int = 300) -> dict:
    return {
        "HostedZoneId": ZONE_ID,
        "ChangeBatch": {
            "Comment": f"Add A record for {DOMAIN}",
            "Changes": [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": DOMAIN,
                        "Type": "A",
                        "TTL": ttl,
                        "ResourceRecords": [{"Value": value}],
                    },
                }
            ],
        },
    }


def change_info(status: str = "PENDING") -> dict:
    return {"ChangeInfo": {"Id": "C2682N5HXP0BZ4", "Status": status, "SubmittedAt": datetime(2024, 1, 1)}}


class FakeResolver:
    """Returns the queued answers one lookup at a time; exceptions are raised."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = 0

    def __call__(self, name):
        self.calls += 1
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


class TestUpsertRecord:
    """Tests for upsert_record."""

    def test_sends_upsert_change(self, route53) -> None:
        client, stubber = route53
        stubber.add_response("change_resource_record_sets", change_info(), upsert_params())

        change_id = DnsChecker(client).upsert_record(ZONE_ID, DOMAIN, "A", ADDRESS, 300, wait=False)

        assert change_id == "C2682N5HXP0BZ4"

    def test_same_arguments_twice_is_idempotent(self, route53) -> None:
        client, stubber = route53
        stubber.add_response("change_resource_record_sets", change_info(), upsert_params())
        stubber.add_response("change_resource_record_sets", change_info(), upsert_params())
        checker = DnsChecker(client)

        first = checker.upsert_record(ZONE_ID, DOMAIN, "A", ADDRESS, 300, wait=False)
        second = checker.upsert_record(ZONE_ID, DOMAIN, "A", ADDRESS, 300, wait=False)

        assert first == second

    def test_waits_until_insync(self, route53) -> None:
        client, stubber = route53
        stubber.add_response("change_resource_record_sets", change_info(), upsert_params())
        stubber.add_response("get_change", change_info("INSYNC"), {"Id": "C2682N5HXP0BZ4"})

        DnsChecker(client).upsert_record(ZONE_ID, DOMAIN, "A", ADDRESS, 300)

    def test_rejected_change(self, route53) -> None:
        client, stubber = route53
        stubber.add_client_error(
            "change_resource_record_sets",
            service_error_code="InvalidChangeBatch",
            service_message="Invalid value",
            expected_params=upsert_params("not-an-ip"),
        )

        with pytest.raises(RecordUpdateFailed) as exc_info:
            DnsChecker(client).upsert_record(ZONE_ID, DOMAIN, "A", "not-an-ip", 300, wait=False)

        assert exc_info.value.resource_id == ZONE_ID
        assert exc_info.value.stage == "dns-update"


class TestCheckHostedZone:
    """Tests for check_hosted_zone."""

    def test_returns_name_servers(self, route53) -> None:
        client, stubber = route53
        stubber.add_response(
            "get_hosted_zone",
            {
                "HostedZone": {"Id": f"/hostedzone/{ZONE_ID}", "Name": f"{DOMAIN}.", "CallerReference": "ref"},
                "DelegationSet": {"NameServers": ["ns-2.awsdns-02.net", "ns-1.awsdns-01.org"]},
            },
            {"Id": ZONE_ID},
        )

        assert DnsChecker(client).check_hosted_zone(ZONE_ID) == ["ns-1.awsdns-01.org", "ns-2.awsdns-02.net"]

    def test_missing_zone(self, route53) -> None:
        client, stubber = route53
        stubber.add_client_error("get_hosted_zone", service_error_code="NoSuchHostedZone")

        with pytest.raises(RecordUpdateFailed) as exc_info:
            DnsChecker(client).check_hosted_zone(ZONE_ID)

        assert "not found" in str(exc_info.value)


class TestDeleteRecord:
    """Tests for delete_record."""

    def test_missing_record_is_not_an_error(self) -> None:
        route53 = MagicMock()
        route53.change_resource_record_sets.side_effect = client_error(
            "InvalidChangeBatch", "Tried to delete resource record set but it was not found"
        )

        assert DnsChecker(route53).delete_record(ZONE_ID, DOMAIN, "A", ADDRESS, 300) is False

    def test_sends_delete_change(self) -> None:
        route53 = MagicMock()

        assert DnsChecker(route53).delete_record(ZONE_ID, DOMAIN, "A", ADDRESS, 300) is True
        change = route53.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
        assert change["Action"] == "DELETE"
        assert change["ResourceRecordSet"]["ResourceRecords"] == [{"Value": ADDRESS}]


class TestWaitForResolution:
    """Tests for wait_for_resolution."""

    def test_returns_on_first_match_and_stops(self) -> None:
        resolver = FakeResolver(["198.51.100.7"], [], [ADDRESS], [ADDRESS])
        sleeps = []
        checker = DnsChecker(MagicMock(), resolver=resolver, sleep=sleeps.append)

        assert checker.wait_for_resolution(DOMAIN, ADDRESS, max_attempts=10, interval=30) is True
        assert resolver.calls == 3
        assert sleeps == [30, 30]

    def test_immediate_match(self) -> None:
        resolver = FakeResolver([ADDRESS])
        sleeps = []

        assert DnsChecker(MagicMock(), resolver=resolver, sleep=sleeps.append).wait_for_resolution(
            DOMAIN, ADDRESS, max_attempts=10, interval=30
        )
        assert resolver.calls == 1
        assert sleeps == []

    def test_lookup_errors_count_as_misses(self) -> None:
        resolver = FakeResolver(socket.gaierror(-2, "Name or service not known"), [ADDRESS])

        assert DnsChecker(MagicMock(), resolver=resolver, sleep=lambda s: None).wait_for_resolution(
            DOMAIN, ADDRESS, max_attempts=3, interval=30
        )
        assert resolver.calls == 2

    def test_extra_addresses_are_not_a_match(self) -> None:
        resolver = FakeResolver([ADDRESS, "198.51.100.7"])

        with pytest.raises(ResolutionTimeout):
            DnsChecker(MagicMock(), resolver=resolver, sleep=lambda s: None).wait_for_resolution(
                DOMAIN, ADDRESS, max_attempts=2, interval=30
            )

    def test_gives_up_after_max_attempts(self) -> None:
        resolver = FakeResolver(["198.51.100.7"])
        sleeps = []

        with pytest.raises(ResolutionTimeout) as exc_info:
            DnsChecker(MagicMock(), resolver=resolver, sleep=sleeps.append).wait_for_resolution(
                DOMAIN, ADDRESS, max_attempts=4, interval=30
            )

        assert resolver.calls == 4
        assert sleeps == [30, 30, 30]
        assert exc_info.value.resource_id == DOMAIN
        assert "198.51.100.7" in str(exc_info.value)


class TestLookupPublicIp:
    """Tests for lookup_public_ip."""

    def test_returns_public_ip(self) -> None:
        ec2 = MagicMock()
        ec2.describe_instances.return_value = {
            "Reservations": [{"Instances": [{"InstanceId": "i-0abc", "PublicIpAddress": ADDRESS}]}]
        }

        assert lookup_public_ip(ec2, "i-0abc") == ADDRESS

    def test_no_public_ip(self) -> None:
        ec2 = MagicMock()
        ec2.describe_instances.return_value = {"Reservations": [{"Instances": [{"InstanceId": "i-0abc"}]}]}

        with pytest.raises(RecordUpdateFailed):
            lookup_public_ip(ec2, "i-0abc")
