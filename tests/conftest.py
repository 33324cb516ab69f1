"""Shared fixtures: an in-memory Route53 client and a controllable clock.

FakeRoute53Client models the parts of Route53 the engine depends on:
exact-match deletes, CNAME conflicts, name-ordered listings with pagination,
``\\052`` escaping of wildcard names and apex SOA/NS records created with
every zone. Failures can be injected per method.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError

from route53_dns.cache import DNSCache
from route53_dns.scope import ClusterScope, pending_ingress, static_ingress

BASE_DOMAIN = "k8s.example.com"
MANAGEMENT_CLUSTER = "mgmt"

MUTATING_METHODS = frozenset(
    {
        "create_hosted_zone",
        "change_resource_record_sets",
        "update_hosted_zone_comment",
        "delete_hosted_zone",
    }
)


# =============================================================================
# Fake Route53
# =============================================================================


def client_error(code: str, message: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def _name_key(name: str) -> Tuple[str, ...]:
    """Route53 orders names by their labels, right to left."""
    return tuple(reversed(name.rstrip(".").lower().split(".")))


def _normalize(name: str) -> str:
    return name.replace("\\052", "*").rstrip(".").lower() + "."


def _escape(name: str) -> str:
    return name.replace("*", "\\052")


class FakeRoute53Client:
    """In-memory Route53 with call tracking and error injection."""

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.zones: Dict[str, Dict[str, Any]] = {}
        self.records: Dict[str, Dict[Tuple[str, str], Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, List[ClientError]] = {}
        self._zone_counter = 0
        self._change_counter = 0

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def fail(self, method: str, code: str, message: str = "", times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise a ClientError."""
        queue = self.failures.setdefault(method, [])
        for _ in range(times):
            queue.append(client_error(code, message or code, method))

    def add_zone(self, name: str, comment: str = "") -> str:
        self._zone_counter += 1
        zone_id = f"/hostedzone/Z{self._zone_counter:06d}"
        fqdn = _normalize(name)
        self.zones[zone_id] = {
            "Id": zone_id,
            "Name": fqdn,
            "CallerReference": f"ref-{self._zone_counter}",
            "Config": {"Comment": comment, "PrivateZone": False},
        }
        name_servers = [
            f"ns-{self._zone_counter}{i}.awsdns-{i:02d}.{tld}"
            for i, tld in enumerate(["com", "net", "org", "co.uk"])
        ]
        self.records[zone_id] = {}
        self.put_record(zone_id, fqdn, "NS", name_servers, ttl=172800)
        self.put_record(
            zone_id, fqdn, "SOA",
            [f"{name_servers[0]}. awsdns-hostmaster.amazon.com. 1 7200 900 1209600 86400"],
            ttl=900,
        )
        return zone_id

    def put_record(
        self, zone_id: str, name: str, rtype: str, values: List[str], ttl: int = 300
    ) -> None:
        zone_id = self._zone_id(zone_id)
        self.records[zone_id][(_normalize(name), rtype)] = {
            "Name": _normalize(name),
            "Type": rtype,
            "TTL": ttl,
            "ResourceRecords": [{"Value": v} for v in values],
        }

    def get_record(self, zone_id: str, name: str, rtype: str) -> Optional[Dict[str, Any]]:
        return self.records.get(self._zone_id(zone_id), {}).get((_normalize(name), rtype))

    def record_values(self, zone_id: str, name: str, rtype: str) -> Optional[List[str]]:
        record = self.get_record(zone_id, name, rtype)
        if record is None:
            return None
        return [r["Value"] for r in record["ResourceRecords"]]

    def zone_id_for(self, name: str) -> Optional[str]:
        for zone_id, zone in self.zones.items():
            if zone["Name"] == _normalize(name):
                return zone_id
        return None

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    @property
    def mutating_calls(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [(name, kwargs) for name, kwargs in self.calls if name in MUTATING_METHODS]

    def reset_calls(self) -> None:
        self.calls.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record_call(self, method: str, kwargs: Dict[str, Any]) -> None:
        self.calls.append((method, copy.deepcopy(kwargs)))
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def _zone_id(self, zone_id: str) -> str:
        if not zone_id.startswith("/hostedzone/"):
            zone_id = f"/hostedzone/{zone_id}"
        return zone_id

    def _require_zone(self, zone_id: str, method: str) -> str:
        zone_id = self._zone_id(zone_id)
        if zone_id not in self.zones:
            raise client_error("NoSuchHostedZone", f"No hosted zone found with ID: {zone_id}", method)
        return zone_id

    # -------------------------------------------------------------------------
    # Route53 API
    # -------------------------------------------------------------------------

    def list_hosted_zones_by_name(self, **kwargs: Any) -> Dict[str, Any]:
        self._record_call("list_hosted_zones_by_name", kwargs)
        zones = sorted(self.zones.values(), key=lambda z: _name_key(z["Name"]))
        if kwargs.get("DNSName"):
            start = _name_key(kwargs["DNSName"])
            zones = [z for z in zones if _name_key(z["Name"]) >= start]
        limit = int(kwargs.get("MaxItems") or 100)
        return {
            "HostedZones": copy.deepcopy(zones[:limit]),
            "IsTruncated": len(zones) > limit,
            "MaxItems": str(limit),
        }

    def list_resource_record_sets(self, **kwargs: Any) -> Dict[str, Any]:
        self._record_call("list_resource_record_sets", kwargs)
        zone_id = self._require_zone(kwargs["HostedZoneId"], "ListResourceRecordSets")

        items = sorted(
            self.records[zone_id].values(), key=lambda r: (_name_key(r["Name"]), r["Type"])
        )
        if kwargs.get("StartRecordName"):
            start = (_name_key(_normalize(kwargs["StartRecordName"])), kwargs.get("StartRecordType", ""))
            items = [r for r in items if (_name_key(r["Name"]), r["Type"]) >= start]

        limit = int(kwargs.get("MaxItems") or self.page_size)
        page = [dict(copy.deepcopy(r), Name=_escape(r["Name"])) for r in items[:limit]]
        out: Dict[str, Any] = {
            "ResourceRecordSets": page,
            "IsTruncated": len(items) > limit,
            "MaxItems": str(limit),
        }
        if len(items) > limit:
            out["NextRecordName"] = _escape(items[limit]["Name"])
            out["NextRecordType"] = items[limit]["Type"]
        return out

    def get_paginator(self, operation_name: str) -> "FakeRecordSetPaginator":
        if operation_name != "list_resource_record_sets":
            raise NotImplementedError(f"no fake paginator for {operation_name}")
        return FakeRecordSetPaginator(self)

    def change_resource_record_sets(self, **kwargs: Any) -> Dict[str, Any]:
        self._record_call("change_resource_record_sets", kwargs)
        zone_id = self._require_zone(kwargs["HostedZoneId"], "ChangeResourceRecordSets")

        # Batches are atomic: work on a copy and commit only when all changes apply.
        staged = copy.deepcopy(self.records[zone_id])
        for change in kwargs["ChangeBatch"]["Changes"]:
            record = copy.deepcopy(change["ResourceRecordSet"])
            record["Name"] = _normalize(record["Name"])
            key = (record["Name"], record["Type"])

            if change["Action"] == "DELETE":
                current = staged.get(key)
                if current is None:
                    raise client_error(
                        "InvalidChangeBatch",
                        f"[Tried to delete resource record set [name='{record['Name']}', "
                        f"type='{record['Type']}'] but it was not found]",
                        "ChangeResourceRecordSets",
                    )
                if current != record:
                    raise client_error(
                        "InvalidChangeBatch",
                        f"[Tried to delete resource record set [name='{record['Name']}', "
                        f"type='{record['Type']}'] but the values provided do not match the current values]",
                        "ChangeResourceRecordSets",
                    )
                del staged[key]
                continue

            for (name, rtype) in staged:
                if name != record["Name"] or rtype == record["Type"]:
                    continue
                if "CNAME" in (rtype, record["Type"]):
                    raise client_error(
                        "InvalidChangeBatch",
                        f"[RRSet of type {record['Type']} with DNS name {record['Name']} is not "
                        f"permitted because a conflicting RRSet of type {rtype} with the same "
                        f"DNS name already exists]",
                        "ChangeResourceRecordSets",
                    )
            staged[key] = record

        self.records[zone_id] = staged
        self._change_counter += 1
        return {"ChangeInfo": {"Id": f"/change/C{self._change_counter:06d}", "Status": "PENDING"}}

    def create_hosted_zone(self, **kwargs: Any) -> Dict[str, Any]:
        self._record_call("create_hosted_zone", kwargs)
        name = _normalize(kwargs["Name"])
        if self.zone_id_for(name):
            raise client_error(
                "HostedZoneAlreadyExists",
                f"A hosted zone has already been created with the specified name {name}",
                "CreateHostedZone",
            )
        comment = (kwargs.get("HostedZoneConfig") or {}).get("Comment", "")
        zone_id = self.add_zone(name, comment)
        zone = copy.deepcopy(self.zones[zone_id])
        zone["CallerReference"] = kwargs["CallerReference"]
        self.zones[zone_id]["CallerReference"] = kwargs["CallerReference"]
        return {
            "HostedZone": zone,
            "DelegationSet": {"NameServers": self.record_values(zone_id, name, "NS")},
        }

    def update_hosted_zone_comment(self, **kwargs: Any) -> Dict[str, Any]:
        self._record_call("update_hosted_zone_comment", kwargs)
        zone_id = self._require_zone(kwargs["Id"], "UpdateHostedZoneComment")
        self.zones[zone_id]["Config"]["Comment"] = kwargs.get("Comment", "")
        return {"HostedZone": copy.deepcopy(self.zones[zone_id])}

    def delete_hosted_zone(self, **kwargs: Any) -> Dict[str, Any]:
        self._record_call("delete_hosted_zone", kwargs)
        zone_id = self._require_zone(kwargs["Id"], "DeleteHostedZone")
        apex = self.zones[zone_id]["Name"]
        leftovers = [
            key for key in self.records[zone_id]
            if not (key[0] == apex and key[1] in ("SOA", "NS"))
        ]
        if leftovers:
            raise client_error(
                "HostedZoneNotEmpty",
                "The specified hosted zone contains non-required resource record sets",
                "DeleteHostedZone",
            )
        del self.zones[zone_id]
        del self.records[zone_id]
        return {"ChangeInfo": {"Id": "/change/CDELETE", "Status": "PENDING"}}


class FakeRecordSetPaginator:
    """Follows NextRecordName/NextRecordType the way botocore's paginator does."""

    def __init__(self, client: FakeRoute53Client):
        self.client = client

    def paginate(self, **kwargs: Any) -> Iterator[Dict[str, Any]]:
        params = dict(kwargs)
        while True:
            page = self.client.list_resource_record_sets(**params)
            yield page
            if not page.get("IsTruncated"):
                return
            params["StartRecordName"] = page["NextRecordName"]
            params["StartRecordType"] = page["NextRecordType"]


class FakeClock:
    """Manually advanced clock for cache expiry."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def route53() -> FakeRoute53Client:
    """Fake Route53 that already holds the base zone."""
    client = FakeRoute53Client()
    client.add_zone(BASE_DOMAIN)
    return client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> DNSCache:
    return DNSCache(shards=16, life_window_minutes=6, max_entries=1024, timer=clock)


def make_scope(
    name: str = "alpha",
    base_domain: str = BASE_DOMAIN,
    api_endpoint: str = "10.0.0.10",
    bastion_ip: str = "",
    ingress_ip: str = "",
    ingress_pending: bool = False,
    cname_target: str = "",
    management_cluster: str = MANAGEMENT_CLUSTER,
) -> ClusterScope:
    """Create a ClusterScope for testing."""
    resolver = None
    if ingress_pending:
        resolver = pending_ingress
    elif ingress_ip:
        resolver = static_ingress(ingress_ip)
    return ClusterScope(
        name=name,
        base_domain=base_domain,
        management_cluster=management_cluster,
        api_endpoint=api_endpoint,
        bastion_ip=bastion_ip,
        ingress_resolver=resolver,
        cname_target=cname_target,
    )
