"""Address records of a cluster zone.

Managed records, all relative to the cluster domain:

    api        A (or CNAME for a hostname endpoint), always required
    bastion1   A, only while a bastion IP is observed
    ingress    A, only once an ingress IP is observed
    *          CNAME to ingress (or the scope's CNAME override), with ingress
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from route53_dns.cache import CacheCategory, DNSCache, EntryNotFoundError
from route53_dns.errors import (
    APIEndpointNotReadyError,
    DNSError,
    NotFoundError,
    NotReadyError,
    provider_call,
    workload_lookup,
)
from route53_dns.models import (
    RECORD_TTL,
    ChangeBatch,
    RecordType,
    ResourceRecordSet,
    decode_record_sets,
    encode_record_sets,
    fqdn,
)
from route53_dns.scope import ClusterScope

logger = logging.getLogger(__name__)

API_RECORD = "api"
BASTION_RECORD = "bastion1"
INGRESS_RECORD = "ingress"
WILDCARD_RECORD = "*"

# Record sets Route53 manages itself at the zone apex.
APEX_PROVIDER_TYPES = frozenset({RecordType.SOA.value, RecordType.NS.value})


def record_name(label: str, domain: str) -> str:
    return fqdn(f"{label}.{domain}").lower()


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def a_record(label: str, domain: str, ip: str) -> ResourceRecordSet:
    return ResourceRecordSet(
        name=record_name(label, domain), type=RecordType.A.value, values=(ip,), ttl=RECORD_TTL
    )


def cname_record(label: str, domain: str, target: str) -> ResourceRecordSet:
    return ResourceRecordSet(
        name=record_name(label, domain),
        type=RecordType.CNAME.value,
        values=(target.rstrip("."),),
        ttl=RECORD_TTL,
    )


def api_record(scope: ClusterScope) -> ResourceRecordSet:
    if is_ipv4(scope.api_endpoint):
        return a_record(API_RECORD, scope.cluster_domain, scope.api_endpoint)
    return cname_record(API_RECORD, scope.cluster_domain, scope.api_endpoint)


def ingress_records(scope: ClusterScope, ingress_ip: str) -> List[ResourceRecordSet]:
    target = scope.cname_target or f"{INGRESS_RECORD}.{scope.cluster_domain}"
    return [
        a_record(INGRESS_RECORD, scope.cluster_domain, ingress_ip),
        cname_record(WILDCARD_RECORD, scope.cluster_domain, target),
    ]


class RecordSynchronizer:
    def __init__(self, client: Any, cache: DNSCache, log: Any = None):
        self.client = client
        self.cache = cache
        self.log = log or logger

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_record_sets(self, zone_id: str) -> List[ResourceRecordSet]:
        """List every record set in the zone, following pagination."""
        record_sets: List[ResourceRecordSet] = []
        with provider_call("list resource record sets", zone_id):
            paginator = self.client.get_paginator("list_resource_record_sets")
            for page in paginator.paginate(HostedZoneId=zone_id):
                record_sets.extend(ResourceRecordSet.from_api(item) for item in page.get("ResourceRecordSets") or [])
        return record_sets

    def zone_snapshot(self, zone_id: str) -> List[ResourceRecordSet]:
        def load() -> bytes:
            self.log.debug(f"No cached resource record sets for zone {zone_id}")
            return encode_record_sets(self.list_record_sets(zone_id))

        return decode_record_sets(self.cache.get_or_load(CacheCategory.ZONE_RECORDS, zone_id, load))

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    @staticmethod
    def _index(record_sets: List[ResourceRecordSet]) -> Dict[str, Dict[str, ResourceRecordSet]]:
        by_name: Dict[str, Dict[str, ResourceRecordSet]] = {}
        for record_set in record_sets:
            by_name.setdefault(record_set.name, {})[record_set.type] = record_set
        return by_name

    @staticmethod
    def _plan(
        batch: ChangeBatch,
        desired: ResourceRecordSet,
        existing: Dict[str, Dict[str, ResourceRecordSet]],
    ) -> bool:
        """Add the changes that turn ``existing`` into ``desired``. False if none."""
        current = existing.get(desired.name, {})
        if current.get(desired.type) == desired:
            return False

        # A CNAME cannot coexist with other records of the same name.
        for other_type, other in current.items():
            if other_type == desired.type:
                continue
            if RecordType.CNAME.value in (other_type, desired.type):
                batch.delete(other)

        batch.upsert(desired)
        return True

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync_records(self, zone_id: str, scope: ClusterScope) -> int:
        """Converge the cluster's address records. Returns the number of changes submitted.

        The api and bastion records do not wait for the ingress. When the
        ingress is not ready they are still converged and the NotReadyError is
        raised afterwards.
        """
        if not scope.api_endpoint:
            raise APIEndpointNotReadyError(
                "API endpoint is not ready yet", operation="sync records", zone_id=zone_id
            )

        ingress_error: Optional[NotReadyError] = None
        try:
            with workload_lookup("resolve ingress"):
                ingress_ip = scope.ingress_ip()
        except NotReadyError as err:
            self.log.info(f"Ingress is not ready yet, syncing the other records: {err}")
            ingress_error, ingress_ip = err, ""

        try:
            changed = self._converge(zone_id, scope, ingress_ip)
        except NotFoundError as err:
            # A rejected batch applies nothing. Plan again from a fresh listing.
            self.log.info(f"Records in zone {zone_id} changed underneath the sync, planning again: {err}")
            changed = self._converge(zone_id, scope, ingress_ip)

        if ingress_error is not None:
            raise ingress_error
        return changed

    def _converge(self, zone_id: str, scope: ClusterScope, ingress_ip: str) -> int:
        domain = scope.cluster_domain
        existing = self._index(self.zone_snapshot(zone_id))
        batch = ChangeBatch(zone_id)

        self._plan(batch, api_record(scope), existing)

        bastion_name = record_name(BASTION_RECORD, domain)
        if scope.bastion_ip:
            self._plan(batch, a_record(BASTION_RECORD, domain, scope.bastion_ip), existing)
        else:
            orphan = existing.get(bastion_name, {}).get(RecordType.A.value)
            if orphan is not None:
                self.log.info(f"Orphaned bastion record found: {orphan.name} -> {', '.join(orphan.values)}")
                batch.delete(orphan)

        if ingress_ip:
            self._plan_ingress(batch, zone_id, ingress_records(scope, ingress_ip), existing)
        else:
            self.log.debug("No ingress address observed, skipping ingress records")

        if not batch:
            self.log.debug(f"Records in zone {zone_id} are up to date")
            return 0

        self._submit(batch)
        return len(batch)

    def _plan_ingress(
        self,
        batch: ChangeBatch,
        zone_id: str,
        desired: List[ResourceRecordSet],
        existing: Dict[str, Dict[str, ResourceRecordSet]],
    ) -> None:
        wanted = ChangeBatch(zone_id)
        for record_set in desired:
            wanted.upsert(record_set)
        fingerprint = wanted.fingerprint()

        try:
            if self.cache.get(CacheCategory.INGRESS_RECORDS, zone_id) == fingerprint:
                return
        except EntryNotFoundError:
            pass

        planned = [self._plan(batch, record_set, existing) for record_set in desired]
        if not any(planned):
            self.cache.set(CacheCategory.INGRESS_RECORDS, zone_id, fingerprint)

    def delete_records(self, zone_id: str, domain: str) -> int:
        """Delete every record set in the zone except the apex SOA and NS sets."""
        apex = fqdn(domain).lower()
        batch = ChangeBatch(zone_id)
        for record_set in self.list_record_sets(zone_id):
            if record_set.name == apex and record_set.type in APEX_PROVIDER_TYPES:
                # Removed by Route53 together with the zone.
                continue
            batch.delete(record_set)

        if not batch:
            self.log.debug(f"No records to delete in zone {zone_id}")
            return 0

        self.log.info(f"Deleting {len(batch)} record sets from zone {zone_id}")
        self._submit(batch, absorb=(NotFoundError,))
        return len(batch)

    def _submit(self, batch: ChangeBatch, absorb: Tuple[Type[DNSError], ...] = ()) -> None:
        try:
            for part in batch.split():
                for change in part:
                    self.log.info(
                        f"{change.action.value} {change.record_set.type} {change.record_set.name} "
                        f"-> {', '.join(change.record_set.values)}"
                    )
                try:
                    with provider_call("change resource record sets", batch.zone_id):
                        self.client.change_resource_record_sets(
                            HostedZoneId=batch.zone_id, ChangeBatch=part.to_api()
                        )
                except absorb as err:
                    self.log.info(f"Records in zone {batch.zone_id} already converged: {err}")
        finally:
            self.cache.delete(CacheCategory.ZONE_RECORDS, batch.zone_id)
            self.cache.delete(CacheCategory.INGRESS_RECORDS, batch.zone_id)
