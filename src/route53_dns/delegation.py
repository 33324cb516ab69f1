"""NS delegation of a cluster zone from its base zone.

The child zone's own NS record set is the source of truth. The base zone holds
an NS record named after the child domain that must mirror it exactly,
including value order.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from route53_dns.cache import CacheCategory, DNSCache
from route53_dns.errors import (
    HostedZoneNotFoundError,
    NotFoundError,
    ProviderError,
    provider_call,
)
from route53_dns.models import (
    RECORD_TTL,
    ChangeAction,
    ChangeBatch,
    RecordType,
    ResourceRecordSet,
    decode_record_sets,
    decode_values,
    encode_record_sets,
    encode_values,
    fqdn,
)
from route53_dns.zones import ZoneResolver

logger = logging.getLogger(__name__)


def delegation_cache_suffix(base_zone_id: str, child_domain: str) -> str:
    return f"{base_zone_id}:{fqdn(child_domain)}"


class DelegationManager:
    def __init__(self, client: Any, cache: DNSCache, resolver: ZoneResolver, log: Any = None):
        self.client = client
        self.cache = cache
        self.resolver = resolver
        self.log = log or logger

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _find_ns_record(self, zone_id: str, name: str, operation: str) -> Optional[ResourceRecordSet]:
        """Return the NS record set called ``name`` in ``zone_id``, if any.

        The listing starts at (name, NS) but Route53 returns the next record
        set in sort order when that one is missing, so the result is checked
        by name and type instead of trusting its position.
        """
        with provider_call(operation, zone_id):
            out = self.client.list_resource_record_sets(
                HostedZoneId=zone_id,
                StartRecordName=fqdn(name),
                StartRecordType=RecordType.NS.value,
                MaxItems="1",
            )

        for item in out.get("ResourceRecordSets") or []:
            record_set = ResourceRecordSet.from_api(item)
            if record_set.type == RecordType.NS.value and record_set.name == fqdn(name).lower():
                return record_set
        return None

    def child_name_servers(self, child_zone_id: str, child_domain: str) -> List[str]:
        def load() -> bytes:
            self.log.debug(f"No cached name server records for zone {child_zone_id}")
            record_set = self._find_ns_record(child_zone_id, child_domain, "list child name servers")
            if record_set is None or not record_set.values:
                raise ProviderError(
                    f"zone has no NS record set for {fqdn(child_domain)}",
                    operation="list child name servers",
                    zone_id=child_zone_id,
                )
            return encode_values(record_set.values)

        return decode_values(
            self.cache.get_or_load(CacheCategory.NAMESERVER_RECORDS, child_zone_id, load)
        )

    def base_zone_id(self, base_domain: str) -> str:
        def load() -> bytes:
            self.log.debug(f"No cached zone id for base domain {base_domain}")
            return self.resolver.find_zone(base_domain).id.encode("utf-8")

        return self.cache.get_or_load(CacheCategory.ZONE_ID, fqdn(base_domain), load).decode("utf-8")

    def current_delegation(self, base_zone_id: str, child_domain: str) -> Optional[ResourceRecordSet]:
        def load() -> bytes:
            record_set = self._find_ns_record(base_zone_id, child_domain, "list delegation record")
            return encode_record_sets([record_set] if record_set else [])

        suffix = delegation_cache_suffix(base_zone_id, child_domain)
        record_sets = decode_record_sets(
            self.cache.get_or_load(CacheCategory.NAMESERVER_RECORDS, suffix, load)
        )
        return record_sets[0] if record_sets else None

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync_delegation(
        self, action: ChangeAction, child_zone_id: str, child_domain: str, base_domain: str
    ) -> bool:
        """Make the base zone's NS record for ``child_domain`` match ``action``.

        Returns True when a change batch was submitted.
        """
        if action == ChangeAction.DELETE:
            return self._remove_delegation(child_domain, base_domain)

        name_servers = self.child_name_servers(child_zone_id, child_domain)
        base_zone_id = self.base_zone_id(base_domain)

        desired = ResourceRecordSet(
            name=fqdn(child_domain).lower(),
            type=RecordType.NS.value,
            values=tuple(name_servers),
            ttl=RECORD_TTL,
        )
        try:
            current = self.current_delegation(base_zone_id, child_domain)
            if current == desired:
                self.log.debug(f"Delegation for {child_domain} in zone {base_zone_id} is up to date")
                return False

            batch = ChangeBatch(base_zone_id)
            batch.upsert(desired)
            self.log.info(
                f"Updating delegation for {child_domain} in zone {base_zone_id}: "
                f"{', '.join(name_servers)}"
            )
            self._submit(batch, child_domain)
        except HostedZoneNotFoundError:
            # Cached base zone id is stale.
            self.cache.delete(CacheCategory.ZONE_ID, fqdn(base_domain))
            raise
        return True

    def _remove_delegation(self, child_domain: str, base_domain: str) -> bool:
        try:
            base_zone_id = self.base_zone_id(base_domain)
            # Route53 only deletes an exact match, so delete what the base zone holds.
            self.cache.delete(
                CacheCategory.NAMESERVER_RECORDS, delegation_cache_suffix(base_zone_id, child_domain)
            )
            current = self.current_delegation(base_zone_id, child_domain)
        except HostedZoneNotFoundError:
            self.cache.delete(CacheCategory.ZONE_ID, fqdn(base_domain))
            self.log.info(f"Base zone {base_domain} not found, no delegation to remove")
            return False

        if current is None:
            self.log.debug(f"No delegation for {child_domain} in zone {base_zone_id}")
            return False

        batch = ChangeBatch(base_zone_id)
        batch.delete(current)
        self.log.info(f"Removing delegation for {child_domain} from zone {base_zone_id}")
        try:
            self._submit(batch, child_domain)
        except NotFoundError:
            self.log.info(f"Delegation for {child_domain} already removed")
        return True

    def _submit(self, batch: ChangeBatch, child_domain: str) -> None:
        try:
            with provider_call("change delegation record", batch.zone_id):
                self.client.change_resource_record_sets(
                    HostedZoneId=batch.zone_id, ChangeBatch=batch.to_api()
                )
        finally:
            self.cache.delete(
                CacheCategory.NAMESERVER_RECORDS,
                delegation_cache_suffix(batch.zone_id, child_domain),
            )
