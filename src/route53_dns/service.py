"""Reconciliation engine: converges a cluster's Route53 state.

Reconcile: readiness check -> resolve or create zone -> delegation -> records.
Delete: find zone -> delete records -> remove delegation -> delete zone.

Each step is idempotent on its own, so a failed run is finished by the next.
"""

from __future__ import annotations

from typing import Any

from route53_dns.cache import CacheCategory, DNSCache
from route53_dns.delegation import DelegationManager
from route53_dns.errors import APIEndpointNotReadyError, HostedZoneNotFoundError
from route53_dns.models import ChangeAction, fqdn
from route53_dns.records import RecordSynchronizer
from route53_dns.scope import ClusterScope
from route53_dns.zones import ZoneResolver


class Route53Service:
    """Route53 reconciliation for one cluster scope.

    Build one per reconcile call. The client and cache are shared across
    scopes; the cache is the only state kept between calls.
    """

    def __init__(self, scope: ClusterScope, client: Any, cache: DNSCache):
        self.scope = scope
        self.client = client
        self.cache = cache
        self.log = scope.logger
        self.zones = ZoneResolver(client, log=self.log)
        self.delegation = DelegationManager(client, cache, self.zones, log=self.log)
        self.records = RecordSynchronizer(client, cache, log=self.log)

    @property
    def _zone_key(self) -> str:
        # Zone ids are cached by domain; one cluster name may live under several base domains.
        return fqdn(self.scope.cluster_domain)

    def _cluster_zone_id(self) -> str:
        def load() -> bytes:
            self.log.info(f"No hosted zone id cached for cluster {self.scope.name}")
            zone = self.zones.ensure_zone(self.scope.cluster_domain, self.scope.management_cluster)
            return zone.id.encode("utf-8")

        return self.cache.get_or_load(CacheCategory.ZONE_ID, self._zone_key, load).decode("utf-8")

    def _forget_zone(self, zone_id: str = "") -> None:
        self.cache.delete(CacheCategory.ZONE_ID, self._zone_key)
        if zone_id:
            self.cache.delete(CacheCategory.ZONE_RECORDS, zone_id)
            self.cache.delete(CacheCategory.NAMESERVER_RECORDS, zone_id)
            self.cache.delete(CacheCategory.INGRESS_RECORDS, zone_id)

    def reconcile_route53(self) -> None:
        """Converge the cluster zone, its delegation and its records.

        Raises:
            NotReadyError: the cluster is not ready for DNS yet. Requeue.
            ThrottlingError: Route53 rate limited the call. Back off.
            DNSError: any other failure.
        """
        self.log.info("Reconciling hosted DNS zone")

        if not self.scope.api_endpoint:
            self.log.info("API endpoint is not ready yet")
            raise APIEndpointNotReadyError("API endpoint is not ready yet", operation="reconcile")

        try:
            self._converge()
        except HostedZoneNotFoundError as err:
            # The cached zone id points at a zone that no longer exists.
            self.log.info(f"Cached hosted zone is gone ({err}), resolving again")
            self._forget_zone(err.zone_id)
            self._converge()

        self.log.info("Reconciled hosted DNS zone")

    def _converge(self) -> None:
        zone_id = self._cluster_zone_id()
        self.delegation.sync_delegation(
            ChangeAction.UPSERT, zone_id, self.scope.cluster_domain, self.scope.base_domain
        )
        self.records.sync_records(zone_id, self.scope)

    def delete_route53(self) -> None:
        """Remove the cluster's records, delegation and hosted zone.

        Safe to call when everything or part of it is already gone.
        """
        self.log.info("Deleting hosted DNS zone")

        # Always ask Route53 here; a stale cached id must not hide a live zone.
        try:
            zone = self.zones.find_zone(self.scope.cluster_domain)
        except HostedZoneNotFoundError:
            self.log.info(f"No hosted zone for {self.scope.cluster_domain}, checking delegation only")
            try:
                self.delegation.sync_delegation(
                    ChangeAction.DELETE, "", self.scope.cluster_domain, self.scope.base_domain
                )
            finally:
                self._forget_zone()
            return

        try:
            try:
                self.records.delete_records(zone.id, self.scope.cluster_domain)
            except HostedZoneNotFoundError:
                self.log.info(f"Hosted zone {zone.id} was deleted concurrently")

            self.delegation.sync_delegation(
                ChangeAction.DELETE, zone.id, self.scope.cluster_domain, self.scope.base_domain
            )

            try:
                self.zones.delete_zone(zone.id)
            except HostedZoneNotFoundError:
                self.log.info(f"Hosted zone {zone.id} is already deleted")
        finally:
            self._forget_zone(zone.id)

        self.log.info(f"Deleting hosted zone completed successfully for cluster {self.scope.name}")
