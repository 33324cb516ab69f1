"""Hosted zone lookup and lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from route53_dns.errors import AlreadyExistsError, HostedZoneNotFoundError, provider_call
from route53_dns.models import HostedZone, fqdn

logger = logging.getLogger(__name__)


def management_cluster_comment(management_cluster: str) -> str:
    if not management_cluster:
        return ""
    return f"management_cluster: {management_cluster}"


class ZoneResolver:
    """Finds, creates, updates and deletes hosted zones by exact DNS name."""

    def __init__(self, client: Any, log: Any = None):
        self.client = client
        self.log = log or logger

    def find_zone(self, domain: str) -> HostedZone:
        """Return the hosted zone named exactly ``domain``.

        ListHostedZonesByName returns zones in sort order starting at the
        requested name, so the first zone can be a different one when the
        requested zone does not exist. Only an exact name match counts.
        """
        name = fqdn(domain)
        with provider_call("list hosted zones by name"):
            out = self.client.list_hosted_zones_by_name(DNSName=name, MaxItems="1")

        zones = out.get("HostedZones") or []
        if not zones:
            raise HostedZoneNotFoundError(f"no hosted zone for {name}", operation="find hosted zone")

        zone = HostedZone.from_api(zones[0])
        if zone.name.lower() != name.lower():
            raise HostedZoneNotFoundError(
                f"no hosted zone for {name} (closest match {zone.name})",
                operation="find hosted zone",
            )
        return zone

    def create_zone(self, domain: str, comment: str = "") -> HostedZone:
        # The caller reference only has to be unique per request. Callers
        # always look the zone up first so a retry does not create a duplicate.
        params: Dict[str, Any] = {
            "Name": fqdn(domain),
            "CallerReference": str(datetime.now(timezone.utc)),
        }
        if comment:
            params["HostedZoneConfig"] = {"Comment": comment}

        with provider_call("create hosted zone"):
            out = self.client.create_hosted_zone(**params)

        zone = HostedZone.from_api(out["HostedZone"])
        self.log.info(f"Created hosted zone {zone.name} ({zone.id})")
        return zone

    def update_zone_comment(self, zone_id: str, comment: str) -> None:
        with provider_call("update hosted zone comment", zone_id):
            self.client.update_hosted_zone_comment(Id=zone_id, Comment=comment)
        self.log.info(f"Updated comment of hosted zone {zone_id} to '{comment}'")

    def delete_zone(self, zone_id: str) -> None:
        with provider_call("delete hosted zone", zone_id):
            self.client.delete_hosted_zone(Id=zone_id)
        self.log.info(f"Deleted hosted zone {zone_id}")

    def ensure_zone(self, domain: str, management_cluster: str = "") -> HostedZone:
        """Find the zone for ``domain`` or create it, repairing comment drift."""
        comment = management_cluster_comment(management_cluster)

        try:
            zone = self.find_zone(domain)
        except HostedZoneNotFoundError:
            self.log.info(f"No hosted zone found for {domain}, creating one")
            try:
                return self.create_zone(domain, comment)
            except AlreadyExistsError:
                self.log.info(f"Hosted zone for {domain} was created concurrently")
                return self.find_zone(domain)

        if comment and zone.comment != comment:
            self.log.info(
                f"Hosted zone {zone.id} comment '{zone.comment}' differs from '{comment}'"
            )
            self.update_zone_comment(zone.id, comment)
        return zone
