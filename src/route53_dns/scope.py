"""Cluster scope: the read-only view of one cluster that the engine converges."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, MutableMapping, Optional, Tuple

from route53_dns.errors import IngressNotReadyError, InvalidConfigError

logger = logging.getLogger(__name__)

# Returns the ingress load balancer IP, "" when no ingress is installed, or
# raises IngressNotReadyError while the load balancer has no address yet.
IngressResolver = Callable[[], str]


class ClusterLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the cluster it belongs to.

    The engine only calls debug/info/warning/error on it, so any object with
    those methods can stand in.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[cluster={self.extra['cluster']}] {msg}", kwargs


def _require_ipv4(value: str, what: str) -> None:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        raise InvalidConfigError(f"{what} must be an IPv4 address, got '{value}'")


def static_ingress(ip: str) -> IngressResolver:
    """Resolver for an ingress address known up front."""
    return lambda: ip


def pending_ingress() -> str:
    """Resolver for an ingress that is installed but not assigned yet."""
    raise IngressNotReadyError("ingress load balancer has no address yet", operation="resolve ingress")


@dataclass
class ClusterScope:
    """Identity and observed addresses of one workload cluster."""

    name: str
    base_domain: str
    management_cluster: str = ""
    api_endpoint: str = ""
    bastion_ip: str = ""
    ingress_resolver: Optional[IngressResolver] = field(default=None, repr=False)
    cname_target: str = ""
    logger: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.name = (self.name or "").strip()
        self.base_domain = (self.base_domain or "").strip().rstrip(".")
        if not self.name:
            raise InvalidConfigError("cluster scope requires a non-empty name")
        if not self.base_domain:
            raise InvalidConfigError(f"cluster scope {self.name} requires a non-empty base domain")
        self.api_endpoint = (self.api_endpoint or "").strip()
        self.bastion_ip = (self.bastion_ip or "").strip()
        if self.bastion_ip:
            _require_ipv4(self.bastion_ip, f"cluster {self.name} bastion_ip")
        self.cname_target = (self.cname_target or "").strip().rstrip(".")
        if self.logger is None:
            self.logger = ClusterLoggerAdapter(logger, {"cluster": self.name})

    @property
    def cluster_domain(self) -> str:
        return f"{self.name}.{self.base_domain}"

    def ingress_ip(self) -> str:
        if self.ingress_resolver is None:
            return ""
        return (self.ingress_resolver() or "").strip()

    @classmethod
    def from_config(
        cls, item: Dict[str, Any], base_domain: str, management_cluster: str = ""
    ) -> "ClusterScope":
        """Build a scope from one entry of the clusters config file.

        Recognized keys: name, base_domain (overrides the default),
        api_endpoint, bastion_ip, ingress_ip, ingress_pending, cname_target.
        """
        if not isinstance(item, dict):
            raise InvalidConfigError(f"cluster entry must be a mapping, got {type(item).__name__}")

        resolver: Optional[IngressResolver] = None
        if item.get("ingress_pending"):
            resolver = pending_ingress
        elif item.get("ingress_ip"):
            ingress_ip = str(item["ingress_ip"]).strip()
            _require_ipv4(ingress_ip, f"cluster {item.get('name')} ingress_ip")
            resolver = static_ingress(ingress_ip)

        return cls(
            name=str(item.get("name") or ""),
            base_domain=str(item.get("base_domain") or base_domain),
            management_cluster=str(item.get("management_cluster") or management_cluster),
            api_endpoint=str(item.get("api_endpoint") or ""),
            bastion_ip=str(item.get("bastion_ip") or ""),
            ingress_resolver=resolver,
            cname_target=str(item.get("cname_target") or ""),
        )
