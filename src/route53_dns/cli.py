#!/usr/bin/env python3
"""route53-dns-operator - Route53 DNS for workload clusters

Keeps one Route53 hosted zone per cluster (``<cluster>.<base-domain>``) in sync
with the cluster's observed addresses and delegates it from the base zone.

Records managed per cluster:
    api.<cluster-domain>        A record (CNAME for hostname endpoints)
    bastion1.<cluster-domain>   A record while a bastion IP is set
    ingress.<cluster-domain>    A record once an ingress IP is known
    *.<cluster-domain>          CNAME to ingress (or cname_target)

Environment variables:

    Domains:
        BASE_DOMAIN            Base (parent) zone, e.g. "k8s.example.com" (required)
        MANAGEMENT_CLUSTER     Name written into each zone comment as
                               "management_cluster: <name>" (optional)

    Clusters:
        CLUSTERS_CONFIG_PATH   YAML file, or directory of *.yaml files, listing clusters
                               (default: /config/clusters.yaml)
                               Example config file:
                                 clusters:
                                   - name: "alpha"
                                     api_endpoint: "10.0.0.10"
                                     bastion_ip: "10.0.0.11"
                                     ingress_ip: "10.0.0.12"
                                   - name: "beta"
                                     api_endpoint: "api-lb.example.net"
                                     ingress_pending: true
                                   - name: "gamma"
                                     deleted: true
                               Files ending in .template are ignored.

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS  Reconcile interval in watch mode (default: 300)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

    Cache:
        CACHE_LIFE_WINDOW_MINUTES  Lifetime of cached Route53 lookups (default: 6)
        CACHE_SHARDS               Number of cache shards, power of two (default: 256)
        CACHE_MAX_ENTRIES          Cache capacity in entries (default: 16384)

    Route53 client:
        ROUTE53_CONNECT_TIMEOUT_SECONDS  Connect timeout (default: 5)
        ROUTE53_READ_TIMEOUT_SECONDS     Read timeout (default: 30)
        ROUTE53_MAX_ATTEMPTS             Attempts per call incl. retries (default: 3)

    AWS credentials and region come from the standard boto3 chain.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import boto3
import yaml
from botocore.config import Config

from route53_dns.cache import DNSCache
from route53_dns.errors import (
    DNSError,
    HostedZoneNotFoundError,
    InvalidConfigError,
    NotReadyError,
    ThrottlingError,
)
from route53_dns.scope import ClusterScope
from route53_dns.service import Route53Service
from route53_dns.zones import ZoneResolver

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def get_config_files_mtimes(config_files: List[str]) -> Dict[str, float]:
    """Get modification times for all config files."""
    return {f: get_config_file_mtime(f) for f in config_files}


# =============================================================================
# Configuration
# =============================================================================


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfigError(f"{name} must be an integer, got '{raw}'")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidConfigError(f"{name} must be a number, got '{raw}'")


# Domains
BASE_DOMAIN = os.getenv("BASE_DOMAIN", "").strip().rstrip(".")
MANAGEMENT_CLUSTER = os.getenv("MANAGEMENT_CLUSTER", "").strip()

# Clusters
CLUSTERS_CONFIG_PATH = os.getenv("CLUSTERS_CONFIG_PATH", "/config/clusters.yaml")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = _env_int("POLL_INTERVAL_SECONDS", 300)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Cache configuration
CACHE_LIFE_WINDOW_MINUTES = _env_float("CACHE_LIFE_WINDOW_MINUTES", 6.0)
CACHE_SHARDS = _env_int("CACHE_SHARDS", 256)
CACHE_MAX_ENTRIES = _env_int("CACHE_MAX_ENTRIES", 16384)

# Route53 client configuration
ROUTE53_CONNECT_TIMEOUT_SECONDS = _env_float("ROUTE53_CONNECT_TIMEOUT_SECONDS", 5.0)
ROUTE53_READ_TIMEOUT_SECONDS = _env_float("ROUTE53_READ_TIMEOUT_SECONDS", 30.0)
ROUTE53_MAX_ATTEMPTS = _env_int("ROUTE53_MAX_ATTEMPTS", 3)

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Client and Cache Construction
# =============================================================================


def create_route53_client() -> Any:
    """Create the Route53 client shared by all clusters."""
    return boto3.client(
        "route53",
        config=Config(
            connect_timeout=ROUTE53_CONNECT_TIMEOUT_SECONDS,
            read_timeout=ROUTE53_READ_TIMEOUT_SECONDS,
            retries={"max_attempts": ROUTE53_MAX_ATTEMPTS, "mode": "standard"},
        ),
    )


def create_cache() -> DNSCache:
    """Create the cache shared by all clusters."""
    return DNSCache(
        shards=CACHE_SHARDS,
        life_window_minutes=CACHE_LIFE_WINDOW_MINUTES,
        max_entries=CACHE_MAX_ENTRIES,
    )


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def load_cluster_configs(config_path: str) -> List[Dict[str, Any]]:
    """Read cluster entries from every config file under ``config_path``.

    A cluster defined in more than one file takes the entry from the last
    file in sorted order.
    """
    clusters: Dict[str, Dict[str, Any]] = {}

    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to read config file {config_file}: {e}")
            continue

        if not isinstance(config_data, dict) or "clusters" not in config_data:
            logger.warning(f"Config file {config_file} missing 'clusters' key")
            continue

        for item in config_data["clusters"] or []:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed cluster entry in {config_file}: {item}")
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                logger.warning(f"Skipping cluster entry without name in {config_file}")
                continue
            if name in clusters:
                logger.warning(f"Cluster '{name}' defined more than once, using {config_file}")
            clusters[name] = item

    return [clusters[name] for name in sorted(clusters)]


# =============================================================================
# Core Syncer
# =============================================================================


class ClusterDNSSyncer:
    """Runs the Route53 engine for every configured cluster.

    Outcomes per cluster are "reconciled", "deleted", "not-ready",
    "throttled" or "failed". A failing cluster never stops the others.
    """

    def __init__(
        self,
        *,
        client: Any,
        cache: DNSCache,
        config_path: str,
        base_domain: str,
        management_cluster: str = "",
    ):
        self.client = client
        self.cache = cache
        self.config_path = config_path
        self.base_domain = base_domain
        self.management_cluster = management_cluster

    def load_scopes(self) -> List[Tuple[ClusterScope, bool]]:
        scopes: List[Tuple[ClusterScope, bool]] = []
        for item in load_cluster_configs(self.config_path):
            try:
                scope = ClusterScope.from_config(item, self.base_domain, self.management_cluster)
            except InvalidConfigError as e:
                logger.error(f"Invalid cluster entry {item.get('name')}: {e}")
                continue
            scopes.append((scope, _parse_bool(item.get("deleted"))))
        return scopes

    def sync_cluster(self, scope: ClusterScope, deleted: bool) -> str:
        service = Route53Service(scope, self.client, self.cache)
        try:
            if deleted:
                service.delete_route53()
                return "deleted"
            service.reconcile_route53()
            return "reconciled"
        except NotReadyError as e:
            scope.logger.info(f"Not ready yet, will retry: {e}")
            return "not-ready"
        except ThrottlingError as e:
            scope.logger.warning(f"Route53 is throttling requests, backing off: {e}")
            return "throttled"
        except DNSError as e:
            scope.logger.error(f"Reconciliation failed: {e}")
            return "failed"

    def sync_once(self) -> Dict[str, str]:
        results: Dict[str, str] = {}
        for scope, deleted in self.load_scopes():
            results[scope.name] = self.sync_cluster(scope, deleted)

        if results:
            summary: Dict[str, int] = {}
            for outcome in results.values():
                summary[outcome] = summary.get(outcome, 0) + 1
            stats = self.cache.stats()
            logger.info(
                f"Synced {len(results)} cluster(s): "
                f"{', '.join(f'{count} {outcome}' for outcome, count in sorted(summary.items()))} "
                f"(cache: {stats.entries} entries, {stats.hits} hits, {stats.misses} misses)"
            )
        else:
            logger.warning(f"No clusters configured in {self.config_path}")
        return results


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not BASE_DOMAIN:
        errors.append("BASE_DOMAIN is required")
    if not MANAGEMENT_CLUSTER:
        logger.warning("MANAGEMENT_CLUSTER not set. Hosted zones will carry no comment.")

    if CACHE_SHARDS < 1 or CACHE_SHARDS & (CACHE_SHARDS - 1):
        errors.append(f"CACHE_SHARDS must be a power of two, got {CACHE_SHARDS}")
    if CACHE_LIFE_WINDOW_MINUTES <= 0:
        errors.append("CACHE_LIFE_WINDOW_MINUTES must be positive")
    if CACHE_MAX_ENTRIES < 1:
        errors.append("CACHE_MAX_ENTRIES must be positive")

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")

    if not load_cluster_configs(CLUSTERS_CONFIG_PATH):
        errors.append(f"No clusters found in {CLUSTERS_CONFIG_PATH}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def check_base_zone(client: Any, base_domain: str) -> bool:
    """Make sure the base zone is reachable before delegating into it."""
    try:
        zone = ZoneResolver(client).find_zone(base_domain)
    except HostedZoneNotFoundError:
        logger.error(f"Base hosted zone {base_domain} does not exist")
        return False
    except DNSError as e:
        logger.error(f"Failed to look up base hosted zone {base_domain}: {e}")
        return False
    logger.info(f"Base hosted zone: {zone.name} ({zone.id})")
    return True


def wait_for_next_sync(
    interval: float, config_files: List[str], mtimes: Dict[str, float]
) -> Optional[List[str]]:
    """Sleep until the next sync is due or the clusters config changes.

    Returns the changed config files, or None when the interval elapsed.
    """
    deadline = time.monotonic() + interval
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        time.sleep(min(5.0, remaining))

        current_files = find_config_files(CLUSTERS_CONFIG_PATH)
        current_mtimes = get_config_files_mtimes(current_files)
        if set(current_files) != set(config_files) or current_mtimes != mtimes:
            changed = set(current_files) ^ set(config_files)
            changed |= {f for f in current_files if current_mtimes.get(f) != mtimes.get(f)}
            return sorted(changed)


def main():
    """Main entry point."""
    logger.info(f"route53-dns-operator: base domain {BASE_DOMAIN or '<unset>'}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    client = create_route53_client()
    cache = create_cache()

    logger.info(f"Management cluster: {MANAGEMENT_CLUSTER or '<unset>'}")
    logger.info(f"Clusters config: {CLUSTERS_CONFIG_PATH}")
    logger.info(
        f"Cache: {CACHE_SHARDS} shards, {CACHE_MAX_ENTRIES} entries, "
        f"{CACHE_LIFE_WINDOW_MINUTES:g} minute life window"
    )
    logger.info(f"Sync mode: {SYNC_MODE}")
    if SYNC_MODE == "watch":
        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s")

    if not check_base_zone(client, BASE_DOMAIN):
        logger.error(f"Cannot use base domain {BASE_DOMAIN}. Exiting.")
        sys.exit(1)

    syncer = ClusterDNSSyncer(
        client=client,
        cache=cache,
        config_path=CLUSTERS_CONFIG_PATH,
        base_domain=BASE_DOMAIN,
        management_cluster=MANAGEMENT_CLUSTER,
    )

    try:
        if SYNC_MODE == "once":
            results = syncer.sync_once()
            if any(outcome == "failed" for outcome in results.values()):
                sys.exit(1)
            return

        config_files = find_config_files(CLUSTERS_CONFIG_PATH)
        last_config_mtimes = get_config_files_mtimes(config_files)

        while True:
            syncer.sync_once()

            changed_files = wait_for_next_sync(
                max(5, POLL_INTERVAL_SECONDS), config_files, last_config_mtimes
            )
            if changed_files:
                logger.info(
                    f"Config change detected in: {', '.join(Path(f).name for f in changed_files)}"
                )
                logger.info("Triggering immediate sync after config reload")
            config_files = find_config_files(CLUSTERS_CONFIG_PATH)
            last_config_mtimes = get_config_files_mtimes(config_files)

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
