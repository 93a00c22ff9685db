#!/usr/bin/env python3
"""cf-autodns - Cloudflare CNAME records for reverse proxy configs

Watches a directory of nginx / Nginx Proxy Manager ``*.conf`` files and keeps
Cloudflare CNAME records in sync with the hostnames they declare
(``server_name`` and ``proxy_pass`` targets). Each hostname gets a
self-referencing, proxied CNAME in the zone of its root domain.

Only records for files this daemon has processed are ever touched: the last
applied domain list of every file is stored next to its digest, so removing a
file (or a hostname from a file) removes exactly those records.

Environment variables:

    Required:
        CF_API_TOKEN           Cloudflare API token (Zone:Read, DNS:Edit)
        BASE_DIR               State directory; holds hashes/ and locks/
        WATCH_DIR              Directory containing the proxy .conf files

    Watching:
        WATCH_SUFFIX           Filename suffix to manage (default: .conf)
        DELETE_CONFIRM_SECONDS Pause before acting on a delete event, so an
                               atomic save (delete + recreate) is seen as an
                               update (default: 1.0)
        SYNC_MODE              "watch" or "once" (initial sync only) (default: watch)
        SINGLETON_LOCK_PATH    Process-wide lock file (default: /tmp/cf_autodns.lock)

    Cloudflare:
        CF_API_URL             API base URL (default: https://api.cloudflare.com/client/v4)
        CF_API_TIMEOUT_SECONDS Request timeout (default: 10)
        RECORD_TTL             TTL for managed records, 1 = automatic (default: 1)
        RECORD_PROXIED         Proxy records through Cloudflare (default: true)
        RECORD_POLICY_PATH     Optional YAML file with per-zone record settings.
                               Example:
                                 defaults:
                                   ttl: 1
                                   proxied: true
                                 zones:
                                   example.org:
                                     proxied: false
                                     ttl: 300

    Reconciliation:
        EXCLUDE_DOMAINS        Comma-separated patterns for hostnames that are
                               never managed. Supports:
                                 - Exact domain: "auth.example.com"
                                 - Wildcard (fnmatch-style): "*.internal.*"
                                 - Regex (prefix with ~): "~^dev-\\d+\\."
        REQUIRE_FULL_SUCCESS   When true, a file's digest is only committed (or
                               removed) if every hostname succeeded, so the next
                               event retries. Default false: best-effort.

    Logging:
        DEBUG_MODE             true forces DEBUG logging (default: false)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import re
import shutil
import sys
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import requests
import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


# =============================================================================
# Configuration
# =============================================================================

# Required
CF_API_TOKEN = os.getenv("CF_API_TOKEN", "").strip()
BASE_DIR = os.getenv("BASE_DIR", "").strip()
WATCH_DIR = os.getenv("WATCH_DIR", "").strip()

# Watching
WATCH_SUFFIX = os.getenv("WATCH_SUFFIX", ".conf").strip()
DELETE_CONFIRM_SECONDS = float(os.getenv("DELETE_CONFIRM_SECONDS", "1.0"))
SYNC_MODE = os.getenv("SYNC_MODE", "watch").lower().strip()
SINGLETON_LOCK_PATH = os.getenv("SINGLETON_LOCK_PATH", "/tmp/cf_autodns.lock")

# Cloudflare
CF_API_URL = os.getenv("CF_API_URL", "https://api.cloudflare.com/client/v4")
CF_API_TIMEOUT_SECONDS = float(os.getenv("CF_API_TIMEOUT_SECONDS", "10"))
RECORD_TTL = int(os.getenv("RECORD_TTL", "1"))
RECORD_PROXIED = _parse_bool(os.getenv("RECORD_PROXIED"), default=True)
RECORD_POLICY_PATH = os.getenv("RECORD_POLICY_PATH", "").strip()

# Reconciliation
EXCLUDE_DOMAINS = os.getenv("EXCLUDE_DOMAINS", "")
REQUIRE_FULL_SUCCESS = _parse_bool(os.getenv("REQUIRE_FULL_SUCCESS"), default=False)

# Logging
DEBUG_MODE = _parse_bool(os.getenv("DEBUG_MODE"), default=False)
LOG_LEVEL = "DEBUG" if DEBUG_MODE else os.getenv("LOG_LEVEL", "INFO")

HASH_SUBDIR = "hashes"
LOCK_SUBDIR = "locks"
HASH_SUFFIX = ".digest"
LOCK_SUFFIX = ".lock"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(process)d:%(threadName)s] [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class AutoDNSError(Exception):
    """Base class for cf-autodns errors."""


class ConfigurationError(AutoDNSError):
    """A required setting is missing or invalid."""


class SingletonConflictError(AutoDNSError):
    """Another instance already holds the process-wide lock."""


class CloudflareAPIError(AutoDNSError):
    """A Cloudflare API call failed or did not report success."""

    def __init__(self, message: str, errors: Any = None):
        super().__init__(message)
        self.errors = errors


class ZoneNotFoundError(AutoDNSError):
    """No active zone could be resolved for a root domain."""


# =============================================================================
# Enums
# =============================================================================


class EventKind(Enum):
    """Why a file is being processed."""

    INITIAL_SYNC = "INITIAL_SYNC"
    CLOSE_WRITE = "CLOSE_WRITE"
    DELETE = "DELETE"
    MOVED_TO = "MOVED_TO"

    @property
    def is_removal(self) -> bool:
        return self is EventKind.DELETE


class Outcome(Enum):
    """Terminal state of one file-processing run."""

    COMMITTED = "committed"
    CLEARED = "cleared"
    SKIPPED = "skipped"
    FAILED = "failed"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DNSRecord:
    """A CNAME record as reported by the provider."""

    id: str
    name: str
    content: str
    ttl: int = 1
    proxied: bool = True


@dataclass(frozen=True)
class RecordSettings:
    """TTL and proxy flag applied to a managed record."""

    ttl: int = 1
    proxied: bool = True


@dataclass(frozen=True)
class RecordPolicy:
    """Record settings with optional per-zone overrides, keyed by root domain."""

    defaults: RecordSettings = field(default_factory=RecordSettings)
    zones: Dict[str, RecordSettings] = field(default_factory=dict)

    def for_zone(self, root: str) -> RecordSettings:
        return self.zones.get(root.lower(), self.defaults)


@dataclass(frozen=True)
class HashEntry:
    """Last applied state of one watched file."""

    filename: str
    digest: str
    domains: Tuple[str, ...] = ()
    updated_at: int = 0


# =============================================================================
# Domain Extraction
# =============================================================================

DIRECTIVE_RE = re.compile(r"^\s*(server_name|proxy_pass)\s+(.*)$")
LABEL_RE = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")


def _is_hostname(token: str) -> bool:
    if token.startswith("*."):
        token = token[2:]
    labels = token.split(".")
    if len(labels) < 2:
        return False
    if not all(LABEL_RE.fullmatch(label) for label in labels):
        return False
    # Rejects IPv4 addresses.
    return not labels[-1].isdigit()


def _upstream_host(target: str) -> str:
    """Reduce a proxy_pass target to its host part."""
    if "$" in target:
        return ""
    try:
        return urlsplit(target if "://" in target else f"//{target}").hostname or ""
    except ValueError:
        return ""


def extract_domains(content: str) -> List[str]:
    """Extract hostnames from server_name and proxy_pass directives.

    Comments are dropped, directive names and the terminating ``;`` are
    stripped, and values are split on whitespace. Tokens that are not
    hostnames (nginx variables, IP addresses, ``_``, ``localhost``) are
    discarded. The result is lower-cased, deduplicated and sorted, so the same
    content always yields the same list regardless of declaration order.
    """
    found = set()
    for raw_line in (content or "").splitlines():
        line = raw_line.split("#", 1)[0]
        if not line.strip():
            continue
        for statement in line.split(";"):
            match = DIRECTIVE_RE.match(statement)
            if not match:
                continue
            directive, value = match.groups()
            for token in value.split():
                if directive == "proxy_pass":
                    token = _upstream_host(token)
                token = token.lower().rstrip(".")
                if token and _is_hostname(token):
                    found.add(token)
    return sorted(found)


def canonical_domains(domains: List[str]) -> str:
    """Serialize a domain list into the form that gets hashed."""
    return " ".join(sorted(set(domains)))


def root_domain(hostname: str) -> str:
    """Return the last two labels of a hostname (``example.com`` for ``a.b.example.com``)."""
    labels = hostname.lower().rstrip(".").split(".")
    return ".".join(labels[-2:])


# =============================================================================
# Domain Exclusions
# =============================================================================


def _parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Parse hostname exclusion patterns from env var."""
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item).replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def _is_domain_excluded(domain: str, patterns: List[re.Pattern]) -> bool:
    return any(pattern.search(domain) for pattern in patterns)


# =============================================================================
# Record Policy
# =============================================================================


def _parse_record_settings(raw: Any, base: RecordSettings, where: str) -> RecordSettings:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} must be a mapping, got {type(raw).__name__}")
    try:
        ttl = int(raw.get("ttl", base.ttl))
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where}.ttl must be an integer")
    if ttl != 1 and not 30 <= ttl <= 86400:
        raise ConfigurationError(f"{where}.ttl must be 1 (automatic) or between 30 and 86400")
    proxied = _parse_bool(raw.get("proxied"), default=base.proxied)
    return RecordSettings(ttl=ttl, proxied=proxied)


def load_record_policy(path: str, default_ttl: int = 1, default_proxied: bool = True) -> RecordPolicy:
    """Build the record policy from env defaults and an optional YAML file.

    Raises:
        ConfigurationError: the file is set but missing, unreadable or malformed.
    """
    base = _parse_record_settings(
        {"ttl": default_ttl, "proxied": default_proxied}, RecordSettings(), "RECORD_TTL/RECORD_PROXIED"
    )
    if not path:
        return RecordPolicy(defaults=base)

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read record policy {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in record policy {path}: {e}")

    if data is None:
        return RecordPolicy(defaults=base)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Record policy {path} must be a mapping")

    defaults = _parse_record_settings(data.get("defaults"), base, "defaults")
    zones_raw = data.get("zones") or {}
    if not isinstance(zones_raw, dict):
        raise ConfigurationError(f"'zones' in record policy {path} must be a mapping")

    zones: Dict[str, RecordSettings] = {}
    for zone_name, zone_raw in zones_raw.items():
        zone_key = str(zone_name).lower().strip().rstrip(".")
        zones[zone_key] = _parse_record_settings(zone_raw, defaults, f"zones.{zone_key}")

    return RecordPolicy(defaults=defaults, zones=zones)


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers managing CNAME records."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the provider accepts our credentials."""
        pass

    @abstractmethod
    def find_zone_id(self, root: str) -> Optional[str]:
        """Return the id of the active zone for a root domain, or None."""
        pass

    @abstractmethod
    def list_cname_records(self, zone_id: str) -> List[DNSRecord]:
        """Return every CNAME record in a zone."""
        pass

    @abstractmethod
    def create_record(
        self, zone_id: str, name: str, content: str, settings: RecordSettings
    ) -> str:
        """Create a CNAME record and return its id."""
        pass

    @abstractmethod
    def update_record(
        self, zone_id: str, record_id: str, name: str, content: str, settings: RecordSettings
    ) -> None:
        """Overwrite an existing CNAME record in place."""
        pass

    @abstractmethod
    def delete_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record by id."""
        pass


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 API provider.

    Every call is authenticated with a bearer token and only counts as
    successful when the response body says ``"success": true``. Failures raise
    CloudflareAPIError with Cloudflare's ``errors`` attached; nothing is
    retried.
    """

    PER_PAGE = 5000

    def __init__(self, api_token: str, base_url: str = CF_API_URL, timeout_seconds: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def call(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}/{endpoint.lstrip('/')}"
        logger.debug(f"API call: {method} {url}")
        try:
            response = self._session.request(
                method, url, json=payload, params=params, timeout=self._timeout
            )
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise CloudflareAPIError(f"{method} {endpoint} failed: {e}")

        if not isinstance(data, dict) or data.get("success") is not True:
            errors = data.get("errors") if isinstance(data, dict) else data
            raise CloudflareAPIError(
                f"Cloudflare API call failed. Endpoint: {endpoint}. Errors: {json.dumps(errors)}",
                errors=errors,
            )
        return data

    def test_connection(self) -> bool:
        try:
            self.call("GET", "user/tokens/verify")
            logger.info(f"{self.name} token verified")
            return True
        except CloudflareAPIError as e:
            logger.error(f"Failed to verify {self.name} token: {e}")
            return False

    def find_zone_id(self, root: str) -> Optional[str]:
        data = self.call("GET", "zones", params={"name": root, "status": "active"})
        result = data.get("result") or []
        if not result or not isinstance(result[0], dict):
            return None
        return result[0].get("id") or None

    def list_cname_records(self, zone_id: str) -> List[DNSRecord]:
        records: List[DNSRecord] = []
        page = 1
        while True:
            data = self.call(
                "GET",
                f"zones/{zone_id}/dns_records",
                params={"type": "CNAME", "per_page": self.PER_PAGE, "page": page},
            )
            for r in data.get("result") or []:
                if not isinstance(r, dict) or not r.get("id") or not r.get("name"):
                    logger.warning(f"Skipping malformed record: {r}")
                    continue
                records.append(
                    DNSRecord(
                        id=r["id"],
                        name=r["name"],
                        content=r.get("content", ""),
                        ttl=int(r.get("ttl", 1)),
                        proxied=bool(r.get("proxied", False)),
                    )
                )
            total_pages = (data.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                return records
            page += 1

    @staticmethod
    def _payload(name: str, content: str, settings: RecordSettings) -> Dict[str, Any]:
        return {
            "type": "CNAME",
            "name": name,
            "content": content,
            "ttl": settings.ttl,
            "proxied": settings.proxied,
        }

    def create_record(
        self, zone_id: str, name: str, content: str, settings: RecordSettings
    ) -> str:
        data = self.call(
            "POST", f"zones/{zone_id}/dns_records", self._payload(name, content, settings)
        )
        return str((data.get("result") or {}).get("id", ""))

    def update_record(
        self, zone_id: str, record_id: str, name: str, content: str, settings: RecordSettings
    ) -> None:
        self.call(
            "PUT",
            f"zones/{zone_id}/dns_records/{record_id}",
            self._payload(name, content, settings),
        )

    def delete_record(self, zone_id: str, record_id: str) -> None:
        self.call("DELETE", f"zones/{zone_id}/dns_records/{record_id}")


def create_dns_provider() -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    return CloudflareDNSProvider(CF_API_TOKEN, CF_API_URL, CF_API_TIMEOUT_SECONDS)


# =============================================================================
# Zone & Record Cache
# =============================================================================


class ZoneRecordCache:
    """Zone ids and CNAME records memoized for one file-processing run.

    A new cache is built for every run, so zone or record changes made outside
    this daemon are picked up on the next event. Mutations are sent straight
    to the provider and not written back here; each hostname is touched at
    most once per run.
    """

    def __init__(self, dns_provider: DNSProvider, label: str = ""):
        self._provider = dns_provider
        self._label = label
        self._zone_ids: Dict[str, str] = {}
        self._missing_zones: Dict[str, str] = {}
        self._records: Dict[str, List[DNSRecord]] = {}

    def resolve_zone(self, root: str) -> str:
        if root in self._zone_ids:
            logger.debug(f"({self._label}) Using cached zone_id for {root}: {self._zone_ids[root]}")
            return self._zone_ids[root]
        if root in self._missing_zones:
            raise ZoneNotFoundError(self._missing_zones[root])

        logger.debug(f"({self._label}) Querying zone_id for {root}")
        try:
            zone_id = self._provider.find_zone_id(root)
        except CloudflareAPIError as e:
            self._missing_zones[root] = f"Zone lookup failed for {root}: {e}"
            raise ZoneNotFoundError(self._missing_zones[root])
        if not zone_id:
            self._missing_zones[root] = f"Zone not found for root domain: {root}"
            raise ZoneNotFoundError(self._missing_zones[root])

        self._zone_ids[root] = zone_id
        return zone_id

    def records_of(self, zone_id: str) -> List[DNSRecord]:
        if zone_id not in self._records:
            logger.debug(f"({self._label}) Loading CNAME records for zone_id={zone_id}")
            self._records[zone_id] = self._provider.list_cname_records(zone_id)
            logger.debug(f"({self._label}) Loaded and cached {len(self._records[zone_id])} records")
        return self._records[zone_id]

    def find_record_id(self, zone_id: str, hostname: str) -> Optional[str]:
        for record in self.records_of(zone_id):
            if record.name == hostname:
                return record.id
        return None

    def group_by_zone(self, hostnames: List[str]) -> Tuple[Dict[str, List[str]], List[str]]:
        """Group hostnames by zone id; returns (groups, unresolved hostnames)."""
        groups: Dict[str, List[str]] = {}
        unresolved: List[str] = []
        for hostname in hostnames:
            try:
                zone_id = self.resolve_zone(root_domain(hostname))
            except ZoneNotFoundError as e:
                logger.error(f"({self._label}) Skipping {hostname}: {e}")
                unresolved.append(hostname)
                continue
            groups.setdefault(zone_id, []).append(hostname)
        return groups, unresolved


# =============================================================================
# Change Hash Store
# =============================================================================

HEX_DIGEST_RE = re.compile(r"[0-9a-f]{64}")


class HashStore:
    """Per-file digest of the last applied domain list.

    Each watched file gets ``<path>/<filename>.digest``, a JSON document with
    the sha256 of the canonical domain list and the list itself, so a deleted
    file can still be cleaned up. Files containing only a bare hex digest are
    read as entries without a domain list.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    @staticmethod
    def digest(canonical: str) -> str:
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def _entry_path(self, filename: str) -> Path:
        return self.path / f"{filename}{HASH_SUFFIX}"

    def get(self, filename: str) -> Optional[HashEntry]:
        entry_path = self._entry_path(filename)
        if not entry_path.exists():
            return None
        try:
            raw = entry_path.read_text("utf-8").strip()
        except OSError as e:
            logger.warning(f"({filename}) Failed to read hash entry {entry_path}: {e}")
            return None

        if HEX_DIGEST_RE.fullmatch(raw):
            return HashEntry(filename=filename, digest=raw)

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"({filename}) Ignoring corrupt hash entry {entry_path}: {e}")
            return None

        digest = data.get("digest") if isinstance(data, dict) else None
        domains = data.get("domains") if isinstance(data, dict) else None
        if not isinstance(digest, str) or not isinstance(domains, list):
            logger.warning(f"({filename}) Ignoring malformed hash entry {entry_path}")
            return None
        try:
            updated_at = int(data.get("updated_at", 0) or 0)
        except (TypeError, ValueError):
            logger.warning(f"({filename}) Ignoring bad updated_at in hash entry {entry_path}")
            updated_at = 0
        return HashEntry(
            filename=filename,
            digest=digest,
            domains=tuple(d for d in domains if isinstance(d, str)),
            updated_at=updated_at,
        )

    def should_apply(self, filename: str, canonical: str) -> bool:
        entry = self.get(filename)
        return entry is None or entry.digest != self.digest(canonical)

    def commit(self, filename: str, domains: List[str]) -> HashEntry:
        ordered = sorted(set(domains))
        entry = HashEntry(
            filename=filename,
            digest=self.digest(canonical_domains(ordered)),
            domains=tuple(ordered),
            updated_at=int(time.time()),
        )
        self.path.mkdir(parents=True, exist_ok=True)
        entry_path = self._entry_path(filename)
        tmp_path = entry_path.with_name(entry_path.name + ".tmp")
        document = {
            "digest": entry.digest,
            "domains": list(entry.domains),
            "updated_at": entry.updated_at,
        }
        tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(entry_path)
        return entry

    def remove(self, filename: str) -> bool:
        try:
            self._entry_path(filename).unlink()
            return True
        except FileNotFoundError:
            return False

    def entries(self) -> Dict[str, HashEntry]:
        found: Dict[str, HashEntry] = {}
        if not self.path.is_dir():
            return found
        for entry_path in sorted(self.path.glob(f"*{HASH_SUFFIX}")):
            filename = entry_path.name[: -len(HASH_SUFFIX)]
            entry = self.get(filename)
            if entry is not None:
                found[filename] = entry
        return found


# =============================================================================
# Locking
# =============================================================================


class SingletonGuard:
    """Process-wide exclusive lock on a well-known file (flock, non-blocking).

    The kernel drops the lock when the process exits, however it exits.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._handle = None

    def acquire(self) -> None:
        handle = open(self.path, "a+")
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            handle.close()
            raise SingletonConflictError(
                f"Another instance is already running (lock held on {self.path}): {e}"
            )
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        fcntl.flock(self._handle, fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None

    def __enter__(self) -> "SingletonGuard":
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


class FileLockManager:
    """Per-file exclusive markers under ``<lock_dir>/<filename>.lock``.

    ``os.mkdir`` is atomic, so exactly one caller wins, whether the contenders
    are threads or separate processes. Losers get False immediately.
    """

    def __init__(self, lock_dir: str):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def _lock_path(self, filename: str) -> Path:
        return self.lock_dir / f"{filename}{LOCK_SUFFIX}"

    def try_acquire(self, filename: str) -> bool:
        lock_path = self._lock_path(filename)
        try:
            os.mkdir(lock_path)
        except FileExistsError:
            return False
        try:
            (lock_path / "pid").write_text(str(os.getpid()), "utf-8")
        except OSError:
            shutil.rmtree(lock_path, ignore_errors=True)
            raise
        return True

    def release(self, filename: str) -> None:
        shutil.rmtree(self._lock_path(filename), ignore_errors=True)

    def is_locked(self, filename: str) -> bool:
        return self._lock_path(filename).exists()

    @contextmanager
    def hold(self, filename: str) -> Iterator[bool]:
        acquired = self.try_acquire(filename)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(filename)

    def clear_stale(self) -> int:
        """Remove every lock left behind by a previous run."""
        cleared = 0
        for lock_path in self.lock_dir.iterdir():
            if lock_path.is_dir():
                shutil.rmtree(lock_path, ignore_errors=True)
            else:
                lock_path.unlink()
            cleared += 1
        return cleared


# =============================================================================
# Core Reconciler
# =============================================================================


class AutoDNSReconciler:
    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        hash_store: HashStore,
        record_policy: Optional[RecordPolicy] = None,
        exclude_patterns: Optional[List[re.Pattern]] = None,
        require_full_success: bool = False,
    ):
        self.dns_provider = dns_provider
        self.hash_store = hash_store
        self.record_policy = record_policy or RecordPolicy()
        self.exclude_patterns = exclude_patterns or []
        self.require_full_success = require_full_success

    def process_file(self, path: str | Path) -> Outcome:
        """Converge DNS for one watched file: update if it exists, clean up if not."""
        path = Path(path)
        if path.is_file():
            return self._run_update(path)
        return self._run_cleanup(path.name)

    def orphaned_files(self, watch_dir: str | Path) -> List[Path]:
        """Files with a stored digest that no longer exist in the watch directory."""
        watch_path = Path(watch_dir)
        return [
            watch_path / filename
            for filename in sorted(self.hash_store.entries())
            if not (watch_path / filename).exists()
        ]

    def _managed_domains(self, content: str, filename: str) -> List[str]:
        domains = []
        for domain in extract_domains(content):
            if _is_domain_excluded(domain, self.exclude_patterns):
                logger.debug(f"({filename}) Excluding domain '{domain}' (matches exclusion pattern)")
                continue
            domains.append(domain)
        return domains

    def _claimed_elsewhere(self, filename: str) -> Set[str]:
        claimed: Set[str] = set()
        for other, entry in self.hash_store.entries().items():
            if other != filename:
                claimed.update(entry.domains)
        return claimed

    def _run_update(self, path: Path) -> Outcome:
        filename = path.name
        logger.info(f"({filename}) Processing file for update/creation")
        try:
            content = path.read_text("utf-8", errors="replace")
        except FileNotFoundError:
            logger.info(f"({filename}) File vanished before it could be read")
            return self._run_cleanup(filename)
        except OSError as e:
            logger.error(f"({filename}) Cannot read file: {e}")
            return Outcome.FAILED

        domains = self._managed_domains(content, filename)
        if not domains:
            logger.info(f"({filename}) Skipped: file is empty or contains no valid domains")
            return Outcome.SKIPPED

        canonical = canonical_domains(domains)
        if not self.hash_store.should_apply(filename, canonical):
            digest = self.hash_store.digest(canonical)
            logger.info(
                f"({filename}) Skipped: no changes detected (hash: {digest[:7]}). "
                f"Domains: {','.join(domains)}"
            )
            return Outcome.SKIPPED

        previous = self.hash_store.get(filename)
        cache = ZoneRecordCache(self.dns_provider, filename)
        groups, unresolved = cache.group_by_zone(domains)
        failures = len(unresolved)

        for zone_id, hostnames in groups.items():
            try:
                cache.records_of(zone_id)
            except CloudflareAPIError as e:
                logger.error(f"({filename}) Cannot load records for zone {zone_id}: {e}")
                failures += len(hostnames)
                continue
            for hostname in hostnames:
                if not self._upsert(cache, zone_id, hostname, filename):
                    failures += 1

        dropped = sorted(set(previous.domains) - set(domains)) if previous else []
        if dropped:
            logger.info(f"({filename}) Domains no longer declared: {','.join(dropped)}")
            failures += self._delete_hostnames(cache, filename, dropped)

        if failures and self.require_full_success:
            logger.warning(
                f"({filename}) {failures} domain(s) failed; hash not committed, will retry on next event"
            )
            return Outcome.FAILED

        self.hash_store.commit(filename, domains)
        if failures:
            logger.warning(f"({filename}) Domains updated with {failures} failure(s): {','.join(domains)}")
        else:
            logger.info(f"({filename}) Domains updated: {','.join(domains)}")
        return Outcome.COMMITTED

    def _upsert(self, cache: ZoneRecordCache, zone_id: str, hostname: str, filename: str) -> bool:
        settings = self.record_policy.for_zone(root_domain(hostname))
        record_id = cache.find_record_id(zone_id, hostname)
        try:
            if record_id:
                self.dns_provider.update_record(zone_id, record_id, hostname, hostname, settings)
                logger.info(f"({filename}) Updated CNAME {hostname}")
            else:
                self.dns_provider.create_record(zone_id, hostname, hostname, settings)
                logger.info(f"({filename}) Created CNAME {hostname}")
            return True
        except CloudflareAPIError as e:
            logger.error(f"({filename}) Failed to apply CNAME {hostname}: {e}")
            return False

    def _delete_hostnames(self, cache: ZoneRecordCache, filename: str, hostnames: List[str]) -> int:
        """Delete records for hostnames no other file claims; returns the failure count."""
        claimed = self._claimed_elsewhere(filename)
        targets = []
        for hostname in hostnames:
            if hostname in claimed:
                logger.info(f"({filename}) Keeping {hostname}: still declared by another file")
                continue
            targets.append(hostname)

        groups, unresolved = cache.group_by_zone(targets)
        failures = len(unresolved)
        for zone_id, zone_hostnames in groups.items():
            try:
                cache.records_of(zone_id)
            except CloudflareAPIError as e:
                logger.error(f"({filename}) Cannot load records for zone {zone_id}: {e}")
                failures += len(zone_hostnames)
                continue
            for hostname in zone_hostnames:
                record_id = cache.find_record_id(zone_id, hostname)
                if not record_id:
                    logger.debug(f"({filename}) No CNAME record for {hostname}, nothing to delete")
                    continue
                try:
                    self.dns_provider.delete_record(zone_id, record_id)
                    logger.info(f"({filename}) Deleted CNAME {hostname}")
                except CloudflareAPIError as e:
                    logger.error(f"({filename}) Failed to delete CNAME {hostname}: {e}")
                    failures += 1
        return failures

    def _run_cleanup(self, filename: str) -> Outcome:
        logger.info(f"({filename}) Processing file for deletion")
        entry = self.hash_store.get(filename)
        if entry is None:
            logger.info(f"({filename}) Skipped: no hash entry found, nothing to clean up")
            return Outcome.SKIPPED

        if not entry.domains:
            logger.warning(
                f"({filename}) Hash entry has no stored domain list; records cannot be targeted"
            )
            self.hash_store.remove(filename)
            return Outcome.CLEARED

        cache = ZoneRecordCache(self.dns_provider, filename)
        failures = self._delete_hostnames(cache, filename, list(entry.domains))

        if failures and self.require_full_success:
            logger.warning(
                f"({filename}) {failures} domain(s) failed to clean up; hash entry kept for retry"
            )
            return Outcome.FAILED

        self.hash_store.remove(filename)
        logger.info(f"({filename}) Cleanup completed for domains: {','.join(entry.domains)}")
        return Outcome.CLEARED


# =============================================================================
# Event Handling
# =============================================================================


class EventDispatcher:
    """Runs reconciliation for file events under the per-file lock.

    An event for a file that is already being processed is dropped, not
    queued: the running pass reads the file after the newer change anyway, or
    the next event will.
    """

    def __init__(
        self,
        *,
        reconciler: AutoDNSReconciler,
        lock_manager: FileLockManager,
        delete_confirm_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.reconciler = reconciler
        self.lock_manager = lock_manager
        self.delete_confirm_seconds = delete_confirm_seconds
        self._sleep = sleep

    def handle_event(self, kind: EventKind, path: str | Path) -> Optional[Outcome]:
        """Process one event; returns None when the lock was contended."""
        filename = Path(path).name
        with self.lock_manager.hold(filename) as acquired:
            if not acquired:
                logger.info(
                    f"({filename}) Lock in use. Another worker is processing it. "
                    f"Event ignored: [{kind.value}]"
                )
                return None

            logger.debug(f"({filename}) Lock acquired. Processing event: [{kind.value}]")
            if kind.is_removal:
                logger.debug(
                    f"({filename}) {kind.value} event detected. "
                    f"Waiting {self.delete_confirm_seconds}s to confirm..."
                )
                self._sleep(self.delete_confirm_seconds)

            return self.reconciler.process_file(path)

    def process_safely(self, kind: EventKind, path: str | Path) -> Optional[Outcome]:
        try:
            return self.handle_event(kind, path)
        except Exception as e:
            logger.error(
                f"({Path(path).name}) Unexpected error while processing [{kind.value}]: {e}",
                exc_info=True,
            )
            return Outcome.FAILED

    def dispatch(self, kind: EventKind, path: str | Path) -> threading.Thread:
        """Handle an event on its own thread without waiting for it."""
        worker = threading.Thread(
            target=self.process_safely,
            args=(kind, path),
            name=f"{Path(path).name}:{kind.value}",
            daemon=True,
        )
        worker.start()
        return worker


class WatchDirectoryHandler(FileSystemEventHandler):
    """Maps watchdog events in the watch directory to dispatcher events."""

    def __init__(self, dispatcher: EventDispatcher, suffix: str = ".conf"):
        super().__init__()
        self._dispatcher = dispatcher
        self._suffix = suffix

    def _submit(self, kind: EventKind, raw_path: Any) -> Optional[threading.Thread]:
        path = os.fsdecode(raw_path)
        if not path.endswith(self._suffix):
            logger.debug(f"Ignoring event on non-{self._suffix} file: {path}")
            return None
        return self._dispatcher.dispatch(kind, path)

    def on_closed(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._submit(EventKind.CLOSE_WRITE, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._submit(EventKind.DELETE, event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        # A file moved in from outside the directory is reported as created.
        if event.is_directory:
            return
        self._submit(EventKind.MOVED_TO, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._submit(EventKind.MOVED_TO, event.dest_path)


def find_watched_files(watch_dir: str | Path, suffix: str = ".conf") -> List[Path]:
    """Regular files directly inside watch_dir whose name ends with suffix."""
    path = Path(watch_dir)
    if not path.is_dir():
        return []
    return sorted(p for p in path.iterdir() if p.is_file() and p.name.endswith(suffix))


def run_initial_sync(
    dispatcher: EventDispatcher, watch_dir: str | Path, suffix: str = ".conf"
) -> Dict[str, Optional[Outcome]]:
    """Process every existing file, then every orphaned hash entry, one at a time."""
    outcomes: Dict[str, Optional[Outcome]] = {}
    for path in find_watched_files(watch_dir, suffix):
        outcomes[path.name] = dispatcher.process_safely(EventKind.INITIAL_SYNC, path)

    orphans = dispatcher.reconciler.orphaned_files(watch_dir)
    if orphans:
        logger.info(
            f"Cleaning up {len(orphans)} file(s) removed while stopped: "
            f"{', '.join(p.name for p in orphans)}"
        )
    for path in orphans:
        outcomes[path.name] = dispatcher.process_safely(EventKind.INITIAL_SYNC, path)
    return outcomes


def watch(dispatcher: EventDispatcher, watch_dir: str, suffix: str = ".conf") -> None:
    """Dispatch live events from watch_dir until interrupted."""
    observer = Observer()
    observer.schedule(WatchDirectoryHandler(dispatcher, suffix), path=watch_dir, recursive=False)
    observer.start()
    try:
        while observer.is_alive():
            observer.join(timeout=1)
    finally:
        observer.stop()
        observer.join()


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not CF_API_TOKEN:
        errors.append("CF_API_TOKEN is not set. Please set it as an environment variable.")
    if not BASE_DIR:
        errors.append("BASE_DIR is not set. Please set it as an environment variable.")
    if not WATCH_DIR:
        errors.append("WATCH_DIR is not set. Please set it as an environment variable.")
    elif not Path(WATCH_DIR).is_dir():
        errors.append(f"WATCH_DIR does not exist or is not a directory: {WATCH_DIR}")
    if not WATCH_SUFFIX:
        errors.append("WATCH_SUFFIX must not be empty")
    if SYNC_MODE not in ("watch", "once"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if DELETE_CONFIRM_SECONDS < 0:
        errors.append("DELETE_CONFIRM_SECONDS must not be negative")

    try:
        load_record_policy(RECORD_POLICY_PATH, RECORD_TTL, RECORD_PROXIED)
    except ConfigurationError as e:
        errors.append(str(e))

    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return False

    return True


def main():
    """Main entry point."""
    guard = SingletonGuard(SINGLETON_LOCK_PATH)
    try:
        guard.acquire()
    except SingletonConflictError as e:
        logger.error(f"{e}. Aborting.")
        sys.exit(1)

    try:
        run(guard)
    finally:
        guard.release()


def run(guard: SingletonGuard) -> None:
    """Validate configuration, sync existing files, then watch for changes."""
    logger.info(f"cf-autodns: {WATCH_DIR} -> Cloudflare (lock: {guard.path})")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    record_policy = load_record_policy(RECORD_POLICY_PATH, RECORD_TTL, RECORD_PROXIED)
    exclude_patterns = _parse_exclude_patterns(EXCLUDE_DOMAINS)
    if exclude_patterns:
        logger.info(f"Domain exclusions: {len(exclude_patterns)} pattern(s) configured")
    if record_policy.zones:
        logger.info(f"Record policy overrides for zones: {', '.join(sorted(record_policy.zones))}")
    logger.info(f"Sync mode: {SYNC_MODE}")

    dns_provider = create_dns_provider()
    if not dns_provider.test_connection():
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    base = Path(BASE_DIR)
    lock_manager = FileLockManager(str(base / LOCK_SUBDIR))
    logger.info("Cleaning up old lock files (if any)...")
    cleared = lock_manager.clear_stale()
    if cleared:
        logger.info(f"Removed {cleared} stale lock(s)")

    reconciler = AutoDNSReconciler(
        dns_provider=dns_provider,
        hash_store=HashStore(str(base / HASH_SUBDIR)),
        record_policy=record_policy,
        exclude_patterns=exclude_patterns,
        require_full_success=REQUIRE_FULL_SUCCESS,
    )
    dispatcher = EventDispatcher(
        reconciler=reconciler,
        lock_manager=lock_manager,
        delete_confirm_seconds=DELETE_CONFIRM_SECONDS,
    )

    try:
        logger.info("Performing initial sync...")
        run_initial_sync(dispatcher, WATCH_DIR, WATCH_SUFFIX)
        if SYNC_MODE == "once":
            logger.info("Initial sync complete")
            return

        logger.info("Initial sync complete. Listening for changes...")
        watch(dispatcher, WATCH_DIR, WATCH_SUFFIX)

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
