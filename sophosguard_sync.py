#!/usr/bin/env python3
"""
SophosGuard Sync

Keeps a Sophos firewall blocklist synchronized with the IPThreat.net
threat feed. Each update cycle fetches one or more threat levels, diffs
them against the last applied snapshot, persists the new snapshot and
pushes it to the firewall XML API as a set of named IP lists referenced
by a single drop rule.

Features:
- IPThreat feed parsing with bounded range expansion
- Crash-safe local snapshot with rotated timestamped backups
- Chunked IP list uploads (1000 addresses per list)
- Single-flight scheduler with phase-scoped retries
- Short retry after a failed cycle
- Optional Prometheus metrics via Pushgateway

License: MIT
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import shutil
import signal
import sys
import tempfile
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Set, TypeVar

import requests
from dotenv import load_dotenv
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, delete_from_gateway, push_to_gateway
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

LOGGER_NAME = "sophosguard-sync"
USER_AGENT = f"sophosguard-sync/{__version__}"

FEED_URL_TEMPLATE = "https://lists.ipthreat.net/file/ipthreat-lists/threat/threat-{level}.txt"

DEVICE_API_PORT = 4444
DEVICE_API_PATH = "webconsole/APIController"

MIN_THREAT_LEVEL = 0
MAX_THREAT_LEVEL = 100

# Ranges wider than this are rejected instead of expanded
MAX_RANGE_SPAN = 1000

# Sophos rejects IP lists above this size
CHUNK_SIZE = 1000
LIST_PREFIX = "IPThreatList"

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 30
RETRY_AFTER_FAILURE_MINUTES = 5

# Triggers closer than the interval minus this slack are treated as duplicates
GUARD_TOLERANCE_SECONDS = 5
BACKUP_RETENTION = 5

# Individual added/removed addresses logged per cycle
MAX_LOGGED_CHANGES = 10

T = TypeVar("T")


# =============================================================================
# Errors
# =============================================================================

class SyncError(Exception):
    """Base class for failures of an update cycle."""

    kind = "SyncError"


class ThreatLevelError(SyncError, ValueError):
    """Raised when a threat level is outside [0, 100]."""

    kind = "InvalidThreatLevel"


class FeedUnreachable(SyncError):
    """Network or HTTP failure fetching the threat feed."""

    kind = "FeedUnreachable"


class FeedEmpty(SyncError):
    """The feed returned nothing although a non-empty list is applied."""

    kind = "FeedEmpty"


class PersistFailure(SyncError):
    """The snapshot could not be written to disk."""

    kind = "PersistFailure"


class RemoteError(SyncError):
    kind = "RemoteError"


class RemoteAuthFailure(RemoteError):
    """The firewall rejected the configured credentials."""

    kind = "RemoteAuthFailure"


class RemoteApiFailure(RemoteError):
    """The firewall reported an error in the response body."""

    kind = "RemoteApiFailure"

    def __init__(self, message: str, response_body: str = ""):
        super().__init__(message)
        self.response_body = response_body[:500]


class RemoteTransportFailure(RemoteError):
    """Network or HTTP-level failure reaching the firewall."""

    kind = "RemoteTransportFailure"


class CycleCancelled(SyncError):
    """A stop was requested while the cycle was waiting to retry."""

    kind = "CycleCancelled"


def error_kind(exc: BaseException) -> str:
    """
    Stable, bounded category for an exception.

    Used as a log prefix and as a Prometheus label value, so it must never
    be the raw exception text.
    """
    if isinstance(exc, SyncError):
        return exc.kind
    return type(exc).__name__[:64]


def validate_threat_level(level: object) -> int:
    """
    Check a threat level at the point of use.

    Out-of-range values are rejected, never clamped.
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise ThreatLevelError(f"Threat level must be an integer, got {level!r}")
    if not MIN_THREAT_LEVEL <= level <= MAX_THREAT_LEVEL:
        raise ThreatLevelError(
            f"Threat level {level} is outside the valid range "
            f"{MIN_THREAT_LEVEL}-{MAX_THREAT_LEVEL}"
        )
    return level


# =============================================================================
# Environment Variable Validation
# =============================================================================

# Every boolean environment variable read by Config.from_env()
BOOL_ENV_VARS: set[str] = {
    "SOPHOS_VERIFY_TLS",
    "ENABLE_MULTIPLE_LISTS",
    "RULE_LOG_TRAFFIC",
    "RUN_ON_START",
    "CHECK_CONNECTION",
    "DRY_RUN",
    "LOG_TIMESTAMPS",
    "METRICS_ENABLED",
}

# Valid boolean string values (case-insensitive)
VALID_BOOL_VALUES: set[str] = {"true", "false", "1", "0", "yes", "no", "on", "off"}


def validate_bool_value(var_name: str, value: str) -> tuple[bool, Optional[str]]:
    """
    Validate that a value is a valid boolean string.

    Returns (is_valid, error_message).
    """
    if value.strip().lower() in VALID_BOOL_VALUES:
        return True, None

    return False, (
        f"Invalid value for {var_name}: '{value}'\n"
        f"  Expected one of: true, false, 1, 0, yes, no, on, off (case-insensitive)"
    )


def validate_bool_env_vars() -> tuple[bool, list[str]]:
    """
    Validate all boolean environment variables that are set.

    Returns (is_valid, list_of_errors).
    """
    errors: list[str] = []
    for var_name in sorted(BOOL_ENV_VARS):
        value = os.environ.get(var_name)
        if value is None:
            continue
        is_valid, error = validate_bool_value(var_name, value)
        if not is_valid:
            errors.append(error)
    return len(errors) == 0, errors


# =============================================================================
# Configuration
# =============================================================================

def read_secret_file(file_path: str) -> str:
    """Read a secret from a file, supporting multiple formats.

    Supports:
    - Docker secrets pattern: single line with just the password
    - YAML-ish credentials: a 'password: <value>' line
    """
    with open(file_path, "r", encoding="utf-8") as f:
        lines = f.readlines()
        if len(lines) == 1:
            return lines[0].strip()
        for line in lines:
            if line.strip().startswith("password:"):
                return line.replace("password:", "", 1).strip()
        return "".join(lines).strip()


def parse_level_list(value: str) -> tuple[int, ...]:
    """Parse a comma-separated list of threat levels ("25, 50,75")."""
    return tuple(int(part.strip()) for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Config:
    """Immutable configuration snapshot, loaded from environment variables."""

    # Firewall API
    device_host: str = ""
    device_port: int = DEVICE_API_PORT
    device_api_path: str = DEVICE_API_PATH
    username: str = ""
    password: str = field(default="", repr=False)
    password_file: str = ""
    verify_tls: bool = True
    ca_bundle: str = ""

    # Threat feed
    threat_level: int = MAX_THREAT_LEVEL
    enable_multiple_lists: bool = False
    additional_threat_levels: tuple[int, ...] = ()
    feed_url_template: str = FEED_URL_TEMPLATE
    fetch_timeout: int = 120
    request_timeout: int = 60

    # Scheduling
    update_interval_minutes: int = 60
    run_on_start: bool = True
    check_connection: bool = True
    max_retries: int = MAX_RETRIES
    retry_delay: int = RETRY_DELAY_SECONDS
    retry_after_failure_minutes: int = RETRY_AFTER_FAILURE_MINUTES

    # Local snapshot
    data_dir: str = "IPList"
    backup_count: int = BACKUP_RETENTION

    # Remote objects
    chunk_size: int = CHUNK_SIZE
    list_prefix: str = LIST_PREFIX
    rule_name: str = "Block_IPThreat_List"
    rule_description: str = "Block known malicious IPs from IPThreat.net"
    rule_action: str = "Drop"
    rule_position: str = "Top"
    rule_log_traffic: bool = True

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True
    log_file: str = ""

    # Dry run mode
    dry_run: bool = False

    # Prometheus metrics
    metrics_enabled: bool = False
    pushgateway_url: str = "localhost:9091"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables (and .env)."""
        load_dotenv()

        def get_bool(key: str, default: bool) -> bool:
            val = os.getenv(key, str(default)).strip().lower()
            return val in ("true", "1", "yes", "on")

        return cls(
            device_host=os.getenv("SOPHOS_HOST", "").strip(),
            device_port=int(os.getenv("SOPHOS_PORT", str(DEVICE_API_PORT))),
            device_api_path=os.getenv("SOPHOS_API_PATH", DEVICE_API_PATH),
            username=os.getenv("SOPHOS_USERNAME", ""),
            password=os.getenv("SOPHOS_PASSWORD", ""),
            password_file=os.getenv("SOPHOS_PASSWORD_FILE", ""),
            verify_tls=get_bool("SOPHOS_VERIFY_TLS", True),
            ca_bundle=os.getenv("SOPHOS_CA_BUNDLE", ""),
            threat_level=int(os.getenv("THREAT_LEVEL", str(MAX_THREAT_LEVEL))),
            enable_multiple_lists=get_bool("ENABLE_MULTIPLE_LISTS", False),
            additional_threat_levels=parse_level_list(os.getenv("ADDITIONAL_THREAT_LEVELS", "")),
            feed_url_template=os.getenv("FEED_URL_TEMPLATE", FEED_URL_TEMPLATE),
            fetch_timeout=int(os.getenv("FETCH_TIMEOUT", "120")),
            request_timeout=int(os.getenv("REQUEST_TIMEOUT", "60")),
            update_interval_minutes=int(os.getenv("UPDATE_INTERVAL_MINUTES", "60")),
            run_on_start=get_bool("RUN_ON_START", True),
            check_connection=get_bool("CHECK_CONNECTION", True),
            max_retries=int(os.getenv("MAX_RETRIES", str(MAX_RETRIES))),
            retry_delay=int(os.getenv("RETRY_DELAY", str(RETRY_DELAY_SECONDS))),
            retry_after_failure_minutes=int(
                os.getenv("RETRY_AFTER_FAILURE_MINUTES", str(RETRY_AFTER_FAILURE_MINUTES))
            ),
            data_dir=os.getenv("IPLIST_PATH", "IPList"),
            backup_count=int(os.getenv("BACKUP_COUNT", str(BACKUP_RETENTION))),
            chunk_size=int(os.getenv("CHUNK_SIZE", str(CHUNK_SIZE))),
            list_prefix=os.getenv("LIST_PREFIX", LIST_PREFIX),
            rule_name=os.getenv("RULE_NAME", "Block_IPThreat_List"),
            rule_description=os.getenv("RULE_DESCRIPTION", "Block known malicious IPs from IPThreat.net"),
            rule_action=os.getenv("RULE_ACTION", "Drop"),
            rule_position=os.getenv("RULE_POSITION", "Top"),
            rule_log_traffic=get_bool("RULE_LOG_TRAFFIC", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_timestamps=get_bool("LOG_TIMESTAMPS", True),
            log_file=os.getenv("LOG_FILE", ""),
            dry_run=get_bool("DRY_RUN", False),
            metrics_enabled=get_bool("METRICS_ENABLED", False),
            pushgateway_url=os.getenv("METRICS_PUSHGATEWAY_URL", "localhost:9091"),
        )

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors: list[str] = []

        if not self.dry_run:
            if not self.device_host:
                errors.append("SOPHOS_HOST is required")
            if not self.username:
                errors.append("SOPHOS_USERNAME is required")
            if not self.password and not self.password_file:
                errors.append("SOPHOS_PASSWORD or SOPHOS_PASSWORD_FILE is required")
        if self.password_file and not os.path.isfile(self.password_file):
            errors.append(f"SOPHOS_PASSWORD_FILE does not exist: {self.password_file}")

        try:
            validate_threat_level(self.threat_level)
        except ThreatLevelError as e:
            errors.append(f"THREAT_LEVEL: {e}")
        for level in self.additional_threat_levels:
            try:
                validate_threat_level(level)
            except ThreatLevelError as e:
                errors.append(f"ADDITIONAL_THREAT_LEVELS: {e}")

        if self.update_interval_minutes < 1:
            errors.append("UPDATE_INTERVAL_MINUTES must be at least 1")
        if not 1 <= self.chunk_size <= CHUNK_SIZE:
            errors.append(f"CHUNK_SIZE must be between 1 and {CHUNK_SIZE}")
        if self.max_retries < 1:
            errors.append("MAX_RETRIES must be at least 1")
        if self.retry_delay < 0:
            errors.append("RETRY_DELAY must not be negative")
        if self.retry_after_failure_minutes < 1:
            errors.append("RETRY_AFTER_FAILURE_MINUTES must be at least 1")
        if self.backup_count < 1:
            errors.append("BACKUP_COUNT must be at least 1")
        if "{level}" not in self.feed_url_template:
            errors.append("FEED_URL_TEMPLATE must contain a {level} placeholder")

        return errors

    @property
    def tls_verify(self) -> bool | str:
        """The requests ``verify`` value for the firewall session only."""
        if not self.verify_tls:
            return False
        return self.ca_bundle or True

    def credentials(self) -> "DeviceCredentials":
        """Build fresh credentials; the password file is re-read every call."""
        password = self.password
        if self.password_file:
            password = read_secret_file(self.password_file)
        return DeviceCredentials(
            host=self.device_host,
            username=self.username,
            password=password,
            port=self.device_port,
            api_path=self.device_api_path,
        )

    def rule_settings(self) -> "FirewallRuleSettings":
        return FirewallRuleSettings(
            name=self.rule_name,
            description=self.rule_description,
            action=self.rule_action,
            position=self.rule_position,
            log_traffic=self.rule_log_traffic,
        )


# =============================================================================
# Feed Parser
# =============================================================================

def parse_ipv4(token: str) -> Optional[ipaddress.IPv4Address]:
    """Parse a dotted-quad IPv4 address, returning None if invalid."""
    try:
        return ipaddress.IPv4Address(token.strip())
    except ValueError:
        return None


def ip_sort_key(address: str) -> int:
    """Numeric sort key for a dotted-quad address."""
    return int(ipaddress.IPv4Address(address))


def expand_range(start: ipaddress.IPv4Address, end: ipaddress.IPv4Address) -> list[str]:
    """
    Expand an inclusive address range into dotted-quad strings.

    Callers are expected to have checked the span against MAX_RANGE_SPAN.
    Returns an empty list when end < start.
    """
    first, last = int(start), int(end)
    if last < first:
        return []
    return [str(ipaddress.IPv4Address(value)) for value in range(first, last + 1)]


def _count_error(errors: Optional[dict[str, int]], token: str) -> None:
    if errors is None:
        return
    errors[token] = errors.get(token, 0) + 1


def parse_feed(
    raw_text: str,
    errors: Optional[dict[str, int]] = None,
    logger: Optional[logging.Logger] = None,
) -> frozenset[str]:
    """
    Parse IPThreat feed text into a deduplicated set of IPv4 addresses.

    Format, one entry per line:
    - Comment: everything from the first '#' is ignored
    - Address: 1.2.3.4
    - Range:   1.2.3.0-1.2.3.255 (inclusive, at most MAX_RANGE_SPAN wide)

    Malformed entries never raise; they are skipped and, when ``errors`` is
    given, counted per token.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    addresses: Set[str] = set()

    for line in raw_text.splitlines():
        token = line.split("#", 1)[0].strip()
        if not token:
            continue

        if "-" in token:
            bounds = token.split("-")
            if len(bounds) != 2:
                _count_error(errors, token)
                continue
            start, end = parse_ipv4(bounds[0]), parse_ipv4(bounds[1])
            if start is None or end is None or int(end) < int(start):
                _count_error(errors, token)
                continue
            if int(end) - int(start) > MAX_RANGE_SPAN:
                logger.warning(f"IP range too large, skipped: {start} - {end}")
                _count_error(errors, token)
                continue
            addresses.update(expand_range(start, end))
            continue

        ip = parse_ipv4(token)
        if ip is None:
            _count_error(errors, token)
            continue
        # str() gives the canonical form, so textual variants collapse
        addresses.add(str(ip))

    return frozenset(addresses)


# =============================================================================
# HTTP Client with Retry
# =============================================================================

def create_http_session(max_retries: int = MAX_RETRIES, verify: bool | str = True) -> requests.Session:
    """
    Create an HTTP session with transport-level retry logic.

    ``verify`` applies to this session only, so disabling certificate
    checks for the firewall never affects the feed session.
    """
    session = requests.Session()
    session.verify = verify
    session.headers.update({"User-Agent": USER_AGENT})

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,  # 1s, 2s, 4s...
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET", "POST"],
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


# =============================================================================
# Threat Feed Fetcher
# =============================================================================

class ThreatFeedClient:
    """Downloads and parses one IPThreat level per call."""

    def __init__(
        self,
        session: requests.Session,
        url_template: str = FEED_URL_TEMPLATE,
        timeout: int = 120,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.url_template = url_template
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def url_for(self, level: int) -> str:
        return self.url_template.format(level=validate_threat_level(level))

    def fetch(self, level: int) -> frozenset[str]:
        """
        Fetch and parse the feed for one threat level.

        Raises FeedUnreachable on any network or HTTP failure.
        """
        url = self.url_for(level)
        t0 = time.time()
        self.logger.debug(f"Fetching threat level {level} from {url}")

        try:
            response = self.session.get(
                url,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise FeedUnreachable(f"Threat level {level}: unavailable ({e})") from e

        text = response.content.decode("utf-8", errors="replace")
        parse_errors: dict[str, int] = {}
        addresses = parse_feed(text, errors=parse_errors, logger=self.logger)

        # Log parse errors (capped)
        for token in list(parse_errors)[:20]:
            self.logger.debug(f'threat-{level}: discarded "{token}" (×{parse_errors[token]})')

        nb_errors = sum(parse_errors.values())
        error_cnt = f", {nb_errors} discarded entries" if nb_errors > 0 else ""
        self.logger.debug(
            f"threat-{level}: {len(addresses)} unique IPs{error_cnt} "
            f"in {time.time() - t0:.1f}s"
        )
        return addresses


# =============================================================================
# Snapshot Store
# =============================================================================

@dataclass(frozen=True)
class Snapshot:
    """The address set currently considered applied to the firewall."""

    addresses: frozenset[str]
    timestamp: Optional[datetime]  # None means "never saved"
    count: int

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(addresses=frozenset(), timestamp=None, count=0)

    @property
    def is_empty(self) -> bool:
        return self.count == 0


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


class SnapshotStore:
    """
    Persists the current address set plus rotated timestamped backups.

    Layout inside ``directory``:
      current_ip_list.json              the current snapshot
      ip_list_<YYYYmmddHHMMSSffffff>.json  backups, newest ``backup_count`` kept

    Saves write a temporary file in the same directory and atomically
    replace the current file, so readers never see a half-written snapshot.
    """

    CURRENT_FILE = "current_ip_list.json"
    BACKUP_GLOB = "ip_list_*.json"

    def __init__(
        self,
        directory: str | Path,
        backup_count: int = BACKUP_RETENTION,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.directory = Path(directory)
        self.backup_count = backup_count
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._clock = clock

    @property
    def current_path(self) -> Path:
        return self.directory / self.CURRENT_FILE

    def load(self) -> Snapshot:
        """
        Return the current snapshot, or an empty one if none exists.

        Never raises: read or decode errors are logged and degrade to the
        empty snapshot.
        """
        path = self.current_path
        if not path.exists():
            return Snapshot.empty()

        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            addresses = frozenset(str(ip) for ip in data.get("IPAddresses") or [])
            last_updated = data.get("LastUpdated")
            timestamp = datetime.fromisoformat(last_updated) if last_updated else None
        except (OSError, ValueError, TypeError, AttributeError) as e:
            self.logger.error(f"Error loading IP list from {path}: {e}")
            return Snapshot.empty()

        return Snapshot(addresses=addresses, timestamp=timestamp, count=len(addresses))

    def save(self, addresses: Iterable[str]) -> Snapshot:
        """
        Write a new current snapshot and a timestamped backup of it.

        Raises PersistFailure if any step up to and including the backup
        copy fails. Backup rotation afterwards is best effort.
        """
        ordered = sorted(set(addresses), key=ip_sort_key)
        timestamp = self._clock()
        payload = {
            "IPAddresses": ordered,
            "LastUpdated": timestamp.isoformat(),
            "Count": len(ordered),
        }

        current = self.current_path
        tmp_path: Optional[Path] = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)

            # Write to temp file first, in the same directory so the
            # replace below stays on one filesystem
            fd, tmp_name = tempfile.mkstemp(prefix=".current_ip_list.", suffix=".tmp", dir=self.directory)
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # mkstemp creates 0600 files; readers of the snapshot need the usual mode
            os.chmod(tmp_path, 0o666 & ~_current_umask())
            os.replace(tmp_path, current)
            tmp_path = None

            backup = self._backup_path(timestamp)
            shutil.copyfile(current, backup)
        except OSError as e:
            raise PersistFailure(f"Error saving IP list to {current}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    tmp_path.unlink()
                except OSError:
                    self.logger.debug(f"Could not remove temporary file {tmp_path}")

        self.logger.debug(f"Saved snapshot with {len(ordered)} addresses, backup {backup.name}")
        self._rotate_backups()

        return Snapshot(addresses=frozenset(ordered), timestamp=timestamp, count=len(ordered))

    def list_backups(self) -> list[Path]:
        """Backup files, newest first."""
        backups: list[tuple[int, str, Path]] = []
        for path in self.directory.glob(self.BACKUP_GLOB):
            try:
                backups.append((path.stat().st_mtime_ns, path.name, path))
            except OSError:
                # Removed between glob and stat
                continue
        backups.sort(reverse=True)
        return [path for _, _, path in backups]

    def _backup_path(self, timestamp: datetime) -> Path:
        stem = f"ip_list_{timestamp:%Y%m%d%H%M%S%f}"
        path = self.directory / f"{stem}.json"
        suffix = 1
        while path.exists():
            path = self.directory / f"{stem}_{suffix}.json"
            suffix += 1
        return path

    def _rotate_backups(self) -> None:
        """Delete all but the newest ``backup_count`` backups."""
        for path in self.list_backups()[self.backup_count:]:
            try:
                path.unlink()
                self.logger.debug(f"Removed old backup {path.name}")
            except OSError as e:
                self.logger.error(f"Error deleting backup file {path.name}: {e}")


# =============================================================================
# Sophos Firewall API Client
# =============================================================================

# Markers the XML API embeds in HTTP-200 responses
AUTH_FAILURE_MARKER = "Authentication Failure"
FAILURE_STATUS_MARKER = "<Status>Failure</Status>"
ERROR_ELEMENT_MARKER = "<Error>"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


@dataclass(frozen=True)
class DeviceCredentials:
    """Connection details for one firewall request, supplied per call."""

    host: str
    username: str
    password: str = field(repr=False)
    port: int = DEVICE_API_PORT
    api_path: str = DEVICE_API_PATH

    @property
    def api_url(self) -> str:
        return f"https://{self.host}:{self.port}/{self.api_path.lstrip('/')}"


@dataclass(frozen=True)
class FirewallRuleSettings:
    name: str = "Block_IPThreat_List"
    description: str = "Block known malicious IPs from IPThreat.net"
    action: str = "Drop"
    position: str = "Top"
    log_traffic: bool = True


@dataclass(frozen=True)
class RemoteBatch:
    """One chunk of addresses uploaded as a named IP list."""

    index: int
    name: str
    addresses: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.addresses)


def list_name(prefix: str, index: int) -> str:
    return f"{prefix}_{index}"


def chunk_addresses(
    addresses: Iterable[str],
    chunk_size: int = CHUNK_SIZE,
    prefix: str = LIST_PREFIX,
) -> list[RemoteBatch]:
    """
    Split addresses into batches of at most ``chunk_size``.

    Addresses are sorted numerically first so the same set always produces
    the same batches.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    ordered = sorted(set(addresses), key=ip_sort_key)
    return [
        RemoteBatch(index=i, name=list_name(prefix, i), addresses=tuple(ordered[start:start + chunk_size]))
        for i, start in enumerate(range(0, len(ordered), chunk_size))
    ]


def _request_element(credentials: DeviceCredentials) -> ET.Element:
    request = ET.Element("Request")
    login = ET.SubElement(request, "Login")
    ET.SubElement(login, "Username").text = credentials.username
    ET.SubElement(login, "Password").text = credentials.password
    return request


def _to_xml(request: ET.Element) -> str:
    return XML_DECLARATION + ET.tostring(request, encoding="unicode")


def build_ip_list_xml(credentials: DeviceCredentials, batch: RemoteBatch) -> str:
    """Build an IPHost upsert request for one batch."""
    request = _request_element(credentials)
    host = ET.SubElement(ET.SubElement(request, "Set"), "IPHost")
    ET.SubElement(host, "Name").text = batch.name
    ET.SubElement(host, "IPFamily").text = "IPv4"
    ET.SubElement(host, "HostType").text = "IPList"
    ET.SubElement(host, "ListOfIPAddresses").text = ",".join(batch.addresses)
    return _to_xml(request)


def build_firewall_rule_xml(
    credentials: DeviceCredentials,
    chunk_count: int,
    rule: FirewallRuleSettings,
    prefix: str = LIST_PREFIX,
) -> str:
    """Build a FirewallRule upsert whose source networks are the batch lists."""
    request = _request_element(credentials)
    fw_rule = ET.SubElement(ET.SubElement(request, "Set"), "FirewallRule", {"transactionid": ""})
    ET.SubElement(fw_rule, "Name").text = rule.name
    ET.SubElement(fw_rule, "Description").text = rule.description
    ET.SubElement(fw_rule, "IPFamily").text = "IPv4"
    ET.SubElement(fw_rule, "Status").text = "Enable"
    ET.SubElement(fw_rule, "Position").text = rule.position
    ET.SubElement(fw_rule, "PolicyType").text = "Network"

    policy = ET.SubElement(fw_rule, "NetworkPolicy")
    ET.SubElement(policy, "Action").text = rule.action
    ET.SubElement(policy, "LogTraffic").text = "Enable" if rule.log_traffic else "Disable"
    ET.SubElement(policy, "SkipLocalDestined").text = "Disable"
    ET.SubElement(policy, "Schedule").text = "All The Time"
    networks = ET.SubElement(policy, "SourceNetworks")
    for i in range(chunk_count):
        ET.SubElement(networks, "Network").text = list_name(prefix, i)
    return _to_xml(request)


def build_connection_test_xml(credentials: DeviceCredentials) -> str:
    request = _request_element(credentials)
    ET.SubElement(ET.SubElement(request, "Get"), "IPHost")
    return _to_xml(request)


def check_api_response(body: str) -> None:
    """
    Raise if a firewall response body reports a failure.

    The XML API answers HTTP 200 even for rejected requests, so the body
    has to be inspected.
    """
    if AUTH_FAILURE_MARKER in body:
        raise RemoteAuthFailure("Authentication failed with Sophos Firewall")
    if FAILURE_STATUS_MARKER in body or ERROR_ELEMENT_MARKER in body:
        raise RemoteApiFailure(f"Sophos API Error: {body[:200]}", response_body=body)


class FirewallApiClient:
    """Sophos XML API client.

    Holds only a reusable transport session; credentials and the target
    host are passed to every call.
    """

    def __init__(
        self,
        session: requests.Session,
        timeout: int = 60,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def push_address_list(self, credentials: DeviceCredentials, batch: RemoteBatch) -> None:
        """Create or replace the IP list named ``batch.name``."""
        self._send(credentials, build_ip_list_xml(credentials, batch))
        self.logger.debug(f"Pushed IP list {batch.name} ({len(batch)} addresses)")

    def push_rule(
        self,
        credentials: DeviceCredentials,
        chunk_count: int,
        rule: Optional[FirewallRuleSettings] = None,
        prefix: str = LIST_PREFIX,
    ) -> None:
        """
        Create or replace the drop rule referencing lists 0..chunk_count-1.

        Only call this after every list of the cycle has been pushed.
        """
        rule = rule or FirewallRuleSettings()
        self._send(credentials, build_firewall_rule_xml(credentials, chunk_count, rule, prefix))
        self.logger.debug(f"Pushed firewall rule {rule.name} referencing {chunk_count} IP lists")

    def check_connection(self, credentials: DeviceCredentials) -> None:
        """Verify the firewall is reachable and accepts the credentials."""
        self._send(credentials, build_connection_test_xml(credentials))

    def _send(self, credentials: DeviceCredentials, xml_body: str) -> str:
        try:
            response = self.session.post(
                credentials.api_url,
                files={"reqxml": (None, xml_body)},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RemoteTransportFailure(f"Request to {credentials.host} failed: {e}") from e

        body = response.text or ""
        check_api_response(body)

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise RemoteTransportFailure(
                f"Sophos API returned {response.status_code}: {body[:200]}"
            ) from e
        return body


# =============================================================================
# Retry Policy
# =============================================================================

def _sleep_wait(seconds: float) -> bool:
    time.sleep(seconds)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Fixed-delay retry around one phase of an update cycle.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates on the first attempt.
    """

    max_attempts: int = MAX_RETRIES
    delay_seconds: float = RETRY_DELAY_SECONDS
    retry_on: tuple[type[BaseException], ...] = (SyncError,)

    def call(
        self,
        operation: Callable[[], T],
        *,
        phase: str,
        logger: logging.Logger,
        wait: Optional[Callable[[float], bool]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or attempts are exhausted.

        ``wait(seconds)`` sleeps between attempts and returns True when a
        stop was requested, which aborts with CycleCancelled.
        """
        wait = wait or _sleep_wait
        attempts = max(1, self.max_attempts)

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info(f"{phase}: attempt {attempt}/{attempts}")
            try:
                return operation()
            except self.retry_on as e:
                logger.warning(f"{phase} failed (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts:
                    logger.error(f"{phase}: giving up after {attempts} attempts")
                    raise
                if wait(self.delay_seconds):
                    raise CycleCancelled(f"{phase} cancelled while waiting to retry") from e

        raise AssertionError("retry loop exited without result")


# =============================================================================
# Sync Engine
# =============================================================================

class CycleOutcome(str, Enum):
    SUCCESS = "success"
    NO_CHANGE = "no_change"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncCycleResult:
    """Outcome of one engine run. Not persisted."""

    started_at: datetime
    outcome: CycleOutcome
    new_ips: list[str] = field(default_factory=list)
    removed_ips: list[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    total_ips: int = 0
    chunks_pushed: int = 0
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome in (CycleOutcome.SUCCESS, CycleOutcome.NO_CHANGE)


LogSink = Callable[[str], None]


class SyncEngine:
    """
    Runs update cycles: fetch -> diff -> persist -> push.

    At most one cycle runs at a time. A cycle triggered while another is
    in progress returns SKIPPED immediately instead of waiting.

    The scheduler thread started by start() fires a cycle every
    ``update_interval_minutes``. After a failed cycle a one-shot retry is
    scheduled ``retry_after_failure_minutes`` later without moving the
    regular firing.
    """

    def __init__(
        self,
        config: Config,
        store: SnapshotStore,
        feed: ThreatFeedClient,
        firewall: FirewallApiClient,
        logger: Optional[logging.Logger] = None,
        log_sink: Optional[LogSink] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.feed = feed
        self.firewall = firewall
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.metrics = metrics
        self._config = config
        self._log_sink = log_sink
        self._clock = clock

        self._cycle_lock = threading.Lock()
        self._schedule_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._last_success: Optional[datetime] = None
        self._retry_at: Optional[float] = None
        self._reschedule = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def config(self) -> Config:
        return self._config

    @property
    def last_success(self) -> Optional[datetime]:
        return self._last_success

    @property
    def state(self) -> str:
        if self._cycle_lock.locked():
            return "running"
        return "stopped" if self._stop_event.is_set() else "idle"

    @property
    def is_started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def retry_pending(self) -> bool:
        with self._schedule_lock:
            return self._retry_at is not None

    def time_since_last_update(self) -> Optional[timedelta]:
        if self._last_success is None:
            return None
        return self._clock() - self._last_success

    def start(self) -> None:
        """Start the scheduler thread (no-op if already started)."""
        if self.is_started:
            return

        self._stop_event.clear()
        self._wakeup.clear()
        self._log("Worker service starting")
        self._thread = threading.Thread(target=self._scheduler_loop, name="sophosguard-scheduler", daemon=True)
        self._thread.start()
        self._log(f"Update timer configured for {self._config.update_interval_minutes} minute intervals")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the scheduler.

        An in-flight cycle finishes or aborts at its next network call or
        retry wait. The snapshot file is never left half-written.
        """
        if self._thread is None:
            return

        self._stop_event.set()
        self._wakeup.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            self._log("Worker still finishing the current cycle", logging.WARNING)
        else:
            self._thread = None
            self._log("Worker service stopped")

    def update_configuration(self, config: Config) -> None:
        """Swap in a new configuration; the next cycle uses it."""
        with self._schedule_lock:
            self._config = config
            self._reschedule = True
        self._wakeup.set()
        if self.is_started:
            self._log(f"Timer interval updated to {config.update_interval_minutes} minutes")

    def force_update(self) -> threading.Thread:
        """Run a cycle now on a background thread, bypassing the interval guard."""
        thread = threading.Thread(
            target=self.run_cycle,
            kwargs={"force": True},
            name="sophosguard-force-update",
            daemon=True,
        )
        thread.start()
        return thread

    def run_cycle(self, force: bool = False, enforce_interval: bool = True) -> SyncCycleResult:
        """
        Run one update cycle. Never raises.

        ``force`` resets the last-success timestamp once the cycle lock is
        held. Timer fires pass ``enforce_interval=False``; the interval
        guard only stops duplicate external triggers.
        """
        started_at = self._clock()

        if not self._cycle_lock.acquire(blocking=False):
            self._log("Update cycle already in progress, skipping")
            return SyncCycleResult(started_at=started_at, outcome=CycleOutcome.SKIPPED)

        t0 = time.monotonic()
        try:
            if force:
                self._last_success = None
            result = self._execute_cycle(self._config, started_at, enforce_interval)
            result.duration_seconds = time.monotonic() - t0
            self._record(result)
        finally:
            self._cycle_lock.release()
        return result

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _execute_cycle(self, config: Config, started_at: datetime, enforce_interval: bool = True) -> SyncCycleResult:
        last = self._last_success
        min_gap = timedelta(minutes=config.update_interval_minutes, seconds=-GUARD_TOLERANCE_SECONDS)
        if enforce_interval and last is not None and started_at - last < min_gap:
            minutes = (started_at - last).total_seconds() / 60
            self._log(f"Skipping update as last update was {minutes:.1f} minutes ago")
            return SyncCycleResult(started_at=started_at, outcome=CycleOutcome.NO_CHANGE)

        self._log("Starting update cycle")
        try:
            primary, additional = self._threat_levels(config)
            credentials = config.credentials()
            push_policy = RetryPolicy(
                max_attempts=config.max_retries,
                delay_seconds=config.retry_delay,
                retry_on=(RemoteTransportFailure, RemoteApiFailure),
            )

            if config.check_connection and not config.dry_run:
                push_policy.call(
                    lambda: self._check_connection(credentials),
                    phase="Firewall connection check",
                    logger=self.logger,
                    wait=self._wait,
                )

            fetch_policy = RetryPolicy(
                max_attempts=config.max_retries,
                delay_seconds=config.retry_delay,
                retry_on=(FeedUnreachable,),
            )
            addresses = fetch_policy.call(
                lambda: self._fetch_levels(primary, additional),
                phase="Threat list fetch",
                logger=self.logger,
                wait=self._wait,
            )

            previous = self.store.load()
            if not addresses:
                if not previous.is_empty:
                    raise FeedEmpty(
                        f"No IP addresses received from threat feed, "
                        f"keeping previous list of {previous.count} addresses"
                    )
                self._log("No IP addresses received from threat feed and no previous list exists")
                self._last_success = started_at
                return SyncCycleResult(started_at=started_at, outcome=CycleOutcome.NO_CHANGE)

            new_ips = sorted(addresses - previous.addresses, key=ip_sort_key)
            removed_ips = sorted(previous.addresses - addresses, key=ip_sort_key)

            if not new_ips and not removed_ips:
                self._log("No changes in IP list detected")
                self._last_success = started_at
                return SyncCycleResult(
                    started_at=started_at,
                    outcome=CycleOutcome.NO_CHANGE,
                    total_ips=len(addresses),
                )

            self._log(f"Found {len(new_ips)} new IPs and {len(removed_ips)} IPs to remove")
            self._log_changes("New IP", new_ips)
            self._log_changes("Removed IP", removed_ips)

            # Persist before push: a pushed list always has a durable record
            snapshot = self.store.save(addresses)
            self._log(f"Saved {snapshot.count} IP addresses to local storage")

            chunks_pushed = 0
            if config.dry_run:
                self._log("DRY RUN: skipping Sophos Firewall update")
            else:
                batches = chunk_addresses(addresses, config.chunk_size, config.list_prefix)
                push_policy.call(
                    lambda: self._push_batches(config, credentials, batches),
                    phase="Sophos Firewall update",
                    logger=self.logger,
                    wait=self._wait,
                )
                chunks_pushed = len(batches)

            self._last_success = started_at
            self._log(f"Update cycle completed successfully at {started_at:%Y-%m-%d %H:%M:%S}")
            return SyncCycleResult(
                started_at=started_at,
                outcome=CycleOutcome.SUCCESS,
                new_ips=new_ips,
                removed_ips=removed_ips,
                total_ips=len(addresses),
                chunks_pushed=chunks_pushed,
            )

        except CycleCancelled as e:
            self._log(f"Update cycle cancelled: {e}", logging.WARNING)
            return SyncCycleResult(started_at=started_at, outcome=CycleOutcome.FAILED, error=e)
        except SyncError as e:
            self._log(f"Error in update cycle [{e.kind}]: {e}", logging.ERROR)
            self._schedule_retry(config)
            return SyncCycleResult(started_at=started_at, outcome=CycleOutcome.FAILED, error=e)
        except Exception as e:
            self._log(f"Unexpected error in update cycle: {e}", logging.ERROR)
            self.logger.debug("Traceback:", exc_info=True)
            self._schedule_retry(config)
            return SyncCycleResult(started_at=started_at, outcome=CycleOutcome.FAILED, error=e)

    def _threat_levels(self, config: Config) -> tuple[int, list[int]]:
        primary = validate_threat_level(config.threat_level)
        additional: list[int] = []
        if config.enable_multiple_lists:
            for level in config.additional_threat_levels:
                validate_threat_level(level)
                if level != primary and level not in additional:
                    additional.append(level)
        return primary, additional

    def _fetch_levels(self, primary: int, additional: list[int]) -> frozenset[str]:
        """
        Fetch the primary level and union in every additional level.

        An additional level that fails is skipped. A failed primary level
        fails the attempt, but only after the other levels were tried.
        """
        self._ensure_not_stopping()
        collected: Set[str] = set()
        primary_error: Optional[FeedUnreachable] = None

        self._log(f"Fetching primary IP threat list level {primary}")
        try:
            primary_ips = self.feed.fetch(primary)
            collected.update(primary_ips)
            self._log(f"Fetched {len(primary_ips)} IPs from threat level {primary}")
        except FeedUnreachable as e:
            primary_error = e
            self._log(f"Error fetching threat level {primary}: {e}", logging.WARNING)

        for level in additional:
            self._ensure_not_stopping()
            self._log(f"Fetching additional threat list level {level}")
            try:
                level_ips = set(self.feed.fetch(level))
            except FeedUnreachable as e:
                self._log(f"Skipping threat level {level}: {e}", logging.WARNING)
                continue
            unique = level_ips - collected
            collected.update(unique)
            self._log(f"Added {len(unique)} unique IPs from threat level {level}")

        if primary_error is not None:
            raise primary_error

        self._log(f"Total unique IPs collected: {len(collected)}")
        return frozenset(collected)

    def _check_connection(self, credentials: DeviceCredentials) -> None:
        self._ensure_not_stopping()
        self.firewall.check_connection(credentials)

    def _push_batches(self, config: Config, credentials: DeviceCredentials, batches: list[RemoteBatch]) -> None:
        self._log(f"Updating Sophos Firewall with {len(batches)} IP lists")
        for batch in batches:
            self._ensure_not_stopping()
            self.firewall.push_address_list(credentials, batch)
            self._log(f"Updated IP list {batch.name} with {len(batch)} addresses")

        # The rule must only reference lists that now exist on the device
        self._ensure_not_stopping()
        self.firewall.push_rule(credentials, len(batches), rule=config.rule_settings(), prefix=config.list_prefix)
        self._log("Updated firewall rule successfully")

    def _log_changes(self, label: str, addresses: list[str]) -> None:
        for address in addresses[:MAX_LOGGED_CHANGES]:
            self._log(f"{label}: {address}")
        if len(addresses) > MAX_LOGGED_CHANGES:
            self._log(f"... and {len(addresses) - MAX_LOGGED_CHANGES} more")

    def _record(self, result: SyncCycleResult) -> None:
        if result.outcome is CycleOutcome.FAILED and result.error is not None:
            kind = error_kind(result.error)
        else:
            kind = ""
        self.logger.debug(
            f"Cycle outcome: {result.outcome.value}"
            f"{f' ({kind})' if kind else ''}, {result.total_ips} IPs, "
            f"+{len(result.new_ips)}/-{len(result.removed_ips)}, "
            f"{result.chunks_pushed} lists, {result.duration_seconds:.1f}s"
        )
        if self.metrics:
            snapshot_count = self.store.load().count
            self.metrics.record_cycle(result, snapshot_count, self._last_success)
            self.metrics.push()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _wait(self, seconds: float) -> bool:
        return self._stop_event.wait(seconds)

    def _ensure_not_stopping(self) -> None:
        if self._stop_event.is_set():
            raise CycleCancelled("Stop requested")

    def _schedule_retry(self, config: Config) -> None:
        if self._stop_event.is_set():
            return
        with self._schedule_lock:
            self._retry_at = time.monotonic() + self._retry_seconds(config)
        self._log(f"Scheduling retry in {config.retry_after_failure_minutes} minutes")
        self._wakeup.set()

    def _interval_seconds(self) -> float:
        return self._config.update_interval_minutes * 60

    def _retry_seconds(self, config: Config) -> float:
        return config.retry_after_failure_minutes * 60

    def _scheduler_loop(self) -> None:
        if self._config.run_on_start:
            self._run_scheduled("initial")
        else:
            self._log(f"Skipping initial run (RUN_ON_START=false), waiting {self._config.update_interval_minutes} minutes")

        next_regular = time.monotonic() + self._interval_seconds()

        while not self._stop_event.is_set():
            with self._schedule_lock:
                retry_at = self._retry_at
            deadline = next_regular if retry_at is None else min(next_regular, retry_at)

            if self._wakeup.wait(max(0.0, deadline - time.monotonic())):
                self._wakeup.clear()
                with self._schedule_lock:
                    reschedule, self._reschedule = self._reschedule, False
                if reschedule:
                    next_regular = time.monotonic() + self._interval_seconds()
                continue

            now = time.monotonic()
            if retry_at is not None and now >= retry_at:
                with self._schedule_lock:
                    if self._retry_at == retry_at:
                        self._retry_at = None
                self._run_scheduled("retry")
            if now >= next_regular:
                while next_regular <= now:
                    next_regular += self._interval_seconds()
                self._run_scheduled("scheduled")

    def _run_scheduled(self, reason: str) -> None:
        if self._stop_event.is_set():
            return
        self.logger.debug(f"Timer fired ({reason})")
        try:
            self.run_cycle(enforce_interval=False)
        except Exception as e:
            # Keep the timer alive whatever happens inside a cycle
            self.logger.error(f"Update run failed: {e}")
            self.logger.debug("Traceback:", exc_info=True)

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, message)
        if self._log_sink is None:
            return
        try:
            self._log_sink(f"{self._clock():%Y-%m-%d %H:%M:%S} - Worker: {message}")
        except Exception as e:
            self.logger.debug(f"Log sink failed: {e}")


# =============================================================================
# Prometheus Metrics
# =============================================================================

class MetricsCollector:
    """
    Prometheus metrics for update cycles, pushed to a Pushgateway.

      - sophosguard_sync_last_cycle_status          1 = success/no change, 0 = failed
      - sophosguard_sync_snapshot_ips               addresses in the current snapshot
      - sophosguard_sync_new_ips / _removed_ips     diff of the last changed cycle
      - sophosguard_sync_chunks_pushed              IP lists pushed by the last cycle
      - sophosguard_sync_last_success_timestamp
      - sophosguard_sync_cycle_duration_seconds     histogram
      - sophosguard_sync_errors_total{kind}         kind is a fixed error category
    """

    JOB_NAME = "sophosguard-sync"

    def __init__(self, pushgateway_url: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.pushgateway_url = pushgateway_url
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.registry = CollectorRegistry()

        self.last_cycle_status = Gauge(
            "sophosguard_sync_last_cycle_status",
            "Outcome of the last update cycle: 1=success or no change, 0=failed",
            registry=self.registry,
        )
        self.snapshot_ips = Gauge(
            "sophosguard_sync_snapshot_ips",
            "Number of IPs in the current local snapshot",
            registry=self.registry,
        )
        self.new_ips = Gauge(
            "sophosguard_sync_new_ips",
            "Number of IPs added by the last changed cycle",
            registry=self.registry,
        )
        self.removed_ips = Gauge(
            "sophosguard_sync_removed_ips",
            "Number of IPs removed by the last changed cycle",
            registry=self.registry,
        )
        self.chunks_pushed = Gauge(
            "sophosguard_sync_chunks_pushed",
            "Number of IP lists pushed to the firewall by the last cycle",
            registry=self.registry,
        )
        self.last_success_timestamp = Gauge(
            "sophosguard_sync_last_success_timestamp",
            "Unix timestamp of the last successful cycle",
            registry=self.registry,
        )
        self.cycle_duration_seconds = Histogram(
            "sophosguard_sync_cycle_duration_seconds",
            "Duration of update cycles in seconds",
            buckets=[1, 5, 10, 30, 60, 120, 300, 600],
            registry=self.registry,
        )
        self.errors_total = Counter(
            "sophosguard_sync_errors",
            "Failed update cycles labelled by error kind",
            ["kind"],
            registry=self.registry,
        )

    def record_cycle(
        self,
        result: SyncCycleResult,
        snapshot_count: int,
        last_success: Optional[datetime] = None,
    ) -> None:
        if result.outcome is CycleOutcome.SKIPPED:
            return

        self.snapshot_ips.set(snapshot_count)
        self.cycle_duration_seconds.observe(result.duration_seconds)

        if result.outcome is CycleOutcome.FAILED:
            self.last_cycle_status.set(0)
            kind = error_kind(result.error) if result.error is not None else "unknown"
            self.errors_total.labels(kind=kind).inc()
            return

        self.last_cycle_status.set(1)
        if last_success is not None:
            self.last_success_timestamp.set(last_success.timestamp())
        if result.outcome is CycleOutcome.SUCCESS:
            self.new_ips.set(len(result.new_ips))
            self.removed_ips.set(len(result.removed_ips))
            self.chunks_pushed.set(result.chunks_pushed)

    def push(self) -> bool:
        """
        Push all metrics to the Pushgateway.

        Stale series from a previous process are deleted first. Failures
        are logged, never raised.
        """
        if not self.pushgateway_url:
            return False
        try:
            try:
                delete_from_gateway(self.pushgateway_url, job=self.JOB_NAME)
            except Exception as del_exc:
                self.logger.warning(
                    f"Could not delete stale metrics from Pushgateway "
                    f"({self.pushgateway_url}): {del_exc}"
                )

            push_to_gateway(self.pushgateway_url, job=self.JOB_NAME, registry=self.registry)
            self.logger.debug(f"Metrics pushed to Pushgateway at {self.pushgateway_url}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False


# =============================================================================
# CLI
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure logging for the CLI."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    formatter = logging.Formatter(format, datefmt="%Y-%m-%d %H:%M:%S")

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setLevel(logger.level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def build_engine(config: Config, logger: logging.Logger) -> SyncEngine:
    """Wire sessions, clients, store and metrics into an engine."""
    feed_session = create_http_session(config.max_retries)
    device_session = create_http_session(config.max_retries, verify=config.tls_verify)
    if config.tls_verify is False:
        logger.warning(
            f"TLS certificate verification disabled for the firewall API at {config.device_host} "
            f"(SOPHOS_VERIFY_TLS=false)"
        )

    metrics: Optional[MetricsCollector] = None
    if config.metrics_enabled:
        metrics = MetricsCollector(pushgateway_url=config.pushgateway_url, logger=logger)

    return SyncEngine(
        config=config,
        store=SnapshotStore(config.data_dir, backup_count=config.backup_count, logger=logger),
        feed=ThreatFeedClient(feed_session, config.feed_url_template, config.fetch_timeout, logger=logger),
        firewall=FirewallApiClient(device_session, timeout=config.request_timeout, logger=logger),
        logger=logger,
        metrics=metrics,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Synchronize a Sophos firewall blocklist with the IPThreat feed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  SOPHOS_HOST                  Firewall host name or address (required)
  SOPHOS_PORT                  Firewall API port (default: 4444)
  SOPHOS_USERNAME              API user (required)
  SOPHOS_PASSWORD[_FILE]       API password / password file (required)
  SOPHOS_VERIFY_TLS            Verify the firewall certificate (default: true)
  SOPHOS_CA_BUNDLE             CA bundle for a device-issued certificate
  THREAT_LEVEL                 Primary threat level 0-100 (default: 100)
  ENABLE_MULTIPLE_LISTS        Also fetch ADDITIONAL_THREAT_LEVELS (default: false)
  ADDITIONAL_THREAT_LEVELS     Comma-separated levels, e.g. "50,75"
  UPDATE_INTERVAL_MINUTES      Minutes between updates (default: 60)
  IPLIST_PATH                  Snapshot directory (default: IPList)
  DRY_RUN                      Fetch and save, but don't touch the firewall
  LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)
  LOG_FILE                     Also append log lines to this file
  METRICS_ENABLED              Push Prometheus metrics (default: false)
  METRICS_PUSHGATEWAY_URL      Pushgateway address (default: localhost:9091)
  ... and more: CHUNK_SIZE, LIST_PREFIX, RULE_*, MAX_RETRIES, RETRY_DELAY, BACKUP_COUNT

Examples:
  # Run as a daemon
  SOPHOS_HOST=fw.local SOPHOS_USERNAME=api SOPHOS_PASSWORD=... ./sophosguard_sync.py

  # One cycle, then exit
  ./sophosguard_sync.py --once

  # Validate configuration without running
  ./sophosguard_sync.py --validate
""",
    )

    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-n", "--dry-run",
        action="store_true",
        help="Fetch and save the list, but don't update the firewall",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--once", action="store_true", help="Run a single update cycle and exit")
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration and exit without running",
    )
    parser.add_argument(
        "--show-snapshot",
        action="store_true",
        help="Print a summary of the current local snapshot and exit",
    )
    parser.add_argument("--host", help="Firewall host (overrides SOPHOS_HOST)")
    parser.add_argument("--threat-level", type=int, help="Primary threat level (overrides THREAT_LEVEL)")
    parser.add_argument(
        "--interval",
        type=int,
        metavar="MINUTES",
        help="Minutes between updates (overrides UPDATE_INTERVAL_MINUTES)",
    )
    parser.add_argument("--data-dir", help="Snapshot directory (overrides IPLIST_PATH)")
    parser.add_argument(
        "--pushgateway-url",
        help="Push URL for Prometheus (overrides METRICS_PUSHGATEWAY_URL)",
    )
    parser.add_argument("--no-metrics", action="store_true", help="Disable Prometheus metrics")

    return parser.parse_args(argv)


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """Return a copy of ``config`` with command line overrides applied."""
    overrides: dict[str, object] = {}
    if args.dry_run:
        overrides["dry_run"] = True
    if args.debug:
        overrides["log_level"] = "DEBUG"
    if args.host:
        overrides["device_host"] = args.host
    if args.threat_level is not None:
        overrides["threat_level"] = args.threat_level
    if args.interval is not None:
        overrides["update_interval_minutes"] = args.interval
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.pushgateway_url:
        overrides["pushgateway_url"] = args.pushgateway_url
        overrides["metrics_enabled"] = True
    if args.no_metrics:
        overrides["metrics_enabled"] = False
    return replace(config, **overrides)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = apply_args(Config.from_env(), args)
    except ValueError as e:
        print(f"[ERROR] Invalid configuration: {e}", file=sys.stderr)
        return 1

    logger = setup_logging(config)

    if args.show_snapshot:
        return _show_snapshot(config, logger)

    _, errors = validate_bool_env_vars()
    errors.extend(config.validate())
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            for line in error.split("\n"):
                logger.error(f"  {line}")
        return 1

    if args.validate:
        logger.info(f"SophosGuard Sync v{__version__}")
        logger.info("Configuration validation passed!")
        return 0

    logger.info(f"SophosGuard Sync v{__version__}")
    logger.info(f"Firewall: {config.device_host}:{config.device_port}")
    if config.dry_run:
        logger.info("DRY RUN MODE - the firewall will not be changed")

    engine = build_engine(config, logger)

    if args.once:
        return _run_once(engine, logger)
    return _run_daemon(engine, logger)


def _show_snapshot(config: Config, logger: logging.Logger) -> int:
    store = SnapshotStore(config.data_dir, backup_count=config.backup_count, logger=logger)
    snapshot = store.load()
    if snapshot.timestamp is None:
        logger.info(f"No IP list saved yet in {store.directory}")
        return 0
    logger.info(f"Current IP list: {snapshot.count} addresses")
    logger.info(f"Last updated: {snapshot.timestamp:%Y-%m-%d %H:%M:%S}")
    logger.info(f"Backups: {len(store.list_backups())}")
    return 0


def _run_once(engine: SyncEngine, logger: logging.Logger) -> int:
    """Execute a single update cycle."""
    try:
        result = engine.run_cycle()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    logger.info(f"Cycle finished: {result.outcome.value}")
    return 0 if result.ok else 1


def _run_daemon(engine: SyncEngine, logger: logging.Logger) -> int:
    """Run the scheduler until SIGTERM/SIGINT."""
    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    engine.start()
    logger.info(f"Daemon mode: updating every {engine.config.update_interval_minutes} minutes (Ctrl+C to stop)")

    # Wake up periodically so signals are handled promptly
    while not shutdown.wait(5):
        pass

    engine.stop(timeout=60)
    logger.info("Daemon stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
