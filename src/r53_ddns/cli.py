#!/usr/bin/env python3
"""r53-ddns - Dynamic DNS for AWS Route53

Keeps a single Route53 address record (A or AAAA) pointed at the current public
address of the host it runs on. Every cycle the public address is observed, the
authoritative record is read back from Route53 and, if the two have drifted, an
UPSERT change is submitted and polled until Route53 reports it INSYNC.

Configuration is layered: YAML config file < environment variables < flags.

Command-line flags:
    -z, --dns-zone-id      Route53 hosted zone id (see AWS Console Route53)
    -d, --domain-name      Record name (ex. 'docs.example.com.')
    -t, --record-type      A or AAAA (default: A)
    -s, --seconds          Reconcile interval in seconds (default: 180)
    --poll-seconds         Change status poll interval in seconds (default: 180)
    --status-seconds       Interval between "current public address" reports
                           (default: 604800, one week)
    --oracle-url           URL returning the caller's public address as text
                           (default: https://ipv4.icanhazip.com for A,
                           https://ipv6.icanhazip.com for AAAA)
    --oracle-timeout       Public address request timeout in seconds (default: 10)
    --config               YAML config file
    --log-level            DEBUG, INFO, WARNING, ERROR (default: INFO)
    --once                 Run a single reconciliation cycle and exit

Environment variables:
    R53_DDNS_CONFIG                    YAML config file path
    R53_DDNS_ZONE_ID                   Hosted zone id
    R53_DDNS_DOMAIN_NAME               Record name
    R53_DDNS_RECORD_TYPE               A or AAAA
    R53_DDNS_INTERVAL_SECONDS          Reconcile interval
    R53_DDNS_POLL_INTERVAL_SECONDS     Change status poll interval
    R53_DDNS_STATUS_INTERVAL_SECONDS   Status report interval
    R53_DDNS_ORACLE_URL                Public address endpoint
    R53_DDNS_ORACLE_TIMEOUT            Public address request timeout
    LOG_LEVEL                          Log level

    AWS credentials and region are resolved by boto3's default chain
    (AWS_PROFILE, AWS_ACCESS_KEY_ID, instance roles, ...).

Example config file:
    zone_id: Z0123456789ABCDEFGHIJ
    domain_name: home.example.com.
    record_type: A
    interval_seconds: 300
    poll_interval_seconds: 60
    oracle_timeout: 5

Exit status:
    0   stopped by SIGINT/SIGTERM, or --once completed
    1   configuration error, no matching record, malformed or ambiguous
        record, or an unexpected crash
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import math
import os
import re
import signal
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import boto3
import requests
import yaml
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_INTERVAL_SECONDS = 180
DEFAULT_POLL_INTERVAL_SECONDS = 180
DEFAULT_STATUS_INTERVAL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_ORACLE_TIMEOUT = 10.0
DEFAULT_CHANGE_COMMENT = "ISP provided dynamic IP has drifted."

# =============================================================================
# Errors
# =============================================================================


class DDNSError(Exception):
    """Base class for all reconciliation errors."""


class TransientError(DDNSError):
    """Aborts the current cycle; the next cycle retries from scratch."""


class FatalError(DDNSError):
    """The target cannot be reconciled; the process must stop."""


class AddressUnavailable(TransientError):
    """The public address oracle was unreachable or returned garbage."""


class ProviderError(TransientError):
    """Transport or auth failure talking to the DNS provider."""


class ChangeNotFound(ProviderError):
    """The provider does not know the change id being tracked."""


class ConfigError(FatalError):
    """Missing or invalid settings."""


class NoRecordAvailable(FatalError):
    """The zone has no record set for the requested name and type."""


class MalformedRecordError(FatalError):
    """The matched record holds a value that is not a usable address."""


class AmbiguousRecordError(FatalError):
    """More than one record set matches the requested name and type."""


# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    """Address record types this tool reconciles."""

    A = "A"
    AAAA = "AAAA"

    @property
    def ip_version(self) -> int:
        return 4 if self is RecordType.A else 6

    @classmethod
    def from_text(cls, value: str) -> "RecordType":
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ConfigError(f"Unsupported record type '{value}'. Supported: A, AAAA") from None


class ChangeAction(Enum):
    UPSERT = "UPSERT"


class ChangeStatus(Enum):
    """Propagation status of a submitted change.

    PENDING: the change is accepted but not yet served everywhere.
    INSYNC:  the change is live on all authoritative servers (terminal).
    """

    PENDING = "PENDING"
    INSYNC = "INSYNC"


class CycleOutcome(Enum):
    CURRENT = "current"
    UPDATED = "updated"


DEFAULT_ORACLE_URLS: Dict[RecordType, str] = {
    RecordType.A: "https://ipv4.icanhazip.com",
    RecordType.AAAA: "https://ipv6.icanhazip.com",
}

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ResourceRecordSet:
    """An address record set as returned by the provider.

    ``ttl`` is None and ``values`` is empty for alias records.
    """

    name: str
    type: RecordType
    ttl: Optional[int]
    values: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Change:
    action: ChangeAction
    record_set: ResourceRecordSet


@dataclass(frozen=True)
class ChangeRequest:
    """A change batch addressed to one hosted zone."""

    zone_id: str
    changes: Tuple[Change, ...]
    comment: str = DEFAULT_CHANGE_COMMENT


@dataclass(frozen=True)
class DriftResult:
    """Comparison of the published record against the observed address."""

    is_current: bool
    record_address: Optional[IPAddress]
    observed_address: IPAddress
    record: ResourceRecordSet


@dataclass(frozen=True)
class CycleResult:
    """What a single reconciliation cycle did."""

    outcome: CycleOutcome
    observed_address: IPAddress
    record_address: Optional[IPAddress]
    change_id: Optional[str] = None


# =============================================================================
# Address Parsing
# =============================================================================

_ROUTE53_ESCAPE_RE = re.compile(r"\\(\d{3})")


def normalize_name(name: str) -> str:
    """Return a lower-cased, fully-qualified form of a DNS name.

    Route53 returns names with a trailing dot and escapes some characters as
    ``\\NNN`` octal sequences (``*`` comes back as ``\\052``).
    """
    name = _ROUTE53_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 8)), name.strip())
    name = name.lower()
    if not name.endswith("."):
        name += "."
    return name


def parse_address(text: str, record_type: RecordType) -> IPAddress:
    """Parse ``text`` as an address of the family ``record_type`` holds.

    Raises:
        ValueError: if the text is not an address, or is the wrong family.
    """
    address = ipaddress.ip_address(text.strip())
    if address.version != record_type.ip_version:
        raise ValueError(
            f"'{address}' is an IPv{address.version} address, "
            f"{record_type.value} records hold IPv{record_type.ip_version}"
        )
    return address


# =============================================================================
# Public Address Oracle Interface and Implementations
# =============================================================================


class AddressOracle(ABC):
    """Abstract source of the caller's current public address."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the oracle name for logging."""
        pass

    @abstractmethod
    def observe(self, record_type: RecordType) -> IPAddress:
        """Return the current public address for the family of ``record_type``.

        Raises:
            AddressUnavailable: on transport errors or unparseable responses.
        """
        pass


class HttpAddressOracle(AddressOracle):
    """Plain-text "what is my IP" HTTP endpoint (icanhazip.com and friends)."""

    def __init__(
        self,
        url: str = "",
        timeout_seconds: float = DEFAULT_ORACLE_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self._url = url.strip()
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "HTTP address oracle"

    def url_for(self, record_type: RecordType) -> str:
        return self._url or DEFAULT_ORACLE_URLS[record_type]

    def observe(self, record_type: RecordType) -> IPAddress:
        url = self.url_for(record_type)
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise AddressUnavailable(f"Failed to query public address from {url}: {e}") from e

        body = response.text or ""
        try:
            return parse_address(body, record_type)
        except ValueError as e:
            raise AddressUnavailable(
                f"Unusable public address {body.strip()!r} from {url}: {e}"
            ) from e


# =============================================================================
# Record Store Interface and Implementations
# =============================================================================


class RecordStore(ABC):
    """Abstract authoritative DNS record provider."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_record_sets(self, zone_id: str, start_name: str) -> List[ResourceRecordSet]:
        """List address record sets of a zone in provider order, starting at ``start_name``."""
        pass

    @abstractmethod
    def submit_change_batch(self, zone_id: str, changes: Sequence[Change], comment: str) -> str:
        """Submit a change batch and return the provider's change id."""
        pass

    @abstractmethod
    def get_change_status(self, change_id: str) -> ChangeStatus:
        """Return the propagation status of a submitted change."""
        pass


def create_route53_client() -> Any:
    """Build a Route53 client from boto3's default credential chain.

    Automatic retries are off: a timed-out write may or may not have been
    applied, and replaying it is left to the next reconciliation cycle.
    """
    return boto3.client(
        "route53",
        config=Config(retries={"total_max_attempts": 1, "mode": "standard"}),
    )


class Route53RecordStore(RecordStore):
    """AWS Route53 record store backed by boto3."""

    def __init__(self, client: Any = None):
        self._client = client if client is not None else create_route53_client()

    @property
    def name(self) -> str:
        return "Route53"

    def list_record_sets(self, zone_id: str, start_name: str) -> List[ResourceRecordSet]:
        try:
            response = self._client.list_resource_record_sets(
                HostedZoneId=zone_id, StartRecordName=start_name
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(
                f"Failed to list record sets in zone {zone_id} from {start_name}: {e}"
            ) from e

        record_sets: List[ResourceRecordSet] = []
        for rrs in response.get("ResourceRecordSets", []):
            try:
                record_type = RecordType(rrs.get("Type"))
            except ValueError:
                continue
            values = tuple(
                str(rr["Value"]) for rr in rrs.get("ResourceRecords", []) if "Value" in rr
            )
            record_sets.append(
                ResourceRecordSet(
                    name=str(rrs.get("Name", "")),
                    type=record_type,
                    ttl=rrs.get("TTL"),
                    values=values,
                )
            )
        return record_sets

    def submit_change_batch(self, zone_id: str, changes: Sequence[Change], comment: str) -> str:
        change_batch = {
            "Comment": comment,
            "Changes": [_change_to_api(change) for change in changes],
        }
        try:
            response = self._client.change_resource_record_sets(
                HostedZoneId=zone_id, ChangeBatch=change_batch
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Failed to submit change batch to zone {zone_id}: {e}") from e
        return str(response["ChangeInfo"]["Id"])

    def get_change_status(self, change_id: str) -> ChangeStatus:
        try:
            response = self._client.get_change(Id=change_id)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchChange":
                raise ChangeNotFound(f"Route53 has no change with id {change_id}") from e
            raise ProviderError(f"Failed to get status of change {change_id}: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"Failed to get status of change {change_id}: {e}") from e

        status = response.get("ChangeInfo", {}).get("Status")
        try:
            return ChangeStatus(status)
        except ValueError:
            raise ProviderError(
                f"Unexpected status {status!r} for change {change_id}"
            ) from None


def _change_to_api(change: Change) -> Dict[str, Any]:
    record_set = change.record_set
    return {
        "Action": change.action.value,
        "ResourceRecordSet": {
            "Name": record_set.name,
            "Type": record_set.type.value,
            "TTL": record_set.ttl,
            "ResourceRecords": [{"Value": value} for value in record_set.values],
        },
    }


# =============================================================================
# Drift Detection
# =============================================================================


class DriftDetector:
    """Compares the authoritative record of a zone against an observed address."""

    def __init__(
        self,
        store: RecordStore,
        zone_id: str,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.zone_id = zone_id
        self._logger = logger or logging.getLogger(__name__)

    def find_record(self, domain_name: str, record_type: RecordType) -> ResourceRecordSet:
        """Return the single record set matching ``domain_name`` and ``record_type``."""
        wanted = normalize_name(domain_name)
        matches = [
            rrs
            for rrs in self.store.list_record_sets(self.zone_id, domain_name)
            if rrs.type is record_type and normalize_name(rrs.name) == wanted
        ]

        if not matches:
            raise NoRecordAvailable(
                f"Zone {self.zone_id} does not contain a {record_type.value} record "
                f"named {domain_name}"
            )
        if len(matches) > 1:
            raise AmbiguousRecordError(
                f"Zone {self.zone_id} contains {len(matches)} {record_type.value} record sets "
                f"named {domain_name}; refusing to pick one"
            )
        return matches[0]

    def check(
        self, domain_name: str, record_type: RecordType, observed_address: IPAddress
    ) -> DriftResult:
        record = self.find_record(domain_name, record_type)

        if not record.values:
            raise MalformedRecordError(
                f"{record_type.value} record {record.name} in zone {self.zone_id} has no values "
                f"(alias records are not supported)"
            )
        try:
            record_address = parse_address(record.values[0], record_type)
        except ValueError as e:
            raise MalformedRecordError(
                f"{record_type.value} record {record.name} in zone {self.zone_id} holds "
                f"unparseable value {record.values[0]!r}: {e}"
            ) from e

        is_current = record_address == observed_address
        if not is_current:
            self._logger.info(f"dynamic ip drift detected: {record_address} -> {observed_address}")

        return DriftResult(
            is_current=is_current,
            record_address=record_address,
            observed_address=observed_address,
            record=record,
        )


# =============================================================================
# Change Submission
# =============================================================================


def build_change_request(
    zone_id: str,
    record: ResourceRecordSet,
    new_address: IPAddress,
    comment: str = DEFAULT_CHANGE_COMMENT,
) -> ChangeRequest:
    """Build a single-UPSERT batch replacing all values of ``record`` with ``new_address``.

    Name, type and TTL are carried over from ``record``. Any extra values of a
    multi-value record are dropped.
    """
    if record.ttl is None:
        raise MalformedRecordError(
            f"{record.type.value} record {record.name} in zone {zone_id} has no TTL "
            f"(alias records are not supported)"
        )

    record_set = ResourceRecordSet(
        name=record.name,
        type=record.type,
        ttl=record.ttl,
        values=(str(new_address),),
    )
    return ChangeRequest(
        zone_id=zone_id,
        changes=(Change(action=ChangeAction.UPSERT, record_set=record_set),),
        comment=comment,
    )


class ChangeSubmitter:
    """Submits the corrective UPSERT for a drifted record. Never retries."""

    def __init__(
        self,
        store: RecordStore,
        comment: str = DEFAULT_CHANGE_COMMENT,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.comment = comment
        self._logger = logger or logging.getLogger(__name__)

    def submit(self, zone_id: str, matched_record: ResourceRecordSet, new_address: IPAddress) -> str:
        request = build_change_request(zone_id, matched_record, new_address, self.comment)

        if len(matched_record.values) > 1:
            self._logger.warning(
                f"Record {matched_record.name} holds {len(matched_record.values)} values; "
                f"only {new_address} will be kept"
            )
        self._logger.info(
            f"requesting update to {self.store.name.lower()} record for "
            f"{matched_record.type.value} {matched_record.name} -> {new_address}"
        )

        change_id = self.store.submit_change_batch(
            request.zone_id, list(request.changes), request.comment
        )
        self._logger.info(f"Submitted change {change_id} to zone {zone_id}")
        return change_id


# =============================================================================
# Propagation Tracking
# =============================================================================


class PropagationTracker:
    """Polls a submitted change until the provider reports it INSYNC.

    State machine: PENDING -> INSYNC, with a PENDING -> PENDING self-loop for
    every poll that has not converged yet. There is no timeout.
    """

    def __init__(
        self,
        store: RecordStore,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)
        self.state = ChangeStatus.PENDING
        self.polls = 0

    def wait_until_in_sync(self, change_id: str) -> None:
        """Block until ``change_id`` is INSYNC.

        Raises:
            ChangeNotFound: the provider does not know ``change_id``.
        """
        self.state = ChangeStatus.PENDING
        self.polls = 0

        while self.state is ChangeStatus.PENDING:
            self.polls += 1
            try:
                self.state = self.store.get_change_status(change_id)
            except ChangeNotFound:
                raise
            except ProviderError as e:
                self._logger.warning(
                    f"Polling change {change_id} failed, retrying in "
                    f"{self.poll_interval_seconds}s: {e}"
                )
                self._sleep(self.poll_interval_seconds)
                continue

            self._logger.info(f"change_id: {change_id} has status: {self.state.value}")
            if self.state is ChangeStatus.PENDING:
                self._sleep(self.poll_interval_seconds)


# =============================================================================
# Core Reconciler
# =============================================================================


class Reconciler:
    """Observe, detect drift, submit, track, sleep; forever."""

    def __init__(
        self,
        *,
        oracle: AddressOracle,
        detector: DriftDetector,
        submitter: ChangeSubmitter,
        tracker: PropagationTracker,
        zone_id: str,
        domain_name: str,
        record_type: RecordType,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        status_interval_seconds: float = DEFAULT_STATUS_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.oracle = oracle
        self.detector = detector
        self.submitter = submitter
        self.tracker = tracker
        self.zone_id = zone_id
        self.domain_name = domain_name
        self.record_type = record_type
        self.interval_seconds = interval_seconds
        self.status_interval_seconds = status_interval_seconds
        self._sleep = sleep
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._next_status_time: Optional[float] = None
        self._observed: Optional[IPAddress] = None
        self._recorded: Optional[IPAddress] = None

    def _report_status(self, address: IPAddress) -> None:
        now = self._clock()
        if self._next_status_time is None or now >= self._next_status_time:
            self._logger.info(f"current public address is: {address}")
            self._next_status_time = now + self.status_interval_seconds

    def describe(self) -> str:
        """Context for log lines: what is being reconciled and what is known so far."""
        parts = [
            f"zone={self.zone_id}",
            f"domain={self.domain_name}",
            f"type={self.record_type.value}",
        ]
        if self._observed is not None:
            parts.append(f"observed={self._observed}")
        if self._recorded is not None:
            parts.append(f"recorded={self._recorded}")
        return " ".join(parts)

    def reconcile_once(self) -> CycleResult:
        """Run one cycle.

        Raises:
            TransientError: the cycle was aborted and should be retried later.
            FatalError: the record cannot be reconciled at all.
        """
        self._observed = None
        self._recorded = None

        observed = self.oracle.observe(self.record_type)
        self._observed = observed
        self._report_status(observed)

        drift = self.detector.check(self.domain_name, self.record_type, observed)
        self._recorded = drift.record_address

        if drift.is_current:
            self._logger.debug(f"Record is current ({self.describe()})")
            return CycleResult(
                outcome=CycleOutcome.CURRENT,
                observed_address=observed,
                record_address=drift.record_address,
            )

        change_id = self.submitter.submit(self.zone_id, drift.record, observed)
        self.tracker.wait_until_in_sync(change_id)
        self._logger.info(f"Record updated and in sync ({self.describe()})")

        return CycleResult(
            outcome=CycleOutcome.UPDATED,
            observed_address=observed,
            record_address=drift.record_address,
            change_id=change_id,
        )

    def run(self, max_cycles: Optional[int] = None) -> None:
        """Reconcile every ``interval_seconds`` until ``max_cycles`` (forever if None).

        Transient failures are logged and retried on the next tick; fatal
        errors propagate.
        """
        cycles = 0
        while True:
            try:
                self.reconcile_once()
            except TransientError as e:
                self._logger.warning(f"Reconciliation cycle failed ({self.describe()}): {e}")

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return
            self._sleep(self.interval_seconds)


# =============================================================================
# Configuration
# =============================================================================

ENV_PREFIX = "R53_DDNS_"


@dataclass(frozen=True)
class Settings:
    zone_id: str
    domain_name: str
    record_type: RecordType = RecordType.A
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    status_interval_seconds: int = DEFAULT_STATUS_INTERVAL_SECONDS
    oracle_url: str = ""
    oracle_timeout: float = DEFAULT_ORACLE_TIMEOUT
    log_level: str = "INFO"
    once: bool = False
    config_path: str = ""


# Settings field -> environment variable
_ENV_VARS: Dict[str, str] = {
    "zone_id": f"{ENV_PREFIX}ZONE_ID",
    "domain_name": f"{ENV_PREFIX}DOMAIN_NAME",
    "record_type": f"{ENV_PREFIX}RECORD_TYPE",
    "interval_seconds": f"{ENV_PREFIX}INTERVAL_SECONDS",
    "poll_interval_seconds": f"{ENV_PREFIX}POLL_INTERVAL_SECONDS",
    "status_interval_seconds": f"{ENV_PREFIX}STATUS_INTERVAL_SECONDS",
    "oracle_url": f"{ENV_PREFIX}ORACLE_URL",
    "oracle_timeout": f"{ENV_PREFIX}ORACLE_TIMEOUT",
    "log_level": "LOG_LEVEL",
}

_INT_FIELDS = ("interval_seconds", "poll_interval_seconds", "status_interval_seconds")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="r53-ddns",
        description="Correct drift between your public IP and a Route53 DNS A|AAAA record",
    )
    parser.add_argument("-z", "--dns-zone-id", dest="zone_id", help="DNS zone id (see AWS Console Route53)")
    parser.add_argument("-d", "--domain-name", dest="domain_name", help="domain name (ex. 'docs.example.com.')")
    parser.add_argument("-t", "--record-type", dest="record_type", help="A or AAAA (default: A)")
    parser.add_argument("-s", "--seconds", dest="interval_seconds", help="refresh timer in seconds (default: 180)")
    parser.add_argument(
        "--poll-seconds", dest="poll_interval_seconds", help="change status poll interval (default: 180)"
    )
    parser.add_argument(
        "--status-seconds",
        dest="status_interval_seconds",
        help="interval between public address reports (default: one week)",
    )
    parser.add_argument("--oracle-url", dest="oracle_url", help="public address endpoint")
    parser.add_argument(
        "--oracle-timeout", dest="oracle_timeout", help="public address request timeout in seconds (default: 10)"
    )
    parser.add_argument("--config", dest="config_path", help="YAML config file")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    return parser


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load a YAML config file into a dict of Settings field values."""
    path = Path(config_path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(Settings) if f.name not in ("once", "config_path")}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {path}: {', '.join(map(str, unknown))}")
    return {k: v for k, v in data.items() if k in known and v is not None}


def _parse_positive_int(value: Any, name: str) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {parsed}")
    return parsed


def _parse_positive_float(value: Any, name: str) -> float:
    try:
        parsed = float(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    # nan and inf are rejected by requests as timeouts
    if not math.isfinite(parsed) or parsed <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    return parsed


def load_settings(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings from config file, environment and flags (highest wins)."""
    env = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    config_path = args.config_path or env.get(f"{ENV_PREFIX}CONFIG", "")
    values: Dict[str, Any] = load_config_file(config_path) if config_path else {}

    for field_name, var in _ENV_VARS.items():
        raw = env.get(var, "").strip()
        if raw:
            values[field_name] = raw

    for field_name in _ENV_VARS:
        flag_value = getattr(args, field_name, None)
        if flag_value is not None:
            values[field_name] = flag_value

    zone_id = str(values.get("zone_id") or "").strip()
    domain_name = str(values.get("domain_name") or "").strip()
    errors = []
    if not zone_id:
        errors.append("zone id is required (-z or R53_DDNS_ZONE_ID)")
    if not domain_name:
        errors.append("domain name is required (-d or R53_DDNS_DOMAIN_NAME)")
    if errors:
        raise ConfigError("; ".join(errors))

    ints = {
        name: _parse_positive_int(values[name], name) for name in _INT_FIELDS if name in values
    }
    oracle_timeout = _parse_positive_float(
        values.get("oracle_timeout", DEFAULT_ORACLE_TIMEOUT), "oracle_timeout"
    )

    return Settings(
        zone_id=zone_id,
        domain_name=domain_name,
        record_type=RecordType.from_text(values.get("record_type", "A")),
        oracle_url=str(values.get("oracle_url") or "").strip(),
        oracle_timeout=oracle_timeout,
        log_level=str(values.get("log_level") or "INFO").upper(),
        once=bool(args.once),
        config_path=config_path,
        **ints,
    )


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# =============================================================================
# Main
# =============================================================================


def create_reconciler(
    settings: Settings,
    store: Optional[RecordStore] = None,
    oracle: Optional[AddressOracle] = None,
) -> Reconciler:
    """Factory function wiring the configured collaborators together."""
    store = store or Route53RecordStore()
    oracle = oracle or HttpAddressOracle(settings.oracle_url, settings.oracle_timeout)
    return Reconciler(
        oracle=oracle,
        detector=DriftDetector(store, settings.zone_id),
        submitter=ChangeSubmitter(store),
        tracker=PropagationTracker(store, settings.poll_interval_seconds),
        zone_id=settings.zone_id,
        domain_name=settings.domain_name,
        record_type=settings.record_type,
        interval_seconds=settings.interval_seconds,
        status_interval_seconds=settings.status_interval_seconds,
    )


def _raise_keyboard_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        setup_logging(os.getenv("LOG_LEVEL", "INFO"))
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)
    logger.info(
        f"starting with options: -z {settings.zone_id} -d {settings.domain_name} "
        f"-t {settings.record_type.value} -s {settings.interval_seconds}"
    )
    if settings.config_path:
        logger.info(f"Config file: {settings.config_path}")

    signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)

    try:
        reconciler = create_reconciler(settings)
        logger.info(f"Record store: {reconciler.detector.store.name}")
        logger.info(f"Address oracle: {reconciler.oracle.name}")

        if settings.once:
            result = reconciler.reconcile_once()
            logger.info(f"Single cycle finished: {result.outcome.value}")
            return

        logger.info(f"Poll interval: {settings.interval_seconds}s")
        reconciler.run()

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except FatalError as e:
        logger.error(f"Cannot reconcile, exiting: {e}")
        sys.exit(1)
    except DDNSError as e:
        logger.error(f"Reconciliation failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
