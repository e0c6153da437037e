# hft_control/providers/base.py
"""Cloud provider adapter interface and shared provisioning helpers."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import requests

from hft_control.core.errors import ControlError, IntegrityError
from hft_control.core.http import DEFAULT_RETRY, RetryPolicy, UpstreamClient, with_retry
from hft_control.core.models import CloudCredential, LifecycleStatus

logger = logging.getLogger(__name__)


# ============================================
# CATALOG
# ============================================

@dataclass(frozen=True)
class Region:
    id: str
    name: str
    country: str
    latency_estimate_ms: Optional[int] = None


@dataclass(frozen=True)
class Pricing:
    native_type: str
    hourly: float
    monthly: float
    is_free: bool = False


@dataclass(frozen=True)
class SizeSpec:
    vcpu: int
    ram_gb: int
    storage_gb: int


SIZE_SPECS: Dict[str, SizeSpec] = {
    "small": SizeSpec(vcpu=2, ram_gb=4, storage_gb=25),
    "medium": SizeSpec(vcpu=4, ram_gb=8, storage_gb=50),
    "large": SizeSpec(vcpu=8, ram_gb=16, storage_gb=100),
}


@dataclass(frozen=True)
class ProviderCatalog:
    name: str
    display_name: str
    default_region: str
    regions: List[Region]
    pricing: Dict[str, Pricing]

    def native_type(self, size: str) -> str:
        """Map small/medium/large to the provider type; anything else is native already."""
        pricing = self.pricing.get(size)
        return pricing.native_type if pricing else size

    def estimate_cost(self, size: str) -> Optional[Pricing]:
        return self.pricing.get(size)

    def list_regions(self) -> List[Region]:
        """Regions sorted by estimated latency to the exchanges; unknown latency last."""
        return sorted(self.regions, key=lambda r: (r.latency_estimate_ms is None, r.latency_estimate_ms or 0))

    def has_region(self, region: str) -> bool:
        return any(r.id == region for r in self.regions)


# ============================================
# REQUEST / RESULT TYPES
# ============================================

DEFAULT_PORTS = [22, 443, 80]


@dataclass
class DeploySpec:
    region: Optional[str] = None
    size: str = "small"
    image: Optional[str] = None
    ssh_public_key: Optional[str] = None
    firewall_rules: List[int] = field(default_factory=lambda: list(DEFAULT_PORTS))
    tags: Dict[str, str] = field(default_factory=dict)
    name: str = "hft-bot"
    user_data: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    account_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class InstanceStatus:
    state: LifecycleStatus
    public_ip: Optional[str] = None
    instance_id: Optional[str] = None
    region: Optional[str] = None


@dataclass
class DeployResult:
    instance_id: str
    region: str
    instance_type: str
    public_ip: Optional[str] = None
    status: str = "provisioning"
    ssh_key_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "instance_id": self.instance_id,
            "public_ip": self.public_ip,
            "region": self.region,
            "status": self.status,
        }


@dataclass
class PowerResult:
    prev_state: LifecycleStatus
    new_state: LifecycleStatus


@dataclass(frozen=True)
class PollPolicy:
    attempts: int = 30
    interval_s: float = 10.0


DEFAULT_POLL = PollPolicy()


# ============================================
# ADAPTER INTERFACE
# ============================================

class ProviderAdapter(ABC):
    """
    Uniform lifecycle over one cloud API.

    Subclasses implement the provider calls; ``deploy`` sequences them:
    key import, firewall and ingress rules, instance create, then polling
    until the instance is running with a public IP.
    """

    catalog: ProviderCatalog

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        retry: RetryPolicy = DEFAULT_RETRY,
        poll: PollPolicy = DEFAULT_POLL,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 30,
    ):
        self.http = UpstreamClient(self.catalog.name, session=session, timeout=timeout)
        self.retry = retry
        self.poll = poll
        self.sleep = sleep
        self._tokens: Dict[str, Tuple[str, float]] = {}

    @property
    def name(self) -> str:
        return self.catalog.name

    # -------------------------
    # Provider calls
    # -------------------------

    @abstractmethod
    def validate(self, creds: CloudCredential) -> ValidationResult:
        raise NotImplementedError

    @abstractmethod
    def import_key(self, creds: CloudCredential, spec: DeploySpec, region: str) -> Optional[str]:
        """Register the SSH public key; returns the provider key id (None if no key)."""
        raise NotImplementedError

    @abstractmethod
    def ensure_firewall(self, creds: CloudCredential, spec: DeploySpec, region: str) -> Optional[str]:
        """Create firewall / security group with ingress for ``spec.firewall_rules``."""
        raise NotImplementedError

    @abstractmethod
    def create_instance(
        self,
        creds: CloudCredential,
        spec: DeploySpec,
        region: str,
        key_id: Optional[str],
        firewall_id: Optional[str],
    ) -> str:
        """Create the instance and return its id."""
        raise NotImplementedError

    # Lookups and power verbs take the region the instance lives in.
    # None falls back to the credential region, then the catalog default.

    @abstractmethod
    def status(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        raise NotImplementedError

    @abstractmethod
    def _start(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def _stop(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def _terminate(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def find_by_ip(self, creds: CloudCredential, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        raise NotImplementedError

    # -------------------------
    # Shared behaviour
    # -------------------------

    def call(self, operation: Callable, label: str):
        return with_retry(operation, policy=self.retry, sleep=self.sleep, label=f"{self.name}.{label}")

    def api(self, method: str, url: str, label: str, **kwargs):
        """JSON call with the standard retry policy around transient failures."""
        return self.call(lambda: self.http.json(method, url, **kwargs), label)

    def cached_token(self, cache_key: str, fetch: Callable[[], Tuple[str, int]]) -> str:
        """Reuse an OAuth bearer until a minute before it expires."""
        cached = self._tokens.get(cache_key)
        if cached and cached[1] > time.monotonic():
            return cached[0]
        token, expires_in = fetch()
        self._tokens[cache_key] = (token, time.monotonic() + max(int(expires_in) - 60, 0))
        return token

    def resolve_region(self, creds: CloudCredential, spec: Optional[DeploySpec] = None,
                       region: Optional[str] = None) -> str:
        if spec is not None and spec.region:
            return spec.region
        return region or creds.get("region") or self.catalog.default_region

    def deploy(self, creds: CloudCredential, spec: DeploySpec) -> DeployResult:
        region = self.resolve_region(creds, spec)
        instance_type = self.catalog.native_type(spec.size)

        logger.info(f"[{self.name}] Deploying {instance_type} in {region}")
        key_id = self.import_key(creds, spec, region)
        firewall_id = self.ensure_firewall(creds, spec, region)
        instance_id = self.create_instance(creds, spec, region, key_id, firewall_id)
        logger.info(f"[{self.name}] Instance created: {instance_id}, waiting for IP")

        status = poll_until_running(self, creds, instance_id, region=region)

        result = DeployResult(
            instance_id=instance_id,
            region=region,
            instance_type=instance_type,
            ssh_key_id=key_id,
        )
        if status is not None:
            result.public_ip = status.public_ip
            result.status = LifecycleStatus.RUNNING.value
            logger.info(f"[{self.name}] ✅ {instance_id} running at {status.public_ip}")
        else:
            logger.warning(f"[{self.name}] {instance_id} still provisioning after poll budget")
        return result

    def _restart(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> None:
        """Stop then start; adapters with a reboot verb override this."""
        self._stop(creds, instance_id, region=region)
        self._start(creds, instance_id, region=region)

    def _power(self, creds, instance_id, action, target: LifecycleStatus, region: Optional[str]) -> PowerResult:
        prev = self.status(creds, instance_id, region=region).state
        action(creds, instance_id, region=region)
        logger.info(f"[{self.name}] {instance_id}: {prev.value} -> {target.value}")
        return PowerResult(prev_state=prev, new_state=target)

    def start(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> PowerResult:
        return self._power(creds, instance_id, self._start, LifecycleStatus.RUNNING, region)

    def stop(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> PowerResult:
        return self._power(creds, instance_id, self._stop, LifecycleStatus.STOPPED, region)

    def restart(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> PowerResult:
        return self._power(creds, instance_id, self._restart, LifecycleStatus.RUNNING, region)

    def terminate(self, creds: CloudCredential, instance_id: str, region: Optional[str] = None) -> PowerResult:
        return self._power(creds, instance_id, self._terminate, LifecycleStatus.TERMINATED, region)


# ============================================
# HELPERS
# ============================================

def poll_until_running(
    adapter: ProviderAdapter,
    creds: CloudCredential,
    instance_id: str,
    region: Optional[str] = None,
) -> Optional[InstanceStatus]:
    """
    Poll status until running with an assigned IP.

    Returns None once the poll budget is spent. Transient errors during a
    poll count as a not-yet-running observation.
    """
    policy = adapter.poll
    for attempt in range(policy.attempts):
        adapter.sleep(policy.interval_s)
        try:
            status = adapter.status(creds, instance_id, region=region)
        except ControlError as e:
            if e.kind != "transient_network":
                raise
            logger.warning(f"[{adapter.name}] Poll {attempt + 1}/{policy.attempts} failed: {e.message}")
            continue

        logger.debug(
            f"[{adapter.name}] Poll {attempt + 1}/{policy.attempts}: "
            f"{status.state.value} ip={status.public_ip}"
        )
        if status.state == LifecycleStatus.RUNNING and status.public_ip:
            return status
        if status.state in (LifecycleStatus.ERROR, LifecycleStatus.TERMINATED):
            raise IntegrityError(f"{adapter.name} instance {instance_id} entered {status.state.value}")
    return None
