# hft_control/providers/digitalocean.py
"""DigitalOcean droplet adapter."""

import logging
from typing import Any, Dict, Optional

from hft_control.core.errors import ControlError, ProtocolError
from hft_control.core.models import CloudCredential, LifecycleStatus
from hft_control.providers.base import (
    DeploySpec,
    InstanceStatus,
    Pricing,
    ProviderAdapter,
    ProviderCatalog,
    Region,
    ValidationResult,
)

logger = logging.getLogger(__name__)

API_URL = "https://api.digitalocean.com/v2"
DEFAULT_IMAGE = "ubuntu-24-04-x64"

CATALOG = ProviderCatalog(
    name="digitalocean",
    display_name="DigitalOcean",
    default_region="sgp1",
    regions=[
        Region("nyc1", "New York 1", "US"),
        Region("nyc3", "New York 3", "US"),
        Region("sfo3", "San Francisco 3", "US"),
        Region("ams3", "Amsterdam 3", "NL"),
        Region("sgp1", "Singapore 1", "SG", 10),
        Region("lon1", "London 1", "UK"),
        Region("fra1", "Frankfurt 1", "DE"),
        Region("tor1", "Toronto 1", "CA"),
        Region("blr1", "Bangalore 1", "IN"),
        Region("syd1", "Sydney 1", "AU"),
    ],
    pricing={
        "small": Pricing("s-1vcpu-1gb", 0.00595, 4.00),
        "medium": Pricing("s-2vcpu-4gb", 0.02976, 20.00),
        "large": Pricing("s-4vcpu-8gb", 0.05952, 40.00),
    },
)

STATE_MAP = {
    "new": LifecycleStatus.PROVISIONING,
    "active": LifecycleStatus.RUNNING,
    "off": LifecycleStatus.STOPPED,
    "archive": LifecycleStatus.TERMINATED,
}


def _public_ip(droplet: Dict[str, Any]) -> Optional[str]:
    for network in droplet.get("networks", {}).get("v4", []):
        if network.get("type") == "public":
            return network.get("ip_address")
    return None


class DigitalOceanAdapter(ProviderAdapter):
    catalog = CATALOG

    def _do(self, creds: CloudCredential, method: str, path: str, label: str, **kwargs) -> Dict[str, Any]:
        (token,) = creds.require("api_token")
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        return self.api(method, f"{API_URL}{path}", label, headers=headers, code_field="id", **kwargs)

    def _to_status(self, droplet: Dict[str, Any]) -> InstanceStatus:
        return InstanceStatus(
            state=STATE_MAP.get(droplet.get("status"), LifecycleStatus.ERROR),
            public_ip=_public_ip(droplet),
            instance_id=str(droplet.get("id")),
            region=(droplet.get("region") or {}).get("slug"),
        )

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            data = self._do(creds, "GET", "/account", "account")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        account = data.get("account", {})
        return ValidationResult(valid=account.get("status") != "locked", account_id=account.get("uuid"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        if not spec.ssh_public_key:
            return None
        try:
            data = self._do(creds, "POST", "/account/keys", "import_key", json={
                "name": f"{spec.name}-key",
                "public_key": spec.ssh_public_key,
            })
            return str(data["ssh_key"]["id"])
        except ControlError as e:
            # 422 when the key is already registered
            if e.provider_code not in ("422", "unprocessable_entity"):
                raise
        keys = self._do(creds, "GET", "/account/keys?per_page=200", "list_keys")
        for key in keys.get("ssh_keys", []):
            if key.get("public_key", "").strip() == spec.ssh_public_key.strip():
                return str(key["id"])
        raise ProtocolError("digitalocean reported a duplicate key but it was not listed")

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        inbound = [
            {
                "protocol": "tcp",
                "ports": str(port),
                "sources": {"addresses": ["0.0.0.0/0", "::/0"]},
            }
            for port in spec.firewall_rules
        ]
        outbound = [
            {"protocol": proto, "ports": "all", "destinations": {"addresses": ["0.0.0.0/0", "::/0"]}}
            for proto in ("tcp", "udp")
        ]
        data = self._do(creds, "POST", "/firewalls", "create_firewall", json={
            "name": f"{spec.name}-fw",
            "inbound_rules": inbound,
            "outbound_rules": outbound,
            "tags": [spec.name],
        })
        return data.get("firewall", {}).get("id")

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        payload: Dict[str, Any] = {
            "name": spec.name,
            "region": region,
            "size": self.catalog.native_type(spec.size),
            "image": spec.image or DEFAULT_IMAGE,
            "tags": [spec.name] + [f"{k}:{v}" for k, v in sorted(spec.tags.items())],
            "ipv6": False,
        }
        if key_id:
            payload["ssh_keys"] = [int(key_id) if key_id.isdigit() else key_id]
        if spec.user_data:
            payload["user_data"] = spec.user_data

        data = self._do(creds, "POST", "/droplets", "create_droplet", json=payload)
        droplet_id = data.get("droplet", {}).get("id")
        if droplet_id is None:
            raise ProtocolError("digitalocean returned no droplet id")
        return str(droplet_id)

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        data = self._do(creds, "GET", f"/droplets/{instance_id}", "get_droplet")
        return self._to_status(data.get("droplet", {}))

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        data = self._do(creds, "GET", "/droplets?per_page=200", "list_droplets")
        for droplet in data.get("droplets", []):
            if _public_ip(droplet) == ip:
                return self._to_status(droplet)
        return None

    def _action(self, creds, instance_id: str, action: str) -> None:
        self._do(creds, "POST", f"/droplets/{instance_id}/actions", action, json={"type": action})

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "power_on")

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "power_off")

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "reboot")

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._do(creds, "DELETE", f"/droplets/{instance_id}", "delete_droplet")
