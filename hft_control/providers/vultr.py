# hft_control/providers/vultr.py
"""Vultr instance adapter."""

import base64
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

API_URL = "https://api.vultr.com/v2"
UBUNTU_24_OS_ID = 2136
UNASSIGNED_IP = "0.0.0.0"

CATALOG = ProviderCatalog(
    name="vultr",
    display_name="Vultr",
    default_region="nrt",
    regions=[
        Region("ewr", "New Jersey", "US"),
        Region("ord", "Chicago", "US"),
        Region("dfw", "Dallas", "US"),
        Region("lax", "Los Angeles", "US"),
        Region("atl", "Atlanta", "US"),
        Region("mia", "Miami", "US"),
        Region("sea", "Seattle", "US"),
        Region("ams", "Amsterdam", "NL"),
        Region("lhr", "London", "UK"),
        Region("fra", "Frankfurt", "DE"),
        Region("cdg", "Paris", "FR"),
        Region("nrt", "Tokyo", "JP", 5),
        Region("sgp", "Singapore", "SG", 15),
        Region("syd", "Sydney", "AU"),
        Region("icn", "Seoul", "KR", 8),
    ],
    pricing={
        "small": Pricing("vc2-1c-1gb", 0.00744, 5.00),
        "medium": Pricing("vc2-2c-4gb", 0.02976, 20.00),
        "large": Pricing("vc2-4c-8gb", 0.05952, 40.00),
    },
)


class VultrAdapter(ProviderAdapter):
    catalog = CATALOG

    def _vultr(self, creds: CloudCredential, method: str, path: str, label: str, **kwargs) -> Dict[str, Any]:
        (api_key,) = creds.require("api_key")
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        return self.api(method, f"{API_URL}{path}", label, headers=headers, **kwargs)

    @staticmethod
    def _to_status(instance: Dict[str, Any]) -> InstanceStatus:
        main_ip = instance.get("main_ip")
        ip = main_ip if main_ip and main_ip != UNASSIGNED_IP else None
        status = instance.get("status")
        power = instance.get("power_status")

        if status == "active" and power == "running":
            state = LifecycleStatus.RUNNING
        elif status == "active" and power == "stopped":
            state = LifecycleStatus.STOPPED
        elif status in ("pending", "resizing"):
            state = LifecycleStatus.PROVISIONING
        elif status == "suspended":
            state = LifecycleStatus.STOPPED
        else:
            state = LifecycleStatus.ERROR

        return InstanceStatus(
            state=state,
            public_ip=ip,
            instance_id=instance.get("id"),
            region=instance.get("region"),
        )

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            data = self._vultr(creds, "GET", "/account", "account")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        return ValidationResult(valid=True, account_id=data.get("account", {}).get("name"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        if not spec.ssh_public_key:
            return None
        data = self._vultr(creds, "POST", "/ssh-keys", "import_key", json={
            "name": f"{spec.name}-key",
            "ssh_key": spec.ssh_public_key,
        })
        return data.get("ssh_key", {}).get("id")

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        data = self._vultr(creds, "POST", "/firewalls", "create_firewall", json={
            "description": f"{spec.name}-fw",
        })
        group_id = data.get("firewall_group", {}).get("id")
        if not group_id:
            raise ProtocolError("vultr returned no firewall group id")

        for port in spec.firewall_rules:
            self._vultr(creds, "POST", f"/firewalls/{group_id}/rules", "firewall_rule", json={
                "ip_type": "v4",
                "protocol": "tcp",
                "subnet": "0.0.0.0",
                "subnet_size": 0,
                "port": str(port),
            })
        return group_id

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        payload: Dict[str, Any] = {
            "region": region,
            "plan": self.catalog.native_type(spec.size),
            "os_id": int(spec.image) if spec.image and spec.image.isdigit() else UBUNTU_24_OS_ID,
            "label": spec.name,
            "hostname": spec.name,
            "tags": [f"{k}:{v}" for k, v in sorted(spec.tags.items())],
        }
        if key_id:
            payload["sshkey_id"] = [key_id]
        if firewall_id:
            payload["firewall_group_id"] = firewall_id
        if spec.user_data:
            payload["user_data"] = base64.b64encode(spec.user_data.encode()).decode()

        data = self._vultr(creds, "POST", "/instances", "create_instance", json=payload)
        instance_id = data.get("instance", {}).get("id")
        if not instance_id:
            raise ProtocolError("vultr returned no instance id")
        return instance_id

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        data = self._vultr(creds, "GET", f"/instances/{instance_id}", "get_instance")
        return self._to_status(data.get("instance", {}))

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        data = self._vultr(creds, "GET", "/instances", "list_instances", params={"main_ip": ip})
        for instance in data.get("instances", []):
            if instance.get("main_ip") == ip:
                return self._to_status(instance)
        return None

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._vultr(creds, "POST", f"/instances/{instance_id}/start", "start")

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._vultr(creds, "POST", f"/instances/{instance_id}/halt", "halt")

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._vultr(creds, "POST", f"/instances/{instance_id}/reboot", "reboot")

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._vultr(creds, "DELETE", f"/instances/{instance_id}", "delete")
