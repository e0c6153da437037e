# hft_control/providers/contabo.py
"""Contabo compute adapter (OIDC password grant + REST)."""

import logging
import uuid
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

AUTH_URL = "https://auth.contabo.com/auth/realms/contabo/protocol/openid-connect/token"
API_URL = "https://api.contabo.com/v1"
DEFAULT_IMAGE = "afecbb85-e2fc-46f0-9684-b46b1faf00bb"

CATALOG = ProviderCatalog(
    name="contabo",
    display_name="Contabo",
    default_region="EU",
    regions=[
        Region("EU", "Germany (Nuremberg)", "DE"),
        Region("US-central", "US Central (St. Louis)", "US"),
        Region("US-east", "US East (New York)", "US"),
        Region("US-west", "US West (Seattle)", "US"),
        Region("SIN", "Singapore", "SG", 15),
        Region("AUS", "Australia (Sydney)", "AU"),
        Region("UK", "United Kingdom", "UK"),
        Region("JPN", "Japan (Tokyo)", "JP", 5),
    ],
    pricing={
        "small": Pricing("V45", 0.0104, 6.99),
        "medium": Pricing("V47", 0.0163, 10.99),
        "large": Pricing("V48", 0.0237, 15.99),
    },
)

STATE_MAP = {
    "provisioning": LifecycleStatus.PROVISIONING,
    "installing": LifecycleStatus.PROVISIONING,
    "pending_payment": LifecycleStatus.PROVISIONING,
    "running": LifecycleStatus.RUNNING,
    "stopped": LifecycleStatus.STOPPED,
    "cancelled": LifecycleStatus.TERMINATED,
    "error": LifecycleStatus.ERROR,
}


class ContaboAdapter(ProviderAdapter):
    """
    Contabo has no security-group API; ingress is left to the image
    firewall, so ``ensure_firewall`` only records the intended ports.
    """

    catalog = CATALOG

    def _token(self, creds: CloudCredential) -> str:
        client_id, client_secret, user, password = creds.require(
            "client_id", "client_secret", "api_user", "api_password",
        )

        def fetch():
            data = self.api("POST", AUTH_URL, "token", data={
                "client_id": client_id,
                "client_secret": client_secret,
                "username": user,
                "password": password,
                "grant_type": "password",
            })
            token = data.get("access_token")
            if not token:
                raise ProtocolError("contabo token response has no access_token")
            return token, data.get("expires_in", 300)

        return self.cached_token(client_id, fetch)

    def _contabo(self, creds: CloudCredential, method: str, path: str, label: str, **kwargs) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token(creds)}",
            "Content-Type": "application/json",
            "x-request-id": str(uuid.uuid4()),
        }
        return self.api(method, f"{API_URL}{path}", label, headers=headers, **kwargs)

    @staticmethod
    def _to_status(instance: Dict[str, Any]) -> InstanceStatus:
        ip = ((instance.get("ipConfig") or {}).get("v4") or {}).get("ip")
        return InstanceStatus(
            state=STATE_MAP.get(str(instance.get("status", "")).lower(), LifecycleStatus.ERROR),
            public_ip=ip,
            instance_id=str(instance.get("instanceId")),
            region=instance.get("region"),
        )

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            self._contabo(creds, "GET", "/compute/instances", "list_instances", params={"size": 1})
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        return ValidationResult(valid=True, account_id=creds.get("client_id"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        if not spec.ssh_public_key:
            return None
        data = self._contabo(creds, "POST", "/secrets", "import_key", json={
            "name": f"{spec.name}-key",
            "value": spec.ssh_public_key,
            "type": "ssh",
        })
        items = data.get("data") or []
        if not items:
            raise ProtocolError("contabo returned no secret id")
        return str(items[0].get("secretId"))

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        logger.info(f"[contabo] Ingress for ports {spec.firewall_rules} is configured on-host")
        return None

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        payload: Dict[str, Any] = {
            "imageId": spec.image or DEFAULT_IMAGE,
            "productId": self.catalog.native_type(spec.size),
            "region": region,
            "displayName": spec.name,
            "period": 1,
        }
        if key_id:
            payload["sshKeys"] = [int(key_id) if key_id.isdigit() else key_id]
        if spec.user_data:
            payload["userData"] = spec.user_data

        data = self._contabo(creds, "POST", "/compute/instances", "create_instance", json=payload)
        items = data.get("data") or []
        if not items or items[0].get("instanceId") is None:
            raise ProtocolError("contabo returned no instance id")
        return str(items[0]["instanceId"])

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        data = self._contabo(creds, "GET", f"/compute/instances/{instance_id}", "get_instance")
        items = data.get("data") or []
        if not items:
            raise ProtocolError(f"contabo instance {instance_id} not found")
        return self._to_status(items[0])

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        data = self._contabo(creds, "GET", "/compute/instances", "list_instances", params={"size": 100})
        for instance in data.get("data") or []:
            status = self._to_status(instance)
            if status.public_ip == ip:
                return status
        return None

    def _action(self, creds, instance_id: str, action: str) -> None:
        self._contabo(creds, "POST", f"/compute/instances/{instance_id}/actions/{action}", action)

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "start")

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "stop")

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "restart")

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._contabo(creds, "POST", f"/compute/instances/{instance_id}/cancel", "cancel")
