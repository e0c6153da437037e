# hft_control/providers/gcp.py
"""Google Compute Engine adapter (service-account JWT bearer)."""

import json
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
from hft_control.signing import rsa_signers

logger = logging.getLogger(__name__)

API_URL = "https://compute.googleapis.com/compute/v1"
DEFAULT_IMAGE = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2404-lts-amd64"

CATALOG = ProviderCatalog(
    name="gcp",
    display_name="Google Cloud Platform",
    default_region="asia-northeast1",
    regions=[
        Region("us-central1", "Iowa", "US"),
        Region("us-east1", "South Carolina", "US"),
        Region("us-west1", "Oregon", "US"),
        Region("europe-west1", "Belgium", "BE"),
        Region("europe-west3", "Frankfurt", "DE"),
        Region("asia-northeast1", "Tokyo", "JP", 5),
        Region("asia-southeast1", "Singapore", "SG", 15),
        Region("asia-east2", "Hong Kong", "HK", 8),
    ],
    pricing={
        "small": Pricing("e2-micro", 0.0, 0.0, is_free=True),
        "medium": Pricing("e2-medium", 0.0335, 24.12),
        "large": Pricing("e2-standard-2", 0.067, 48.24),
    },
)

STATE_MAP = {
    "PROVISIONING": LifecycleStatus.PROVISIONING,
    "STAGING": LifecycleStatus.PROVISIONING,
    "RUNNING": LifecycleStatus.RUNNING,
    "STOPPING": LifecycleStatus.STOPPED,
    "SUSPENDING": LifecycleStatus.STOPPED,
    "SUSPENDED": LifecycleStatus.STOPPED,
    "TERMINATED": LifecycleStatus.STOPPED,
    "REPAIRING": LifecycleStatus.ERROR,
}


def _nat_ip(instance: Dict[str, Any]) -> Optional[str]:
    for nic in instance.get("networkInterfaces", []):
        for config in nic.get("accessConfigs", []):
            if config.get("natIP"):
                return config["natIP"]
    return None


class GCPAdapter(ProviderAdapter):
    """
    Instances live in a zone; the zone is ``<region>-a`` unless the
    credential names one explicitly.

    Note that GCE reports a stopped VM as TERMINATED; a deleted VM is a 404.
    """

    catalog = CATALOG

    @staticmethod
    def _service_account(creds: CloudCredential) -> Dict[str, Any]:
        raw = creds.get("service_account_json")
        if raw:
            try:
                return json.loads(raw) if isinstance(raw, str) else dict(raw)
            except ValueError as e:
                raise ValueError("service_account_json is not valid JSON") from e
        client_email, private_key, project_id = creds.require("client_email", "private_key", "project_id")
        return {"client_email": client_email, "private_key": private_key, "project_id": project_id}

    def _project(self, creds: CloudCredential) -> str:
        project = creds.get("project_id") or self._service_account(creds).get("project_id")
        if not project:
            raise ValueError("Missing credential field: project_id")
        return project

    def _zone(self, creds: CloudCredential, region: Optional[str] = None) -> str:
        return creds.get("zone") or f"{region or creds.get('region') or self.catalog.default_region}-a"

    def _token(self, creds: CloudCredential) -> str:
        account = self._service_account(creds)
        email = account.get("client_email")
        if not email or not account.get("private_key"):
            raise ValueError("Missing credential field: client_email/private_key")

        def fetch():
            assertion = rsa_signers.build_jwt_assertion(email, account["private_key"])
            data = self.api(
                "POST", rsa_signers.GOOGLE_TOKEN_URL, "token",
                data=rsa_signers.token_request_body(assertion),
                code_field="error",
            )
            token = data.get("access_token")
            if not token:
                raise ProtocolError("gcp token response has no access_token")
            return token, data.get("expires_in", 3600)

        return self.cached_token(email, fetch)

    def _gce(self, creds: CloudCredential, method: str, path: str, label: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token(creds)}"}
        url = f"{API_URL}/projects/{self._project(creds)}{path}"
        return self.api(method, url, label, headers=headers, code_field="error.errors.0.reason", **kwargs)

    def _to_status(self, instance: Dict[str, Any], zone: str) -> InstanceStatus:
        return InstanceStatus(
            state=STATE_MAP.get(instance.get("status"), LifecycleStatus.ERROR),
            public_ip=_nat_ip(instance),
            instance_id=instance.get("name"),
            region=zone.rsplit("-", 1)[0],
        )

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            self._gce(creds, "GET", "", "project")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        return ValidationResult(valid=True, account_id=self._project(creds))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        # GCE takes keys as instance metadata, nothing to register upfront
        return None

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        name = f"{spec.name}-fw"
        try:
            self._gce(creds, "POST", "/global/firewalls", "create_firewall", json={
                "name": name,
                "network": "global/networks/default",
                "direction": "INGRESS",
                "allowed": [{"IPProtocol": "tcp", "ports": [str(p) for p in spec.firewall_rules]}],
                "sourceRanges": ["0.0.0.0/0"],
                "targetTags": [spec.name],
            })
        except ControlError as e:
            if e.provider_code != "alreadyExists":
                raise
            logger.info(f"[gcp] Firewall {name} already exists")
        return name

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        zone = self._zone(creds, region)
        metadata = []
        if spec.ssh_public_key:
            metadata.append({"key": "ssh-keys", "value": f"ubuntu:{spec.ssh_public_key.strip()}"})
        if spec.user_data:
            metadata.append({"key": "startup-script", "value": spec.user_data})

        payload = {
            "name": spec.name,
            "machineType": f"zones/{zone}/machineTypes/{self.catalog.native_type(spec.size)}",
            "tags": {"items": [spec.name]},
            "labels": {k.lower(): str(v).lower() for k, v in spec.tags.items()},
            "disks": [{
                "boot": True,
                "autoDelete": True,
                "initializeParams": {"sourceImage": spec.image or DEFAULT_IMAGE, "diskSizeGb": "10"},
            }],
            "networkInterfaces": [{
                "network": "global/networks/default",
                "accessConfigs": [{"type": "ONE_TO_ONE_NAT", "name": "External NAT"}],
            }],
            "metadata": {"items": metadata},
        }
        self._gce(creds, "POST", f"/zones/{zone}/instances", "create_instance", json=payload)
        return spec.name

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        zone = self._zone(creds, region)
        data = self._gce(creds, "GET", f"/zones/{zone}/instances/{instance_id}", "get_instance")
        return self._to_status(data, zone)

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        # aggregated list spans every zone
        data = self._gce(creds, "GET", "/aggregated/instances", "list_instances")
        for scope, bucket in (data.get("items") or {}).items():
            for instance in bucket.get("instances", []):
                if _nat_ip(instance) == ip:
                    return self._to_status(instance, scope.split("/", 1)[-1])
        return None

    def _instance_action(self, creds, instance_id: str, verb: str, region: Optional[str]) -> None:
        zone = self._zone(creds, region)
        self._gce(creds, "POST", f"/zones/{zone}/instances/{instance_id}/{verb}", verb)

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._instance_action(creds, instance_id, "start", region)

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._instance_action(creds, instance_id, "stop", region)

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._instance_action(creds, instance_id, "reset", region)

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        zone = self._zone(creds, region)
        self._gce(creds, "DELETE", f"/zones/{zone}/instances/{instance_id}", "delete")
