# hft_control/providers/oracle.py
"""Oracle Cloud Infrastructure adapter (RSA-signed REST)."""

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from hft_control.core.errors import CapacityError, ControlError, ProtocolError
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

API_VERSION = "20160918"
OUT_OF_CAPACITY = "out of host capacity"

CATALOG = ProviderCatalog(
    name="oracle",
    display_name="Oracle Cloud",
    default_region="ap-tokyo-1",
    regions=[
        Region("us-ashburn-1", "Ashburn", "US"),
        Region("us-phoenix-1", "Phoenix", "US"),
        Region("eu-frankfurt-1", "Frankfurt", "DE"),
        Region("uk-london-1", "London", "UK"),
        Region("ap-tokyo-1", "Tokyo", "JP", 5),
        Region("ap-osaka-1", "Osaka", "JP", 8),
        Region("ap-singapore-1", "Singapore", "SG", 15),
        Region("ap-sydney-1", "Sydney", "AU"),
    ],
    pricing={
        "small": Pricing("VM.Standard.E2.1.Micro", 0.0, 0.0, is_free=True),
        "medium": Pricing("VM.Standard.A1.Flex", 0.0, 0.0, is_free=True),
        "large": Pricing("VM.Standard.E4.Flex", 0.0425, 30.60),
    },
)

STATE_MAP = {
    "PROVISIONING": LifecycleStatus.PROVISIONING,
    "STARTING": LifecycleStatus.PROVISIONING,
    "RUNNING": LifecycleStatus.RUNNING,
    "STOPPING": LifecycleStatus.STOPPED,
    "STOPPED": LifecycleStatus.STOPPED,
    "TERMINATING": LifecycleStatus.TERMINATED,
    "TERMINATED": LifecycleStatus.TERMINATED,
    "CREATING_IMAGE": LifecycleStatus.RUNNING,
}


class OracleAdapter(ProviderAdapter):
    catalog = CATALOG

    # -------------------------
    # Transport
    # -------------------------

    def _oci(
        self,
        creds: CloudCredential,
        method: str,
        path: str,
        label: str,
        *,
        region: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        region = region or creds.get("region") or self.catalog.default_region
        url = f"https://iaas.{region}.oraclecloud.com/{API_VERSION}{path}"
        return self._signed(creds, method, url, label, payload=payload)

    def _signed(
        self,
        creds: CloudCredential,
        method: str,
        url: str,
        label: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        tenancy, user, fingerprint, private_key = creds.require(
            "tenancy_ocid", "user_ocid", "fingerprint", "private_key",
        )
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""

        def send():
            # Signed per attempt; the date header is part of the signature
            headers = rsa_signers.sign_http_request(
                method, url,
                key_id=f"{tenancy}/{user}/{fingerprint}",
                private_key_pem=private_key,
                body=body,
            )
            try:
                return self.http.json(method, url, headers=headers, data=body or None, code_field="code")
            except ControlError as e:
                # OCI reports exhausted shapes as a 500 InternalError
                if e.provider_code == "InternalError" and OUT_OF_CAPACITY in e.message.lower():
                    raise CapacityError(e.message, provider_code="OutOfHostCapacity",
                                        provider_message=e.provider_message) from e
                raise

        return self.call(send, label)

    def _compartment(self, creds: CloudCredential) -> str:
        return creds.get("compartment_ocid") or creds.require("tenancy_ocid")[0]

    # -------------------------
    # Lifecycle
    # -------------------------

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            (user,) = creds.require("user_ocid")
            region = creds.get("region") or self.catalog.default_region
            url = f"https://identity.{region}.oraclecloud.com/{API_VERSION}/users/{user}"
            data = self._signed(creds, "GET", url, "get_user")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        return ValidationResult(valid=data.get("lifecycleState", "ACTIVE") == "ACTIVE",
                                account_id=creds.get("tenancy_ocid"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        # Keys are passed through instance metadata
        return None

    def _subnet(self, creds, region: str) -> str:
        subnet = creds.get("subnet_ocid")
        if subnet:
            return subnet
        subnets = self._oci(
            creds, "GET", f"/subnets?compartmentId={self._compartment(creds)}", "list_subnets", region=region,
        )
        if not subnets:
            raise ProtocolError("oracle compartment has no subnet; set subnet_ocid")
        return subnets[0]["id"]

    def _first_ad(self, creds, region: str) -> str:
        (tenancy,) = creds.require("tenancy_ocid")
        url = f"https://identity.{region}.oraclecloud.com/{API_VERSION}/availabilityDomains?compartmentId={tenancy}"
        domains = self._signed(creds, "GET", url, "list_ads")
        if not domains:
            raise ProtocolError(f"oracle region {region} lists no availability domains")
        return domains[0]["name"]

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        subnet_id = self._subnet(creds, region)
        subnet = self._oci(creds, "GET", f"/subnets/{subnet_id}", "get_subnet", region=region)
        vcn_id = subnet.get("vcnId")
        if not vcn_id:
            raise ProtocolError("oracle subnet has no vcnId")

        rules: List[Dict[str, Any]] = [
            {
                "direction": "INGRESS",
                "protocol": "6",
                "source": "0.0.0.0/0",
                "sourceType": "CIDR_BLOCK",
                "tcpOptions": {"destinationPortRange": {"min": port, "max": port}},
            }
            for port in spec.firewall_rules
        ]
        nsg = self._oci(creds, "POST", "/networkSecurityGroups", "create_nsg", region=region, payload={
            "compartmentId": self._compartment(creds),
            "vcnId": vcn_id,
            "displayName": f"{spec.name}-nsg",
        })
        nsg_id = nsg.get("id")
        if not nsg_id:
            raise ProtocolError("oracle returned no network security group id")
        self._oci(
            creds, "POST", f"/networkSecurityGroups/{nsg_id}/actions/addSecurityRules", "add_rules",
            region=region, payload={"securityRules": rules},
        )
        return nsg_id

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        image = spec.image or creds.get("image_ocid")
        if not image:
            raise ValueError("Missing credential field: image_ocid")
        availability_domain = creds.get("availability_domain") or self._first_ad(creds, region)

        shape = self.catalog.native_type(spec.size)
        metadata: Dict[str, str] = {}
        if spec.ssh_public_key:
            metadata["ssh_authorized_keys"] = spec.ssh_public_key
        if spec.user_data:
            metadata["user_data"] = base64.b64encode(spec.user_data.encode()).decode()

        payload: Dict[str, Any] = {
            "compartmentId": self._compartment(creds),
            "availabilityDomain": availability_domain,
            "displayName": spec.name,
            "shape": shape,
            "sourceDetails": {"sourceType": "image", "imageId": image},
            "createVnicDetails": {
                "subnetId": self._subnet(creds, region),
                "assignPublicIp": True,
                "nsgIds": [firewall_id] if firewall_id else [],
            },
            "metadata": metadata,
            "freeformTags": dict(spec.tags),
        }
        if shape.endswith(".Flex"):
            payload["shapeConfig"] = {"ocpus": 1, "memoryInGBs": 6}

        data = self._oci(creds, "POST", "/instances", "launch_instance", region=region, payload=payload)
        instance_id = data.get("id")
        if not instance_id:
            raise ProtocolError("oracle returned no instance id")
        return instance_id

    def _public_ip(self, creds, instance_id: str, region: Optional[str]) -> Optional[str]:
        attachments = self._oci(
            creds, "GET",
            f"/vnicAttachments?compartmentId={self._compartment(creds)}&instanceId={instance_id}",
            "list_vnics", region=region,
        )
        for attachment in attachments or []:
            vnic_id = attachment.get("vnicId")
            if not vnic_id or attachment.get("lifecycleState") != "ATTACHED":
                continue
            vnic = self._oci(creds, "GET", f"/vnics/{vnic_id}", "get_vnic", region=region)
            if vnic.get("publicIp"):
                return vnic["publicIp"]
        return None

    def _to_status(self, creds, instance: Dict[str, Any], region: Optional[str] = None) -> InstanceStatus:
        state = STATE_MAP.get(instance.get("lifecycleState"), LifecycleStatus.ERROR)
        region = region or creds.get("region") or self.catalog.default_region
        ip = None
        if state == LifecycleStatus.RUNNING:
            ip = self._public_ip(creds, instance["id"], region)
        return InstanceStatus(state=state, public_ip=ip, instance_id=instance.get("id"), region=region)

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        instance = self._oci(creds, "GET", f"/instances/{instance_id}", "get_instance", region=region)
        return self._to_status(creds, instance, region)

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        instances = self._oci(
            creds, "GET", f"/instances?compartmentId={self._compartment(creds)}", "list_instances",
            region=region,
        )
        for instance in instances or []:
            if instance.get("lifecycleState") != "RUNNING":
                continue
            status = self._to_status(creds, instance, region)
            if status.public_ip == ip:
                return status
        return None

    def _action(self, creds, instance_id: str, action: str, region: Optional[str]) -> None:
        self._oci(creds, "POST", f"/instances/{instance_id}?action={action}", action.lower(), region=region)

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "START", region)

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "SOFTSTOP", region)

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._action(creds, instance_id, "SOFTRESET", region)

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._oci(creds, "DELETE", f"/instances/{instance_id}", "terminate", region=region)
