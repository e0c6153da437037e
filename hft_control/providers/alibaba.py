# hft_control/providers/alibaba.py
"""Alibaba Cloud ECS adapter (RPC API, HMAC-SHA1 signature)."""

import base64
import logging
from typing import Any, Dict, Optional

from hft_control.core.errors import AuthError, ControlError, ProtocolError
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
from hft_control.signing import alibaba_rpc

logger = logging.getLogger(__name__)

API_URL = "https://ecs.aliyuncs.com/"
ECS_VERSION = "2014-05-26"
DEFAULT_IMAGE = "ubuntu_24_04_x64_20G_alibase_20240812.vhd"
AUTH_CODES = {"InvalidAccessKeyId.NotFound", "SignatureDoesNotMatch", "Forbidden.RAM", "IncompleteSignature"}

CATALOG = ProviderCatalog(
    name="alibaba",
    display_name="Alibaba Cloud",
    default_region="ap-northeast-1",
    regions=[
        Region("cn-hangzhou", "Hangzhou", "CN"),
        Region("cn-shanghai", "Shanghai", "CN"),
        Region("cn-hongkong", "Hong Kong", "HK", 8),
        Region("ap-northeast-1", "Tokyo", "JP", 5),
        Region("ap-southeast-1", "Singapore", "SG", 15),
        Region("us-west-1", "Silicon Valley", "US"),
        Region("us-east-1", "Virginia", "US"),
        Region("eu-central-1", "Frankfurt", "DE"),
    ],
    pricing={
        "small": Pricing("ecs.t5-lc1m1.small", 0.0044, 3.00),
        "medium": Pricing("ecs.t5-lc1m2.large", 0.018, 13.00),
        "large": Pricing("ecs.t5-c1m2.xlarge", 0.036, 26.00),
    },
)

STATE_MAP = {
    "Pending": LifecycleStatus.PROVISIONING,
    "Starting": LifecycleStatus.PROVISIONING,
    "Running": LifecycleStatus.RUNNING,
    "Stopping": LifecycleStatus.STOPPED,
    "Stopped": LifecycleStatus.STOPPED,
}


def _public_ip(instance: Dict[str, Any]) -> Optional[str]:
    addresses = (instance.get("PublicIpAddress") or {}).get("IpAddress") or []
    if addresses:
        return addresses[0]
    return (instance.get("EipAddress") or {}).get("IpAddress") or None


class AlibabaAdapter(ProviderAdapter):
    catalog = CATALOG

    def _rpc(
        self,
        creds: CloudCredential,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        region: Optional[str] = None,
    ) -> Dict[str, Any]:
        access_key_id, secret = creds.require("access_key_id", "access_key_secret")
        region = region or creds.get("region") or self.catalog.default_region
        merged = {"RegionId": region, **(params or {})}

        def send():
            # Nonce and timestamp are fresh on every attempt
            form = alibaba_rpc.signed_params(
                action, merged, access_key_id=access_key_id, secret=secret, version=ECS_VERSION,
            )
            try:
                return self.http.json("POST", API_URL, data=form, code_field="Code")
            except ControlError as e:
                if e.provider_code in AUTH_CODES:
                    raise AuthError(e.message, provider_code=e.provider_code) from e
                raise

        return self.call(send, action)

    @staticmethod
    def _to_status(instance: Dict[str, Any]) -> InstanceStatus:
        return InstanceStatus(
            state=STATE_MAP.get(instance.get("Status"), LifecycleStatus.ERROR),
            public_ip=_public_ip(instance),
            instance_id=instance.get("InstanceId"),
            region=instance.get("RegionId"),
        )

    def _describe(self, creds, params: Dict[str, Any], region: Optional[str] = None):
        data = self._rpc(creds, "DescribeInstances", params, region=region)
        return [self._to_status(i) for i in (data.get("Instances") or {}).get("Instance", [])]

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            data = self._rpc(creds, "DescribeRegions")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        if not (data.get("Regions") or {}).get("Region"):
            return ValidationResult(valid=False, error="alibaba returned no regions")
        return ValidationResult(valid=True, account_id=creds.get("access_key_id"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        if not spec.ssh_public_key:
            return None
        name = f"{spec.name}-key"
        try:
            self._rpc(creds, "ImportKeyPair", {
                "KeyPairName": name,
                "PublicKeyBody": spec.ssh_public_key,
            }, region=region)
        except ControlError as e:
            if e.provider_code != "KeyPair.AlreadyExist":
                raise
            logger.info(f"[alibaba] Key pair {name} already imported")
        return name

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        data = self._rpc(creds, "CreateSecurityGroup", {
            "SecurityGroupName": f"{spec.name}-sg",
            "Description": "HFT bot ingress",
        }, region=region)
        group_id = data.get("SecurityGroupId")
        if not group_id:
            raise ProtocolError("alibaba returned no SecurityGroupId")
        for port in spec.firewall_rules:
            self._rpc(creds, "AuthorizeSecurityGroup", {
                "SecurityGroupId": group_id,
                "IpProtocol": "tcp",
                "PortRange": f"{port}/{port}",
                "SourceCidrIp": "0.0.0.0/0",
            }, region=region)
        return group_id

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        params: Dict[str, Any] = {
            "ImageId": spec.image or DEFAULT_IMAGE,
            "InstanceType": self.catalog.native_type(spec.size),
            "InstanceName": spec.name,
            "InternetMaxBandwidthOut": 5,
            "InternetChargeType": "PayByTraffic",
            "SecurityGroupId": firewall_id,
            "KeyPairName": key_id,
        }
        if spec.user_data:
            params["UserData"] = base64.b64encode(spec.user_data.encode()).decode()
        for n, (key, value) in enumerate(sorted(spec.tags.items()), start=1):
            params[f"Tag.{n}.Key"] = key
            params[f"Tag.{n}.Value"] = value

        data = self._rpc(creds, "CreateInstance", params, region=region)
        instance_id = data.get("InstanceId")
        if not instance_id:
            raise ProtocolError("alibaba returned no InstanceId")

        # CreateInstance leaves the VM stopped and without a public address
        self._rpc(creds, "AllocatePublicIpAddress", {"InstanceId": instance_id}, region=region)
        self._rpc(creds, "StartInstance", {"InstanceId": instance_id}, region=region)
        return instance_id

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        statuses = self._describe(creds, {"InstanceIds": f'["{instance_id}"]'}, region)
        if not statuses:
            raise ProtocolError(f"alibaba instance {instance_id} not found")
        return statuses[0]

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        statuses = self._describe(creds, {"PublicIpAddresses": f'["{ip}"]'}, region)
        return statuses[0] if statuses else None

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._rpc(creds, "StartInstance", {"InstanceId": instance_id}, region=region)

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._rpc(creds, "StopInstance", {"InstanceId": instance_id}, region=region)

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._rpc(creds, "RebootInstance", {"InstanceId": instance_id}, region=region)

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._rpc(creds, "DeleteInstance", {"InstanceId": instance_id, "Force": "true"}, region=region)
