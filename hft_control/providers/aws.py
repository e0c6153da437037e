# hft_control/providers/aws.py
"""AWS EC2 adapter (query API signed with Signature V4)."""

import base64
import logging
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional
from urllib.parse import urlencode

from hft_control.core.errors import AuthError, ControlError, ProtocolError
from hft_control.core.http import classify_status, truncate
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
from hft_control.signing import aws_sigv4

logger = logging.getLogger(__name__)

EC2_VERSION = "2016-11-15"
STS_VERSION = "2011-06-15"
DEFAULT_AMI = "ami-0d52744d6551d851e"

CATALOG = ProviderCatalog(
    name="aws",
    display_name="Amazon Web Services",
    default_region="ap-northeast-1",
    regions=[
        Region("us-east-1", "N. Virginia", "US"),
        Region("us-west-2", "Oregon", "US"),
        Region("eu-west-1", "Ireland", "IE"),
        Region("eu-central-1", "Frankfurt", "DE"),
        Region("ap-northeast-1", "Tokyo", "JP", 5),
        Region("ap-southeast-1", "Singapore", "SG", 15),
        Region("ap-east-1", "Hong Kong", "HK", 8),
    ],
    pricing={
        "small": Pricing("t3.micro", 0.0114, 8.35),
        "medium": Pricing("t3.medium", 0.0456, 33.41),
        "large": Pricing("t3.large", 0.0912, 66.82),
    },
)

STATE_MAP = {
    "pending": LifecycleStatus.PROVISIONING,
    "running": LifecycleStatus.RUNNING,
    "stopping": LifecycleStatus.STOPPED,
    "stopped": LifecycleStatus.STOPPED,
    "shutting-down": LifecycleStatus.TERMINATED,
    "terminated": LifecycleStatus.TERMINATED,
}


def parse_xml(text: str) -> ET.Element:
    """Parse an AWS XML body with namespaces stripped from tags."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ProtocolError(f"aws returned malformed XML: {truncate(text)}") from e
    for element in root.iter():
        if "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


def _text(element: Optional[ET.Element], path: str) -> Optional[str]:
    if element is None:
        return None
    found = element.find(path)
    return found.text if found is not None and found.text else None


class AWSAdapter(ProviderAdapter):
    catalog = CATALOG

    # -------------------------
    # Transport
    # -------------------------

    def _query(
        self,
        creds: CloudCredential,
        action: str,
        params: Dict[str, str],
        *,
        region: Optional[str] = None,
        service: str = "ec2",
    ) -> ET.Element:
        access_key, secret_key = creds.require("access_key_id", "secret_access_key")
        region = region or creds.get("region") or self.catalog.default_region

        if service == "sts":
            host, version = "sts.amazonaws.com", STS_VERSION
            sign_region = "us-east-1"
        else:
            host, version = f"ec2.{region}.amazonaws.com", EC2_VERSION
            sign_region = region

        body = urlencode({"Action": action, "Version": version, **params}).encode("utf-8")
        url = f"https://{host}/"

        def send() -> ET.Element:
            headers = aws_sigv4.sign_request(
                "POST", url,
                access_key=access_key,
                secret_key=secret_key,
                region=sign_region,
                service=service,
                body=body,
                headers={"content-type": "application/x-www-form-urlencoded; charset=utf-8"},
            )
            response = self.http.request("POST", url, data=body, headers=headers)
            if response.status_code >= 300:
                code = None
                try:
                    code = _text(parse_xml(response.text), ".//Error/Code")
                except ProtocolError:
                    pass
                error = classify_status(
                    response.status_code, response.text, provider_code=code, label=f"aws.{action}",
                )
                if code in ("AuthFailure", "UnauthorizedOperation", "InvalidClientTokenId", "SignatureDoesNotMatch"):
                    error = AuthError(error.message, provider_code=code)
                logger.error(f"[aws] {action} failed: {error.message}")
                raise error
            return parse_xml(response.text)

        return self.call(send, action)

    # -------------------------
    # Lifecycle
    # -------------------------

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            root = self._query(creds, "GetCallerIdentity", {}, service="sts")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        return ValidationResult(valid=True, account_id=_text(root, ".//Account"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        if not spec.ssh_public_key:
            return None
        key_name = f"{spec.name}-key"
        try:
            self._query(creds, "ImportKeyPair", {
                "KeyName": key_name,
                "PublicKeyMaterial": base64.b64encode(spec.ssh_public_key.encode()).decode(),
            }, region=region)
        except ControlError as e:
            if e.provider_code != "InvalidKeyPair.Duplicate":
                raise
            logger.info(f"[aws] Key pair {key_name} already imported")
        return key_name

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        group_name = f"{spec.name}-sg"
        try:
            root = self._query(creds, "CreateSecurityGroup", {
                "GroupName": group_name,
                "GroupDescription": "HFT bot ingress",
            }, region=region)
            group_id = _text(root, ".//groupId")
        except ControlError as e:
            if e.provider_code != "InvalidGroup.Duplicate":
                raise
            root = self._query(creds, "DescribeSecurityGroups", {
                "Filter.1.Name": "group-name",
                "Filter.1.Value.1": group_name,
            }, region=region)
            group_id = _text(root, ".//securityGroupInfo/item/groupId")

        if not group_id:
            raise ProtocolError("aws did not return a security group id")

        params: Dict[str, str] = {"GroupId": group_id}
        for n, port in enumerate(spec.firewall_rules, start=1):
            params[f"IpPermissions.{n}.IpProtocol"] = "tcp"
            params[f"IpPermissions.{n}.FromPort"] = str(port)
            params[f"IpPermissions.{n}.ToPort"] = str(port)
            params[f"IpPermissions.{n}.IpRanges.1.CidrIp"] = "0.0.0.0/0"
        try:
            self._query(creds, "AuthorizeSecurityGroupIngress", params, region=region)
        except ControlError as e:
            if e.provider_code != "InvalidPermission.Duplicate":
                raise
        return group_id

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        params: Dict[str, str] = {
            "ImageId": spec.image or DEFAULT_AMI,
            "InstanceType": self.catalog.native_type(spec.size),
            "MinCount": "1",
            "MaxCount": "1",
            "TagSpecification.1.ResourceType": "instance",
            "TagSpecification.1.Tag.1.Key": "Name",
            "TagSpecification.1.Tag.1.Value": spec.name,
        }
        for n, (key, value) in enumerate(sorted(spec.tags.items()), start=2):
            params[f"TagSpecification.1.Tag.{n}.Key"] = key
            params[f"TagSpecification.1.Tag.{n}.Value"] = value
        if key_id:
            params["KeyName"] = key_id
        if firewall_id:
            params["SecurityGroupId.1"] = firewall_id
        if spec.user_data:
            params["UserData"] = base64.b64encode(spec.user_data.encode()).decode()

        root = self._query(creds, "RunInstances", params, region=region)
        instance_id = _text(root, ".//instancesSet/item/instanceId")
        if not instance_id:
            raise ProtocolError("aws RunInstances returned no instanceId")
        return instance_id

    def _describe(self, creds, params: Dict[str, str], region: Optional[str] = None) -> List[InstanceStatus]:
        region = region or creds.get("region") or self.catalog.default_region
        root = self._query(creds, "DescribeInstances", params, region=region)
        statuses = []
        for item in root.findall(".//reservationSet/item/instancesSet/item"):
            state = _text(item, "instanceState/name") or "pending"
            statuses.append(InstanceStatus(
                state=STATE_MAP.get(state, LifecycleStatus.ERROR),
                public_ip=_text(item, "ipAddress"),
                instance_id=_text(item, "instanceId"),
                region=region,
            ))
        return statuses

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        statuses = self._describe(creds, {"InstanceId.1": instance_id}, region)
        if not statuses:
            raise ProtocolError(f"aws instance {instance_id} not found")
        return statuses[0]

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        statuses = self._describe(creds, {"Filter.1.Name": "ip-address", "Filter.1.Value.1": ip}, region)
        return statuses[0] if statuses else None

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._query(creds, "StartInstances", {"InstanceId.1": instance_id}, region=region)

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._query(creds, "StopInstances", {"InstanceId.1": instance_id}, region=region)

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._query(creds, "RebootInstances", {"InstanceId.1": instance_id}, region=region)

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._query(creds, "TerminateInstances", {"InstanceId.1": instance_id}, region=region)
