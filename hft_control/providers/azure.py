# hft_control/providers/azure.py
"""Azure Resource Manager adapter (client-credentials OAuth)."""

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

LOGIN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
ARM_URL = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
COMPUTE_API = "2023-09-01"
NETWORK_API = "2023-09-01"
DEFAULT_IMAGE = {
    "publisher": "Canonical",
    "offer": "ubuntu-24_04-lts",
    "sku": "server",
    "version": "latest",
}

CATALOG = ProviderCatalog(
    name="azure",
    display_name="Microsoft Azure",
    default_region="japaneast",
    regions=[
        Region("eastus", "East US", "US"),
        Region("westus2", "West US 2", "US"),
        Region("westeurope", "West Europe", "NL"),
        Region("northeurope", "North Europe", "IE"),
        Region("uksouth", "UK South", "UK"),
        Region("japaneast", "Japan East", "JP", 5),
        Region("southeastasia", "Southeast Asia", "SG", 15),
        Region("eastasia", "East Asia", "HK", 8),
    ],
    pricing={
        "small": Pricing("Standard_B1s", 0.0, 0.0, is_free=True),
        "medium": Pricing("Standard_B2s", 0.0416, 29.95),
        "large": Pricing("Standard_B4ms", 0.0832, 59.90),
    },
)

POWER_MAP = {
    "PowerState/starting": LifecycleStatus.PROVISIONING,
    "PowerState/running": LifecycleStatus.RUNNING,
    "PowerState/stopping": LifecycleStatus.STOPPED,
    "PowerState/stopped": LifecycleStatus.STOPPED,
    "PowerState/deallocating": LifecycleStatus.STOPPED,
    "PowerState/deallocated": LifecycleStatus.STOPPED,
}


class AzureAdapter(ProviderAdapter):
    """
    Each VM gets its own public IP, NIC and NSG inside the configured
    resource group; ``instance_id`` is the VM name.
    """

    catalog = CATALOG

    # -------------------------
    # Transport
    # -------------------------

    def _token(self, creds: CloudCredential) -> str:
        tenant, client_id, client_secret = creds.require("tenant_id", "client_id", "client_secret")

        def fetch():
            data = self.api("POST", LOGIN_URL.format(tenant=tenant), "token", data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
                "scope": ARM_SCOPE,
            }, code_field="error")
            token = data.get("access_token")
            if not token:
                raise ProtocolError("azure token response has no access_token")
            return token, data.get("expires_in", 3600)

        return self.cached_token(f"{tenant}:{client_id}", fetch)

    def _group_url(self, creds: CloudCredential) -> str:
        subscription, group = creds.require("subscription_id", "resource_group")
        return f"{ARM_URL}/subscriptions/{subscription}/resourceGroups/{group}/providers"

    def _arm(
        self,
        creds: CloudCredential,
        method: str,
        url: str,
        label: str,
        api_version: str = COMPUTE_API,
        **kwargs,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token(creds)}", "Content-Type": "application/json"}
        params = {"api-version": api_version, **kwargs.pop("params", {})}
        return self.api(method, url, label, headers=headers, params=params, code_field="error.code", **kwargs)

    def _vm_url(self, creds, name: str) -> str:
        return f"{self._group_url(creds)}/Microsoft.Compute/virtualMachines/{name}"

    # -------------------------
    # Lifecycle
    # -------------------------

    def validate(self, creds: CloudCredential) -> ValidationResult:
        try:
            (subscription,) = creds.require("subscription_id")
            data = self._arm(creds, "GET", f"{ARM_URL}/subscriptions/{subscription}", "subscription",
                             api_version="2022-12-01")
        except (ControlError, ValueError) as e:
            return ValidationResult(valid=False, error=str(e))
        return ValidationResult(valid=data.get("state") == "Enabled", account_id=data.get("subscriptionId"))

    def import_key(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        # Azure takes the key inline in osProfile
        return None

    def ensure_firewall(self, creds, spec: DeploySpec, region: str) -> Optional[str]:
        rules = [
            {
                "name": f"allow-{port}",
                "properties": {
                    "priority": 100 + i,
                    "direction": "Inbound",
                    "access": "Allow",
                    "protocol": "Tcp",
                    "sourceAddressPrefix": "*",
                    "sourcePortRange": "*",
                    "destinationAddressPrefix": "*",
                    "destinationPortRange": str(port),
                },
            }
            for i, port in enumerate(spec.firewall_rules)
        ]
        url = f"{self._group_url(creds)}/Microsoft.Network/networkSecurityGroups/{spec.name}-nsg"
        data = self._arm(creds, "PUT", url, "create_nsg", api_version=NETWORK_API, json={
            "location": region,
            "properties": {"securityRules": rules},
        })
        return data.get("id")

    def _network(self, creds, spec: DeploySpec, region: str, nsg_id: Optional[str]) -> str:
        base = f"{self._group_url(creds)}/Microsoft.Network"
        vnet = self._arm(creds, "PUT", f"{base}/virtualNetworks/{spec.name}-vnet", "create_vnet",
                         api_version=NETWORK_API, json={
                             "location": region,
                             "properties": {
                                 "addressSpace": {"addressPrefixes": ["10.0.0.0/16"]},
                                 "subnets": [{"name": "default", "properties": {"addressPrefix": "10.0.0.0/24"}}],
                             },
                         })
        subnet_id = f"{vnet.get('id')}/subnets/default"
        pip = self._arm(creds, "PUT", f"{base}/publicIPAddresses/{spec.name}-ip", "create_ip",
                        api_version=NETWORK_API, json={
                            "location": region,
                            "sku": {"name": "Standard"},
                            "properties": {"publicIPAllocationMethod": "Static"},
                        })
        nic_properties: Dict[str, Any] = {
            "ipConfigurations": [{
                "name": "ipconfig1",
                "properties": {
                    "subnet": {"id": subnet_id},
                    "publicIPAddress": {"id": pip.get("id")},
                },
            }],
        }
        if nsg_id:
            nic_properties["networkSecurityGroup"] = {"id": nsg_id}
        nic = self._arm(creds, "PUT", f"{base}/networkInterfaces/{spec.name}-nic", "create_nic",
                        api_version=NETWORK_API, json={"location": region, "properties": nic_properties})
        nic_id = nic.get("id")
        if not nic_id:
            raise ProtocolError("azure returned no network interface id")
        return nic_id

    def create_instance(self, creds, spec: DeploySpec, region: str, key_id, firewall_id) -> str:
        nic_id = self._network(creds, spec, region, firewall_id)
        os_profile: Dict[str, Any] = {
            "computerName": spec.name,
            "adminUsername": "azureuser",
            "linuxConfiguration": {"disablePasswordAuthentication": True},
        }
        if spec.ssh_public_key:
            os_profile["linuxConfiguration"]["ssh"] = {"publicKeys": [{
                "path": "/home/azureuser/.ssh/authorized_keys",
                "keyData": spec.ssh_public_key,
            }]}
        if spec.user_data:
            os_profile["customData"] = base64.b64encode(spec.user_data.encode()).decode()

        self._arm(creds, "PUT", self._vm_url(creds, spec.name), "create_vm", json={
            "location": region,
            "tags": dict(spec.tags),
            "properties": {
                "hardwareProfile": {"vmSize": self.catalog.native_type(spec.size)},
                "storageProfile": {
                    "imageReference": DEFAULT_IMAGE,
                    "osDisk": {"createOption": "FromImage", "deleteOption": "Delete"},
                },
                "osProfile": os_profile,
                "networkProfile": {"networkInterfaces": [{"id": nic_id}]},
            },
        })
        return spec.name

    def _public_ip(self, creds, name: str) -> Optional[str]:
        url = f"{self._group_url(creds)}/Microsoft.Network/publicIPAddresses/{name}-ip"
        try:
            data = self._arm(creds, "GET", url, "get_ip", api_version=NETWORK_API)
        except ControlError as e:
            if e.provider_code != "ResourceNotFound":
                raise
            return None
        return (data.get("properties") or {}).get("ipAddress")

    def status(self, creds, instance_id: str, region: Optional[str] = None) -> InstanceStatus:
        data = self._arm(creds, "GET", self._vm_url(creds, instance_id), "get_vm", params={"$expand": "instanceView"})
        properties = data.get("properties") or {}
        statuses = (properties.get("instanceView") or {}).get("statuses", [])
        power = next((s["code"] for s in statuses if s.get("code", "").startswith("PowerState/")), None)

        if power:
            state = POWER_MAP.get(power, LifecycleStatus.ERROR)
        elif properties.get("provisioningState") == "Failed":
            state = LifecycleStatus.ERROR
        else:
            state = LifecycleStatus.PROVISIONING

        ip = self._public_ip(creds, instance_id) if state == LifecycleStatus.RUNNING else None
        return InstanceStatus(state=state, public_ip=ip, instance_id=instance_id, region=data.get("location"))

    def find_by_ip(self, creds, ip: str, region: Optional[str] = None) -> Optional[InstanceStatus]:
        url = f"{self._group_url(creds)}/Microsoft.Network/publicIPAddresses"
        data = self._arm(creds, "GET", url, "list_ips", api_version=NETWORK_API)
        for address in data.get("value", []):
            if (address.get("properties") or {}).get("ipAddress") == ip:
                name = address.get("name", "")
                if name.endswith("-ip"):
                    return self.status(creds, name[:-3])
        return None

    def _start(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._arm(creds, "POST", f"{self._vm_url(creds, instance_id)}/start", "start")

    def _stop(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        # deallocate releases compute; powerOff does not
        self._arm(creds, "POST", f"{self._vm_url(creds, instance_id)}/deallocate", "deallocate")

    def _restart(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._arm(creds, "POST", f"{self._vm_url(creds, instance_id)}/restart", "restart")

    def _terminate(self, creds, instance_id: str, region: Optional[str] = None) -> None:
        self._arm(creds, "DELETE", self._vm_url(creds, instance_id), "delete")
