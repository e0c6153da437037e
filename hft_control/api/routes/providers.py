# hft_control/api/routes/providers.py
"""Cloud provider API routes."""

from dataclasses import asdict
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from hft_control.container import get_provisioning, get_vault
from hft_control.control.vault import StoreVault
from hft_control.providers.base import DEFAULT_PORTS, SIZE_SPECS, DeploySpec
from hft_control.providers.provisioning import ProvisioningService
from hft_control.providers.registry import get_catalog, provider_names

router = APIRouter(prefix="/provider-cloud", tags=["provider-cloud"])


class DeployRequest(BaseModel):
    """Deploy request."""
    region: Optional[str] = None
    size: str = Field(default="small")
    image: Optional[str] = None
    ssh_public_key: Optional[str] = None
    firewall_rules: List[int] = Field(default_factory=lambda: list(DEFAULT_PORTS))
    tags: Dict[str, str] = Field(default_factory=dict)
    name: str = Field(default="hft-bot", min_length=1, max_length=63)
    user_data: Optional[str] = None

    def to_spec(self) -> DeploySpec:
        return DeploySpec(**self.model_dump())


class ValidateRequest(BaseModel):
    # wizard submission; sealed into the vault before validating
    credentials: Optional[Dict[str, str]] = None


class InstanceRequest(BaseModel):
    instance_id: str = Field(..., min_length=1)
    # only consulted for instances without a host record
    region: Optional[str] = None


class AdoptRequest(BaseModel):
    existing_ip: Optional[str] = None
    spec: DeployRequest = Field(default_factory=DeployRequest)


@router.get("")
def list_providers():
    return {"success": True, "providers": provider_names()}


@router.get("/{provider}/catalog")
def catalog(provider: str):
    """Regions and small/medium/large pricing."""
    provider_catalog = get_catalog(provider)
    pricing = {}
    for size, spec in SIZE_SPECS.items():
        cost = provider_catalog.estimate_cost(size)
        if cost is not None:
            pricing[size] = {**asdict(cost), **asdict(spec)}
    return {
        "success": True,
        "name": provider_catalog.name,
        "display_name": provider_catalog.display_name,
        "default_region": provider_catalog.default_region,
        "regions": [asdict(region) for region in provider_catalog.list_regions()],
        "pricing": pricing,
    }


@router.post("/{provider}/validate")
def validate(
    provider: str,
    request: Optional[ValidateRequest] = None,
    actor: str = Header("operator", alias="X-Actor"),
    service: ProvisioningService = Depends(get_provisioning),
    vault: StoreVault = Depends(get_vault),
):
    fingerprint = None
    if request is not None and request.credentials:
        fingerprint = vault.seal_cloud_credentials(provider, request.credentials)
    result = service.validate(provider, actor=actor)
    response = {"success": result["valid"], "fingerprint": fingerprint, **result}
    if not result["valid"]:
        response["reason"] = "auth"
    return response


@router.post("/{provider}/deploy")
def deploy(
    provider: str,
    request: DeployRequest,
    actor: str = Header("operator", alias="X-Actor"),
    service: ProvisioningService = Depends(get_provisioning),
):
    return {"success": True, **service.deploy(provider, request.to_spec(), actor=actor)}


@router.post("/{provider}/adopt")
def adopt(
    provider: str,
    request: AdoptRequest,
    actor: str = Header("operator", alias="X-Actor"),
    service: ProvisioningService = Depends(get_provisioning),
):
    """Register the instance behind existing_ip, or deploy a new one."""
    result = service.adopt_or_deploy(provider, request.existing_ip, request.spec.to_spec(), actor=actor)
    return {"success": True, **result}


@router.post("/{provider}/status")
def status(
    provider: str,
    request: InstanceRequest,
    service: ProvisioningService = Depends(get_provisioning),
):
    return {"success": True, **service.status(provider, request.instance_id, region=request.region)}


@router.post("/{provider}/{action}")
def power(
    provider: str,
    action: Literal["start", "stop", "restart", "terminate"],
    request: InstanceRequest,
    actor: str = Header("operator", alias="X-Actor"),
    service: ProvisioningService = Depends(get_provisioning),
):
    result = service.power(provider, action, request.instance_id, actor=actor, region=request.region)
    return {"success": True, **result}
