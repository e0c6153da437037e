# hft_control/providers/provisioning.py
"""Provisioning service - runs adapter lifecycle calls against the store."""

import logging
from typing import Any, Callable, Dict, Optional

from hft_control.control.vault import CredentialVault
from hft_control.core.errors import ControlError, StateError
from hft_control.core.events import EventEmitter
from hft_control.core.events_model import ControlEvent
from hft_control.core.models import (
    AuditEvent,
    CloudCredential,
    HealthEvent,
    HealthStatus,
    HostRecord,
    LifecycleStatus,
)
from hft_control.core.repository import ControlStore
from hft_control.providers.base import DeployResult, DeploySpec, ProviderAdapter
from hft_control.providers.registry import get_adapter

logger = logging.getLogger(__name__)

DEPLOYMENT_FAILED = "deployment/failed"


class ProvisioningService:
    """
    Flow for deploy:
    1. Load credentials from the vault (request scoped)
    2. Adapter runs key import -> firewall -> create -> poll
    3. Persist a Host Record (running only with a confirmed IP)
    4. On any failure: health event with the provider error code, no running record
    """

    def __init__(
        self,
        store: ControlStore,
        vault: CredentialVault,
        emitter: EventEmitter,
        adapter_factory: Callable[[str], ProviderAdapter] = get_adapter,
    ):
        self._store = store
        self._vault = vault
        self._emitter = emitter
        self._adapter_factory = adapter_factory

    def _open(self, provider: str):
        adapter = self._adapter_factory(provider)
        creds = self._vault.cloud_credentials(provider)
        return adapter, creds

    def _audit(self, actor: str, action: str, before: Dict[str, Any], after: Dict[str, Any]) -> None:
        self._store.append_audit_event(AuditEvent(actor=actor, action=action, before=before, after=after))

    # -------------------------
    # Validate
    # -------------------------

    def validate(self, provider: str, actor: str = "operator") -> Dict[str, Any]:
        adapter, creds = self._open(provider)
        result = adapter.validate(creds)
        if result.valid:
            self._vault.mark_verified(provider)
            logger.info(f"[provisioning] ✅ {provider} credentials verified")
        else:
            logger.warning(f"[provisioning] {provider} credentials rejected: {result.error}")
        return {"valid": result.valid, "account_id": result.account_id, "error": result.error}

    # -------------------------
    # Deploy
    # -------------------------

    def deploy(self, provider: str, spec: DeploySpec, actor: str = "operator") -> Dict[str, Any]:
        adapter, creds = self._open(provider)
        try:
            result = adapter.deploy(creds, spec)
        except ValueError as e:
            # missing credential field
            self._record_failure(provider, "missing_field", str(e))
            raise StateError("no_credentials", str(e)) from e
        except ControlError as e:
            self._record_failure(provider, e.provider_code or e.kind, e.message)
            raise

        host = self._persist(provider, result)
        self._emitter.emit([ControlEvent.deployment_succeeded(host)])
        self._audit(actor, f"provider.{provider}.deploy", {}, {
            "host_id": str(host.id),
            "instance_id": host.instance_id,
            "status": host.lifecycle_status.value,
        })
        return {**result.to_dict(), "host_id": str(host.id)}

    def _persist(self, provider: str, result: DeployResult) -> HostRecord:
        host = HostRecord(
            provider=provider,
            region=result.region,
            instance_type=result.instance_type,
            instance_id=result.instance_id,
            ssh_key_id=result.ssh_key_id,
        )
        if result.status == LifecycleStatus.RUNNING.value:
            host.mark_running(result.public_ip)
        self._store.create_host(host)
        logger.info(f"[provisioning] Host {host.id} recorded as {host.lifecycle_status.value}")
        return host

    def _record_failure(self, provider: str, code: Optional[str], message: str) -> None:
        logger.error(f"[provisioning] ❌ {provider} deploy failed ({code}): {message}")
        self._store.append_health_event(HealthEvent(
            provider=provider,
            status=HealthStatus.DOWN,
            message=f"{code}: {message}"[:500],
            category=DEPLOYMENT_FAILED,
        ))
        self._emitter.emit([ControlEvent.deployment_failed(provider, code, message)])

    # -------------------------
    # Status / power
    # -------------------------

    def _host_for(self, provider: str, instance_id: str) -> Optional[HostRecord]:
        for host in self._store.list_hosts():
            if host.provider == provider and host.instance_id == instance_id:
                return host
        return None

    @staticmethod
    def _region(host: Optional[HostRecord], requested: Optional[str]) -> Optional[str]:
        """The region the host was recorded in wins over one supplied by the caller."""
        if host is not None and host.region:
            return host.region
        return requested

    def status(self, provider: str, instance_id: str, region: Optional[str] = None) -> Dict[str, Any]:
        adapter, creds = self._open(provider)
        host = self._host_for(provider, instance_id)
        status = adapter.status(creds, instance_id, region=self._region(host, region))

        if host is not None and status.state != host.lifecycle_status:
            if status.state == LifecycleStatus.RUNNING:
                if status.public_ip:
                    host.mark_running(status.public_ip)
                    self._store.update_host(host)
            else:
                host.lifecycle_status = status.state
                self._store.update_host(host)

        return {"state": status.state.value, "public_ip": status.public_ip}

    def power(
        self,
        provider: str,
        action: str,
        instance_id: str,
        actor: str = "operator",
        region: Optional[str] = None,
    ) -> Dict[str, Any]:
        if action not in ("start", "stop", "restart", "terminate"):
            raise StateError("unknown_action", f"Unknown provider action: {action}")

        adapter, creds = self._open(provider)
        host = self._host_for(provider, instance_id)
        result = getattr(adapter, action)(creds, instance_id, region=self._region(host, region))

        if host is not None:
            if result.new_state == LifecycleStatus.TERMINATED:
                host.mark_terminated()
            elif result.new_state == LifecycleStatus.STOPPED:
                host.mark_stopped()
            else:
                # running again only once status confirms an IP
                host.lifecycle_status = LifecycleStatus.PROVISIONING
            self._store.update_host(host)

        self._audit(actor, f"provider.{provider}.{action}",
                    {"instance_id": instance_id, "state": result.prev_state.value},
                    {"instance_id": instance_id, "state": result.new_state.value})
        return {"prev_state": result.prev_state.value, "new_state": result.new_state.value}

    # -------------------------
    # Adopt-or-deploy
    # -------------------------

    def adopt_or_deploy(
        self,
        provider: str,
        existing_ip: Optional[str],
        spec: DeploySpec,
        actor: str = "operator",
    ) -> Dict[str, Any]:
        """Register the instance behind ``existing_ip`` if the provider knows it; deploy otherwise."""
        if existing_ip:
            known = self._store.find_host_by_ip(existing_ip)
            if known is not None:
                return {"adopted": True, "host_id": str(known.id), "instance_id": known.instance_id,
                        "public_ip": known.public_ip, "status": known.lifecycle_status.value}

            adapter, creds = self._open(provider)
            found = adapter.find_by_ip(creds, existing_ip, region=spec.region)
            if found is not None:
                host = self._adopt(provider, adapter, found, creds)
                self._audit(actor, f"provider.{provider}.adopt", {"ip": existing_ip}, {
                    "host_id": str(host.id),
                    "instance_id": host.instance_id,
                })
                return {"adopted": True, "host_id": str(host.id), "instance_id": host.instance_id,
                        "public_ip": host.public_ip, "status": host.lifecycle_status.value}
            logger.info(f"[provisioning] {existing_ip} not found at {provider}, deploying")

        return {"adopted": False, **self.deploy(provider, spec, actor=actor)}

    def _adopt(self, provider: str, adapter: ProviderAdapter, found, creds: CloudCredential) -> HostRecord:
        host = HostRecord(
            provider=provider,
            region=found.region or creds.get("region") or adapter.catalog.default_region,
            instance_type="adopted",
            instance_id=found.instance_id,
            lifecycle_status=LifecycleStatus.PROVISIONING,
        )
        if found.state == LifecycleStatus.RUNNING and found.public_ip:
            host.mark_running(found.public_ip)
        elif found.state in (LifecycleStatus.STOPPED, LifecycleStatus.TERMINATED):
            host.lifecycle_status = found.state
        self._store.create_host(host)
        logger.info(f"[provisioning] Adopted {provider} instance {found.instance_id} as host {host.id}")
        return host
