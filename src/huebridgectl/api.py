import asyncio
from dataclasses import dataclass, field

from huebridgectl.application.orchestrator import DiscoveryOrchestrator
from huebridgectl.application.ports import CredentialStore, ReachabilityPort, StatusSink
from huebridgectl.application.supervisor import ConnectionSupervisor
from huebridgectl.domain.models import ConfirmedDevice, ConnectionState
from huebridgectl.domain.policy import RetryPolicy
from huebridgectl.infrastructure.bridge_gateway import (
    BridgeHttpGateway,
    BridgeValidator,
    CandidateProbe,
)
from huebridgectl.infrastructure.cloud_gateway import CloudFallbackClient
from huebridgectl.infrastructure.config import AppConfig
from huebridgectl.infrastructure.credential_store import JsonFileCredentialStore
from huebridgectl.infrastructure.mdns_gateway import ServiceDiscoveryClient
from huebridgectl.infrastructure.permission_gate import PermissionGate
from huebridgectl.infrastructure.reachability import InterfaceReachabilityMonitor
from huebridgectl.infrastructure.ssdp_gateway import SsdpDiscoveryClient
from huebridgectl.infrastructure.status_sink import LoggingStatusSink
from huebridgectl.infrastructure.subnet_gateway import SubnetProber


@dataclass
class BridgeController:
    """Wires discovery and connection supervision from an ``AppConfig``."""

    cfg: AppConfig = field(default_factory=AppConfig)
    status_sink: StatusSink | None = None
    credentials: CredentialStore | None = None
    use_cloud: bool = True
    reachability: ReachabilityPort | None = None

    def __post_init__(self) -> None:
        d = self.cfg.discovery
        c = self.cfg.connection
        if self.status_sink is None:
            self.status_sink = LoggingStatusSink()
        if self.credentials is None:
            self.credentials = JsonFileCredentialStore(self.cfg.credentials_path)
        if self.reachability is None:
            self.reachability = InterfaceReachabilityMonitor(interval_s=c.reachability_interval_s)
        probe = CandidateProbe(timeout_s=d.probe_timeout_s)
        validator = BridgeValidator(timeout_s=d.validator_timeout_s)
        self.orchestrator = DiscoveryOrchestrator(
            permission_gate=PermissionGate(timeout_s=d.permission_timeout_s),
            service_client=ServiceDiscoveryClient(
                probe, validator, service_type=d.service_type, lifetime_s=d.mdns_lifetime_s
            ),
            subnet_prober=SubnetProber(probe, validator, max_workers=d.scan_workers),
            cloud_client=(
                CloudFallbackClient(registry_url=d.cloud_url, timeout_s=d.cloud_timeout_s)
                if self.use_cloud
                else None
            ),
            probe=probe,
            validator=validator,
            status_sink=self.status_sink,
            overall_timeout_s=d.overall_timeout_s,
            cloud_fallback_delay_s=d.cloud_fallback_delay_s,
            settle_s=d.settle_s,
            ssdp_client=SsdpDiscoveryClient(probe, validator, lifetime_s=d.ssdp_lifetime_s),
        )
        self.supervisor = ConnectionSupervisor(
            gateway=BridgeHttpGateway(timeout_s=c.handshake_timeout_s),
            discovery=self.orchestrator,
            credentials=self.credentials,
            status_sink=self.status_sink,
            retry_policy=RetryPolicy(
                base_delay_s=c.retry_base_delay_s,
                max_delay_s=c.retry_max_delay_s,
                max_attempts=c.retry_max_attempts,
            ),
            health_interval_s=c.health_interval_s,
            health_failure_threshold=c.health_failure_threshold,
        )

    def discover(self, identifier: str | None = None) -> list[ConfirmedDevice]:
        return self.orchestrator.discover(identifier)

    def cancel_discovery(self) -> None:
        self.orchestrator.cancel()

    async def connect_async(
        self, identifier: str | None = None, secret_key: str | None = None
    ) -> ConnectionState | list[ConfirmedDevice]:
        """Connect to the stored bridge, or discover one when none is stored.

        A stored bridge that stopped answering is looked up again by its
        identifier. Returns the resulting state, or the device list when
        discovery found several bridges and the caller has to pick one.
        ``supervisor.disconnect()`` also detaches the reachability monitor.
        """
        self.supervisor.attach_reachability(self.reachability)
        record = self.credentials.get()
        if record is not None and (identifier is None or record.to_device().matches(identifier)):
            return await self.supervisor.start(secret_key)
        devices = await self.supervisor.connect_by_discovery(identifier, secret_key)
        if len(devices) > 1:
            return devices
        return self.supervisor.state

    def connect(
        self, identifier: str | None = None, secret_key: str | None = None
    ) -> ConnectionState | list[ConfirmedDevice]:
        return asyncio.run(self.connect_async(identifier, secret_key))
