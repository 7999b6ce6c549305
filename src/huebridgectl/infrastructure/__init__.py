from .bridge_gateway import BridgeHttpGateway, BridgeValidator, CandidateProbe
from .cloud_gateway import CloudFallbackClient
from .config import AppConfig, ConnectionConfig, DiscoveryConfig, load_config
from .credential_store import JsonFileCredentialStore
from .mdns_gateway import MdnsAnnouncement, ServiceDiscoveryClient
from .permission_gate import PermissionGate
from .reachability import InterfaceReachabilityMonitor
from .ssdp_gateway import SsdpDiscoveryClient
from .status_sink import LoggingStatusSink, QueueStatusSink
from .subnet_gateway import SubnetProber, local_ipv4_address

__all__ = [
    "AppConfig",
    "ConnectionConfig",
    "DiscoveryConfig",
    "load_config",
    "BridgeHttpGateway",
    "BridgeValidator",
    "CandidateProbe",
    "CloudFallbackClient",
    "JsonFileCredentialStore",
    "MdnsAnnouncement",
    "ServiceDiscoveryClient",
    "PermissionGate",
    "InterfaceReachabilityMonitor",
    "SsdpDiscoveryClient",
    "LoggingStatusSink",
    "QueueStatusSink",
    "SubnetProber",
    "local_ipv4_address",
]
