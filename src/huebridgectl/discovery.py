from dataclasses import replace

from huebridgectl.api import BridgeController
from huebridgectl.domain.models import ConfirmedDevice
from huebridgectl.infrastructure.config import AppConfig, DiscoveryConfig


def discover(
    identifier: str | None = None, timeout_s: float = 15.0, cloud: bool = True
) -> list[ConfirmedDevice]:
    """One-shot discovery with default settings; raises DiscoveryError when empty."""
    cfg = replace(AppConfig(), discovery=DiscoveryConfig(overall_timeout_s=timeout_s))
    return BridgeController(cfg=cfg, use_cloud=cloud).discover(identifier)
