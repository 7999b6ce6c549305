from dataclasses import dataclass, field
from typing import Iterable

from huebridgectl.domain.models import ConfirmedDevice


@dataclass
class Deduplicator:
    """Collapses devices sharing a normalized id or an address; first seen wins."""

    _devices: list[ConfirmedDevice] = field(default_factory=list)

    def add(self, device: ConfirmedDevice) -> bool:
        for existing in self._devices:
            if _same_entity(existing, device):
                return False
        self._devices.append(device)
        return True

    def extend(self, devices: Iterable[ConfirmedDevice]) -> int:
        return sum(1 for d in devices if self.add(d))

    def devices(self) -> list[ConfirmedDevice]:
        return list(self._devices)

    def __len__(self) -> int:
        return len(self._devices)


def _same_entity(a: ConfirmedDevice, b: ConfirmedDevice) -> bool:
    if a.normalized_id and a.normalized_id == b.normalized_id:
        return True
    return a.address == b.address


def merge(devices: Iterable[ConfirmedDevice]) -> list[ConfirmedDevice]:
    dedup = Deduplicator()
    dedup.extend(devices)
    return dedup.devices()
