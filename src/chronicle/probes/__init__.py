"""Probe registry and discovery."""

from __future__ import annotations

from typing import TYPE_CHECKING, Type

from .base import Probe

if TYPE_CHECKING:
    from chronicle.config import ChronicleConfig

# Registry of all known probe classes, keyed by probe id
_PROBE_CLASSES: dict[str, Type[Probe]] = {}


def register_probe(probe_class: Type[Probe]) -> Type[Probe]:
    """Decorator to register a probe class."""
    _PROBE_CLASSES[probe_class.id] = probe_class
    return probe_class


def get_probe_classes() -> dict[str, Type[Probe]]:
    return dict(_PROBE_CLASSES)


class ProbeRegistry:
    """The probes enabled for one run."""

    def __init__(self, probes: list[Probe] | None = None):
        self._probes: list[Probe] = list(probes or [])

    @classmethod
    def from_config(cls, config: ChronicleConfig) -> ProbeRegistry:
        """Instantiate every registered probe that the config leaves enabled."""
        registry = cls()
        for probe_id, probe_class in _PROBE_CLASSES.items():
            if not config.is_probe_enabled(probe_id):
                continue
            base_path = config.probe_path(probe_id)
            if base_path is None:
                continue
            registry.register(probe_class(base_path))
        return registry

    def register(self, probe: Probe) -> None:
        self._probes.append(probe)

    def all_probes(self) -> list[Probe]:
        return list(self._probes)

    def available_probes(self) -> list[Probe]:
        """Probes whose source root currently exists."""
        return [p for p in self._probes if p.is_available()]

    def get_probe(self, probe_id: str) -> Probe | None:
        for probe in self._probes:
            if probe.id == probe_id:
                return probe
        return None


# Import probes to trigger registration
from . import claude_code  # noqa: F401, E402
from . import opencode  # noqa: F401, E402
from . import zed  # noqa: F401, E402
