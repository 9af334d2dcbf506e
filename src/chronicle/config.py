"""Configuration loader — reads optional YAML config and merges with defaults."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml

SEARCH_PATHS = (
    Path("chronicle.yaml"),
    Path("~/.config/chronicle/chronicle.yaml"),
)

if sys.platform == "darwin":
    _ZED_THREADS_DB = "~/Library/Application Support/Zed/threads/threads.db"
else:
    _ZED_THREADS_DB = "~/.local/share/zed/threads/threads.db"

DEFAULT_PROBE_PATHS = {
    "claude:ClaudeCode": "~/.claude/projects",
    "opencode:OpenCode": "~/.local/share/opencode/storage",
    "zed:Zed": _ZED_THREADS_DB,
}

DEFAULTS = {
    "database": {"path": "~/.local/share/chronicle/chronicle.db"},
    "probes": {},
    "linking": {
        "auto_link": True,
        "use_git_remote": True,
        "normalize_paths": True,
    },
    "deduplication": {
        "enabled": True,
        "confidence_threshold": 0.8,
    },
    "extraction": {"max_workers": 1},
    "log_level": "WARNING",
}

_DISABLED_STATUSES = ("frozen", "deprecated")


@dataclass
class ProbeConfig:
    enabled: bool = True
    status: str | None = None  # active, frozen, deprecated
    base_path: Path | None = None


@dataclass
class LinkingConfig:
    auto_link: bool = True
    use_git_remote: bool = True
    normalize_paths: bool = True


@dataclass
class DeduplicationConfig:
    enabled: bool = True
    confidence_threshold: float = 0.8


@dataclass
class ChronicleConfig:
    db_path: Path
    probes: dict[str, ProbeConfig] = field(default_factory=dict)
    linking: LinkingConfig = field(default_factory=LinkingConfig)
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    max_workers: int = 1
    log_level: str = "WARNING"

    def is_probe_enabled(self, probe_id: str) -> bool:
        """False if the probe is disabled or its status is frozen/deprecated."""
        probe = self.probes.get(probe_id)
        if probe is None:
            return True
        if not probe.enabled:
            return False
        return probe.status not in _DISABLED_STATUSES

    def probe_path(self, probe_id: str) -> Path | None:
        """Configured root for a probe, falling back to its default location."""
        probe = self.probes.get(probe_id)
        if probe is not None and probe.base_path is not None:
            return probe.base_path
        default = DEFAULT_PROBE_PATHS.get(probe_id)
        return Path(default).expanduser() if default else None

    def probe_status(self, probe_id: str) -> str | None:
        probe = self.probes.get(probe_id)
        return probe.status if probe else None


def _section(user_config: dict, key: str) -> dict:
    """Merge one nested section of the user config over its defaults."""
    merged = dict(DEFAULTS[key])
    value = user_config.get(key)
    if isinstance(value, dict):
        for k in merged:
            if k in value:
                merged[k] = value[k]
    return merged


def _parse_probes(raw: object) -> dict[str, ProbeConfig]:
    probes: dict[str, ProbeConfig] = {}
    if not isinstance(raw, dict):
        return probes
    for probe_id, settings in raw.items():
        if not isinstance(settings, dict):
            settings = {}
        base_path = settings.get("base_path")
        probes[str(probe_id)] = ProbeConfig(
            enabled=bool(settings.get("enabled", True)),
            status=settings.get("status"),
            base_path=Path(base_path).expanduser() if base_path else None,
        )
    return probes


def find_config_file(config_path: Path | None = None) -> Path | None:
    """Return the first config file that exists: explicit path, ./, then ~/.config."""
    candidates = [config_path] if config_path is not None else []
    candidates.extend(SEARCH_PATHS)
    for candidate in candidates:
        candidate = Path(candidate).expanduser()
        if candidate.is_file():
            return candidate
    return None


def load_config(config_path: Path | None = None) -> ChronicleConfig:
    """Load config from the first YAML file found, merged with defaults.

    Expand ~ in paths. Create parent directories for the database path.
    If no config file exists, return defaults (don't error).
    """
    user_config: dict = {}
    found = find_config_file(config_path)
    if found is not None:
        with open(found) as f:
            loaded = yaml.safe_load(f)
        if isinstance(loaded, dict):
            user_config = loaded

    database = _section(user_config, "database")
    linking = _section(user_config, "linking")
    dedup = _section(user_config, "deduplication")
    extraction = _section(user_config, "extraction")

    db_path = Path(database["path"]).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    return ChronicleConfig(
        db_path=db_path,
        probes=_parse_probes(user_config.get("probes")),
        linking=LinkingConfig(
            auto_link=bool(linking["auto_link"]),
            use_git_remote=bool(linking["use_git_remote"]),
            normalize_paths=bool(linking["normalize_paths"]),
        ),
        deduplication=DeduplicationConfig(
            enabled=bool(dedup["enabled"]),
            confidence_threshold=float(dedup["confidence_threshold"]),
        ),
        max_workers=max(1, int(extraction["max_workers"])),
        log_level=str(user_config.get("log_level", DEFAULTS["log_level"])).upper(),
    )
