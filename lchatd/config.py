from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import DEFAULT_FALLBACK_CHANNEL


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    directory_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "lchat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "lchat"
    fallback_channel: str = DEFAULT_FALLBACK_CHANNEL
    banned_identities: tuple[str, ...] = ()
    message_edit_ttl_s: float = 24 * 3600
    history_limit: int = 100
    min_channel_name_len: int = 2
    max_channel_name_len: int = 50
    display_name_max_chars: int = 20
    rate_limit_msgs_per_minute: int = 240
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_EMPTY_IS_NONE = ("configdir", "directory_path", "log_file", "log_datefmt")


class ConfigManager:
    """Loads the TOML config file and overlays it on a HubRuntimeConfig."""

    def load_toml(self, path: str) -> dict[str, Any]:
        import tomllib

        with open(path, "rb") as f:
            data = tomllib.load(f)
        return data if isinstance(data, dict) else {}

    def apply_config_data(
        self, base: HubRuntimeConfig, data: dict[str, Any]
    ) -> HubRuntimeConfig:
        hub = data.get("hub") if isinstance(data, dict) else None
        if isinstance(hub, dict):
            data = {**data, **hub}

        log_table = data.get("logging") if isinstance(data, dict) else None
        if isinstance(log_table, dict):
            mapped = {dst: log_table[src] for src, dst in _LOGGING_KEYS.items() if src in log_table}
            data = {**data, **mapped}

        allowed = set(asdict(base).keys())
        # This identifies where the file was read from; do not let the file override it.
        allowed.discard("config_path")
        updates = {k: v for k, v in data.items() if k in allowed}

        if "banned_identities" in updates and isinstance(updates["banned_identities"], list):
            updates["banned_identities"] = tuple(str(x) for x in updates["banned_identities"])

        if "announce" in data and "announce_on_start" not in updates:
            updates["announce_on_start"] = bool(data["announce"])
        for key in _EMPTY_IS_NONE:
            if key in updates and updates[key] == "":
                updates[key] = None

        return replace(base, **updates) if updates else base

    def load(self, base: HubRuntimeConfig, path: str) -> HubRuntimeConfig:
        return self.apply_config_data(base, self.load_toml(path))
