from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import ConfigManager, HubRuntimeConfig
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_directory_path,
    default_identity_path,
    ensure_private_dir,
)
from .service import HubService
from .store import default_directory_text


def _prepare_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        ensure_private_dir(Path(parent))


def _restrict(path: str) -> None:
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


def _write_default_config(config_path: str, identity_path: str, directory_path: str) -> None:
    _prepare_parent(config_path)

    content = f"""# lchatd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start lchatd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where lchatd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Users and channels. lchatd rewrites this file when statuses, bans, pins or
# channels change. Leave empty to keep everything in memory.
directory_path = {directory_path!r}

# Destination name to host the hub on.
dest_name = "lchat.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "lchat"

# Room policy.
#
# fallback_channel: where users land when their last room is gone or private.
# message_edit_ttl_s: how long authors may edit their own messages.
#   Moderators and Admins may edit at any age.
# history_limit: messages sent to a client when it enters a room.
fallback_channel = "#general"
message_edit_ttl_s = 86400.0
history_limit = 100
min_channel_name_len = 2
max_channel_name_len = 50
display_name_max_chars = 20

# Moderation
#
# banned_identities: user ids refused at login in addition to users whose
# directory entry is marked banned.
banned_identities = []

# Limits.
rate_limit_msgs_per_minute = 240

# Events larger than the link MDU are sent as an RNS.Resource up to this size.
max_resource_bytes = 262144

[logging]

# Log level for lchatd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(
    config_path: str, identity_path: str, directory_path: str
) -> bool:
    """Create whichever of the config, hub identity and directory are missing.

    Returns True if anything was written; the operator should review the
    files before the hub is started for real.
    """
    missing = [p for p in (config_path, identity_path, directory_path) if p and not os.path.exists(p)]

    if config_path in missing:
        _write_default_config(config_path, identity_path, directory_path)

    if identity_path in missing:
        _prepare_parent(identity_path)
        RNS.Identity().to_file(identity_path)
        _restrict(identity_path)

    if directory_path in missing:
        _prepare_parent(directory_path)
        with open(directory_path, "w", encoding="utf-8") as f:
            f.write(default_directory_text())
        _restrict(directory_path)

    return bool(missing)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="lchatd", description="Run an lchat room hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--directory",
        default=str(default_directory_path()),
        help="Path to the users/channels directory TOML (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: lchat.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announces")
    p.add_argument(
        "--fallback-channel", default=None, help="Channel used when a user's last room is gone"
    )
    p.add_argument(
        "--edit-ttl",
        type=float,
        default=None,
        help="Seconds during which authors may edit their own messages",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection event rate limit",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )
    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    cfg = HubRuntimeConfig(
        configdir=args.configdir,
        identity_path=str(args.identity),
        directory_path=str(args.directory),
        config_path=str(args.config),
    )
    if args.config and os.path.exists(args.config):
        cfg = ConfigManager().load(cfg, str(args.config))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.fallback_channel is not None:
        cfg = replace(cfg, fallback_channel=args.fallback_channel)
    if args.edit_ttl is not None:
        cfg = replace(cfg, message_edit_ttl_s=float(args.edit_ttl))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)
    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    directory_path = str(args.directory)

    if _ensure_first_run_files(config_path, identity_path, directory_path):
        print(
            "Created default lchatd files. Edit the configuration before starting:\n"
            f"- Config:    {config_path}\n"
            f"- Identity:  {identity_path}\n"
            f"- Directory: {directory_path}\n"
            "\nThen re-run lchatd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
