"""
Shared configuration loader for the lullaby playback services.

Loads a single JSON config file per install.  Search order:
  1. /etc/lullaby/config.json     (deployed install)
  2. config.json                  (CWD — handy for local dev)
  3. <repo>/config/default.json   (source checkout only: wheels do not
                                  ship it, so an installed copy with no
                                  config file runs on built-in defaults)

Secrets (the catalog API token) stay in environment variables:
LULLABY_API_TOKEN is read by the catalog client, never from this file.

Usage:
    from lullaby.lib.config import cfg

    appliance_host = cfg("appliance", "host", default="192.168.1.44")
    tick_interval  = cfg("playback", "tick_interval", default=0.1)
    playback       = cfg("playback")  # returns the whole dict
"""

import json
import logging
import os

from .models import PLAYBACK_MODES

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/lullaby/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    appliance = config.get("appliance") or {}
    if not appliance.get("host"):
        logger.warning("Config %s: missing appliance.host — remote playback will fail", path)
    catalog = config.get("catalog") or {}
    if not catalog.get("base_url"):
        logger.warning("Config %s: missing catalog.base_url — playlist cannot be loaded", path)
    playback = config.get("playback") or {}
    mode = playback.get("mode", "remote")
    if mode not in PLAYBACK_MODES:
        logger.warning("Config %s: unknown playback.mode '%s'", path, mode)
    default_volume = playback.get("default_volume", 0.7)
    if not isinstance(default_volume, (int, float)) or not 0 <= default_volume <= 1:
        logger.warning("Config %s: playback.default_volume %r outside 0..1", path, default_volume)
    tick = playback.get("tick_interval", 0.1)
    if not isinstance(tick, (int, float)) or tick <= 0:
        logger.error("Config %s: playback.tick_interval must be a positive number", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _SEARCH_PATHS:
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("appliance")                    → config["appliance"]
    cfg("appliance", "host")            → config["appliance"]["host"]
    cfg("playback", "tick_interval", default=0.1)
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()


def use_config(config: dict):
    """Install *config* directly, bypassing the search path (tests, embedding)."""
    global _config
    _config = config
    return _config
