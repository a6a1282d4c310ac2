"""Runtime configuration with ``PAYGATE_*`` environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional

from .discovery import DEFAULT_CACHE_TTL, DEFAULT_REGISTRY_URL, CachePolicy
from .negotiator import DEFAULT_REQUIREMENT_TTL
from .networks import is_supported_network
from .settlement import RetryPolicy

ENV_PREFIX = "PAYGATE_"


@dataclass
class PaygateConfig:
    facilitator_url: str = "http://127.0.0.1:3002"
    registry_url: str = DEFAULT_REGISTRY_URL
    network: str = "base-sepolia"
    cache_ttl: float = DEFAULT_CACHE_TTL
    cache_enabled: bool = True
    settlement_attempts: int = 3
    settlement_base_delay: float = 1.0
    request_timeout: float = 30.0
    ledger_timeout: Optional[float] = 10.0
    requirement_ttl: int = DEFAULT_REQUIREMENT_TTL
    secret: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> PaygateConfig:
        env = os.environ if environ is None else environ
        config = cls()
        changes = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            changes[f.name] = _coerce(f.name, raw, getattr(config, f.name))
        config = replace(config, **changes)
        if not is_supported_network(config.network):
            raise ValueError(f"{ENV_PREFIX}NETWORK is not a known network: {config.network!r}")
        return config

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.settlement_attempts, base_delay=self.settlement_base_delay)

    def cache_policy(self) -> CachePolicy:
        return CachePolicy(ttl=self.cache_ttl, enabled=self.cache_enabled)


def _coerce(name: str, raw: str, default: object):
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float) or name == "ledger_timeout":
            return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be numeric, got {raw!r}") from exc
    return raw
