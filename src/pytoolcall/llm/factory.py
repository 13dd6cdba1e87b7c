from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

from .openai_compat import OpenAICompatProvider

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")

DEFAULT_PROVIDERS_FILE = "pytoolcall.yaml"


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    model: str
    api_key: str
    fallback_model: str | None = None
    timeout: float = 120.0
    max_retries: int = 3


class ProviderRegistry:
    def __init__(self) -> None:
        self._items: Dict[str, ProviderConfig] = {}

    def add(self, cfg: ProviderConfig) -> None:
        key = cfg.name.strip().lower()
        if not key:
            raise ValueError("Provider name cannot be empty.")
        self._items[key] = cfg

    def get(self, name: str) -> ProviderConfig:
        key = (name or "").strip().lower()
        if not key:
            raise ValueError("Missing --provider.")
        if key not in self._items:
            known = ", ".join(sorted(self._items.keys())) or "(none)"
            raise ValueError(f"Unknown provider '{name}'. Known providers: {known}")
        return self._items[key]

    def names(self) -> list[str]:
        return sorted(self._items.keys())


def _expand_env_placeholders(s: str) -> str:
    def repl(m: re.Match) -> str:
        var = m.group(1)
        val = os.getenv(var)
        if not val:
            raise ValueError(f"API key placeholder '${{{var}}}' not found in environment or is empty.")
        return val

    return _ENV_PATTERN.sub(repl, s)


def load_provider_registry(yaml_path: str | Path) -> ProviderRegistry:
    p = Path(yaml_path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Provider YAML not found: {p}")

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    providers = data.get("providers") if isinstance(data, dict) else None
    if not isinstance(providers, dict) or not providers:
        raise ValueError("YAML must contain a non-empty 'providers:' mapping.")

    reg = ProviderRegistry()

    for name, cfg in providers.items():
        if not isinstance(cfg, dict):
            raise ValueError(f"providers.{name} must be a mapping/dict.")

        fields = {k: str(cfg.get(k) or "").strip() for k in ("base_url", "model", "api_key")}
        missing = [k for k, v in fields.items() if not v]
        if missing:
            raise ValueError(f"providers.{name} missing required field(s): {', '.join(missing)}")

        api_key = _expand_env_placeholders(fields["api_key"])
        if not api_key:
            raise ValueError(f"providers.{name} api_key resolved to empty string.")

        fallback = cfg.get("fallback_model")
        try:
            timeout = float(cfg.get("timeout", 120))
            max_retries = int(cfg.get("max_retries", 3))
        except (TypeError, ValueError):
            raise ValueError(f"providers.{name}: timeout and max_retries must be numbers.") from None
        reg.add(ProviderConfig(
            name=str(name),
            base_url=fields["base_url"],
            model=fields["model"],
            api_key=api_key,
            fallback_model=str(fallback).strip() if fallback else None,
            timeout=timeout,
            max_retries=max(0, max_retries),
        ))

    return reg


def resolve_provider(
    provider: Optional[str],
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
    yaml_path: Optional[Path] = None,
) -> tuple[OpenAICompatProvider, ProviderConfig]:
    """
    Build the provider client for `provider`.

    Priority:
      - CLI overrides (model/base_url/api_key)
      - YAML (by provider name)
    """
    if not provider:
        raise ValueError(f"Missing --provider (must match a name in {DEFAULT_PROVIDERS_FILE}).")

    yaml_path = (yaml_path or Path(DEFAULT_PROVIDERS_FILE)).expanduser().resolve()
    logger.debug("provider config: %s", yaml_path)
    cfg = load_provider_registry(yaml_path).get(provider)

    client = OpenAICompatProvider(
        model=model or cfg.model,
        base_url=base_url or cfg.base_url,
        api_key=api_key or cfg.api_key,
        provider_name=cfg.name,
        timeout=cfg.timeout,
        max_retries=cfg.max_retries,
    )
    return client, cfg
