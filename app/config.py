"""Environment-driven settings for the formrelay service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from form_cache import FormCacheConfig
from portal_config import PortalConfigSettings

ROOT = Path(__file__).resolve().parents[1]


def load_env_file(path: Path) -> None:
    """Read simple KEY=VALUE lines; variables already in the environment win."""
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def _csv(name: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in os.getenv(name, "").split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    use_db: bool = False
    forms: FormCacheConfig = field(default_factory=FormCacheConfig)
    portal: PortalConfigSettings = field(default_factory=PortalConfigSettings)
    # Destination workbooks registered at startup; the router never creates them.
    workbooks: tuple[str, ...] = ()


def load_settings() -> Settings:
    load_env_file(ROOT / "app" / ".env")
    ttl_s = float(os.getenv("FORMRELAY_CACHE_TTL_S", "21600"))
    forms = FormCacheConfig(
        registry_ref=os.getenv("FORMRELAY_REGISTRY_REF", "registry").strip() or "registry",
        registry_sheet=os.getenv("FORMRELAY_REGISTRY_SHEET", "System_Forms_Registry").strip() or "System_Forms_Registry",
        blob_container=os.getenv("FORMRELAY_BLOB_CONTAINER", "form-archive").strip() or "form-archive",
        cache_ttl_s=ttl_s,
        cache_max_bytes=int(os.getenv("FORMRELAY_CACHE_MAX_BYTES", str(9 * 1024))),
        registry_cell_limit=int(os.getenv("FORMRELAY_REGISTRY_CELL_LIMIT", "50000")),
    )
    return Settings(
        use_db=_flag("USE_DB"),
        forms=forms,
        portal=PortalConfigSettings(cache_ttl_s=ttl_s),
        workbooks=_csv("FORMRELAY_WORKBOOKS"),
    )
