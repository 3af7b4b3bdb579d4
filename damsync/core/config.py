from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("DAMSYNC_HOME") or (Path.home() / ".damsync"))
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"


class ImageshopAuthConfig(BaseModel):
    api_token: str = ""
    # Interface that new uploads are filed under, and duplicate searches are limited to.
    upload_interface: str = ""
    timeout_sec: int = Field(default=30, ge=1, le=600)
    api_base_url: str = "https://api.imageshop.no"
    cdn_prefix: str = "https://v.imgi.no"


class SiteConfig(BaseModel):
    site_url: str = "http://localhost"
    locale: str = "en_US"
    uploads_dir: str = str(RUNTIME_DIR / "uploads")


class ImageSizeConfig(BaseModel):
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    crop: bool = False


def _default_image_sizes() -> dict[str, ImageSizeConfig]:
    return {
        "thumbnail": ImageSizeConfig(width=150, height=150, crop=True),
        "medium": ImageSizeConfig(width=300, height=300),
        "medium_large": ImageSizeConfig(width=768, height=0),
        "large": ImageSizeConfig(width=1024, height=1024),
        "1536x1536": ImageSizeConfig(width=1536, height=1536),
        "2048x2048": ImageSizeConfig(width=2048, height=2048),
    }


class MediaConfig(BaseModel):
    image_sizes: dict[str, ImageSizeConfig] = Field(default_factory=_default_image_sizes)
    allowed_mimes: list[str] = Field(default_factory=lambda: [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/bmp",
        "image/tiff",
        "image/webp",
    ])
    # Queue permalink creation and send it as one bulk call per resolver session.
    batch_permalinks: bool = True
    permalink_cache_ttl_sec: int = Field(default=3600, ge=0)
    # Back-off window after a size resolves to 0x0 twice in a row.
    processing_cooldown_sec: int = Field(default=300, ge=0)
    caption_cache_ttl_sec: int = Field(default=7 * 24 * 3600, ge=0)
    interface_cache_ttl_sec: int = Field(default=3600, ge=0)


class SyncConfig(BaseModel):
    # 0 disables the in-process job worker; positive values are seconds between polls.
    worker_poll_interval_sec: int = Field(default=30, ge=0, le=86400)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "service.db")


class AppConfig(BaseModel):
    auth: ImageshopAuthConfig = Field(default_factory=ImageshopAuthConfig)
    site: SiteConfig = Field(default_factory=SiteConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Admin API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.site.uploads_dir).mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")


def masked_config(cfg: AppConfig) -> dict:
    data = cfg.model_dump()
    token = cfg.auth.api_token
    data["auth"]["api_token"] = f"{token[:4]}…" if token else ""
    return data
