from __future__ import annotations

from dataclasses import dataclass

from damsync.core.config import AppConfig, load_config
from damsync.core.logging_setup import LogFunc, make_log_func
from damsync.providers.imageshop import (
    Cache,
    ImageSourceResolver,
    ImageshopClient,
    JobScheduler,
    MediaTransfer,
    MetadataProjector,
    ObjectStore,
    PermalinkCache,
    SizeResolver,
    SyncOrchestrator,
)
from damsync.providers.imageshop.db import init_db


@dataclass
class Services:
    cfg: AppConfig
    log_func: LogFunc
    store: ObjectStore
    cache: Cache
    scheduler: JobScheduler
    client: ImageshopClient
    permalinks: PermalinkCache
    resolver: SizeResolver
    projector: MetadataProjector
    image_src: ImageSourceResolver
    media: MediaTransfer
    sync: SyncOrchestrator


def build_client(cfg: AppConfig, cache: Cache | None = None) -> ImageshopClient:
    client = ImageshopClient(
        api_token=cfg.auth.api_token,
        interface_name=cfg.auth.upload_interface,
        site_url=cfg.site.site_url,
        timeout=int(cfg.auth.timeout_sec),
        base_url=cfg.auth.api_base_url,
        cdn_prefix=cfg.auth.cdn_prefix,
        cache=cache,
        interface_cache_ttl=cfg.media.interface_cache_ttl_sec,
    )
    client.set_language(cfg.site.locale)
    return client


def build_services(cfg: AppConfig | None = None, client: ImageshopClient | None = None, log_func: LogFunc | None = None) -> Services:
    """Composition root: every service is constructed here and passed by reference."""
    cfg = cfg or load_config()
    init_db(cfg.database.path)
    log_func = log_func or make_log_func()

    store = ObjectStore(cfg.database.path)
    cache = Cache(cfg.database.path)
    scheduler = JobScheduler(cfg.database.path, log_func)
    client = client or build_client(cfg, cache)

    permalinks = PermalinkCache(
        store,
        cache,
        client,
        site_url=cfg.site.site_url,
        ttl=cfg.media.permalink_cache_ttl_sec,
        batch=cfg.media.batch_permalinks,
        log_func=log_func,
    )
    resolver = SizeResolver(store, client, permalinks, log_func)
    projector = MetadataProjector(
        store,
        cache,
        client,
        resolver,
        cfg.media.image_sizes,
        log_func,
        locale=cfg.site.locale,
        caption_ttl=cfg.media.caption_cache_ttl_sec,
    )
    image_src = ImageSourceResolver(
        store,
        cache,
        resolver,
        projector,
        log_func,
        allowed_mimes=cfg.media.allowed_mimes,
        cooldown=cfg.media.processing_cooldown_sec,
    )
    media = MediaTransfer(store, client, cfg.site.uploads_dir, log_func, projector=projector)
    sync = SyncOrchestrator(store, client, scheduler, media, log_func)
    sync.register()

    return Services(
        cfg=cfg,
        log_func=log_func,
        store=store,
        cache=cache,
        scheduler=scheduler,
        client=client,
        permalinks=permalinks,
        resolver=resolver,
        projector=projector,
        image_src=image_src,
        media=media,
        sync=sync,
    )
