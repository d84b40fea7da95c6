import logging
from typing import Optional

import requests

from musichub.application.hub import MusicHub
from musichub.crosscutting.config import Settings, SessionStore, get_settings
from musichub.crosscutting.logging import setup_logging
from musichub.crosscutting.metrics import MetricsCollector
from musichub.domain.ports import AudioTransport
from musichub.infrastructure.providers.catalog import HttpCatalogClient
from musichub.infrastructure.providers.supabase_auth import SupabaseIdentityProvider
from musichub.infrastructure.providers.supabase_db import SupabaseLibraryRepository

logger = logging.getLogger(__name__)


def create_client(transport: AudioTransport,
                  settings: Optional[Settings] = None,
                  http_session: Optional[requests.Session] = None,
                  configure_logging: bool = False,
                  persist_session: bool = True) -> MusicHub:
    """Build a MusicHub backed by the HTTP adapters.

    The host owns the audio output and passes it in as transport; everything
    else is created from settings. Call ``await hub.start()`` afterwards.
    """
    settings = settings or get_settings()
    settings.require_supabase()

    if configure_logging:
        setup_logging(settings.log_level)

    session = http_session or requests.Session()
    identity = SupabaseIdentityProvider(
        settings.supabase_url,
        settings.supabase_anon_key,
        timeout_sec=settings.http_timeout_sec,
        session=session,
        session_store=SessionStore(settings.config_dir) if persist_session else None,
        redirect_url=settings.oauth_redirect_url,
    )
    repository = SupabaseLibraryRepository(
        settings.supabase_url,
        settings.supabase_anon_key,
        token_provider=lambda: identity.access_token,
        timeout_sec=settings.http_timeout_sec,
        session=session,
        default_cover_url=settings.default_cover_url,
    )
    catalog = HttpCatalogClient(settings.catalog_url, timeout_sec=settings.http_timeout_sec,
                                session=session)

    logger.info(f"Creating client against {settings.supabase_url}")
    return MusicHub(identity, catalog, repository, transport,
                    settings=settings, metrics=MetricsCollector())
