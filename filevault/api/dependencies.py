"""
Shared FastAPI dependencies.
"""
from typing import Optional

from fastapi import Request

from filevault.core.config import Settings, settings
from filevault.core.redis_client import create_token_store
from filevault.storage.access import DownloadOptions
from filevault.storage.lifecycle import LifecycleFacade

# Global facade instance (initialized in app startup)
_facade: Optional[LifecycleFacade] = None


def build_facade(config: Settings = settings) -> LifecycleFacade:
    """Create a facade wired from application settings."""
    return LifecycleFacade(
        storage_config=config.storage_config(),
        retention_config=config.retention_config(),
        token_store=create_token_store(config),
        default_token_ttl_minutes=config.DOWNLOAD_TOKEN_TTL_MINUTES,
    )


def init_facade(facade: Optional[LifecycleFacade] = None) -> LifecycleFacade:
    """Initialize the global facade."""
    global _facade
    _facade = facade or build_facade()
    _facade.initialize()
    return _facade


def get_facade() -> LifecycleFacade:
    """
    Dependency returning the global facade, creating it on first use.

    Usage:
        @router.get("/files/info")
        def get_info(facade: LifecycleFacade = Depends(get_facade)):
            ...
    """
    global _facade
    if _facade is None:
        _facade = build_facade()
    return _facade


def shutdown_facade() -> None:
    global _facade
    if _facade is not None:
        _facade.shutdown()
        _facade = None


def download_options(
    request: Request,
    user_id: Optional[str] = None,
    force_download: bool = False,
    filename: Optional[str] = None
) -> DownloadOptions:
    """Download options from query parameters and the client connection."""
    return DownloadOptions(
        user_id=user_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        force_download=force_download,
        custom_filename=filename,
    )
