from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException

from perfstat.api.session_store import FormSessionStore
from perfstat.config import settings
from perfstat.data.catalog import FormCatalog
from perfstat.data.storage import Database
from perfstat.data.store import StatisticStore
from perfstat.data.uploads import LocalUploadStore
from perfstat.domain.models import User
from perfstat.engine.rollup import RollupConfig, load_rollup_config
from perfstat.services.forms import PerformanceFormService
from perfstat.services.probe import HttpContentProbe

# Global/Cached instances
_db_instance: Optional[Database] = None
_store_instance: Optional[StatisticStore] = None
_catalog_instance: Optional[FormCatalog] = None
_rollup_instance: Optional[RollupConfig] = None
_service_instance: Optional[PerformanceFormService] = None

# Shared session store (in-memory)
session_store = FormSessionStore(ttl_seconds=settings.sessions.ttl_seconds)


def reset() -> None:
    """Drops every cached instance; the next request rebuilds them from current settings."""
    global _db_instance, _store_instance, _catalog_instance, _rollup_instance, _service_instance, session_store
    _db_instance = None
    _store_instance = None
    _catalog_instance = None
    _rollup_instance = None
    _service_instance = None
    session_store = FormSessionStore(ttl_seconds=settings.sessions.ttl_seconds)


def get_db() -> Database:
    global _db_instance
    if _db_instance is None:
        _db_instance = Database(settings.paths.db_path)
    return _db_instance


def get_store() -> StatisticStore:
    global _store_instance
    if _store_instance is None:
        _store_instance = StatisticStore(db=get_db(), uploads_base_url=settings.paths.uploads_base_url)
    return _store_instance


def get_catalog() -> FormCatalog:
    global _catalog_instance
    if _catalog_instance is None:
        _catalog_instance = FormCatalog.from_file(settings.paths.catalog_path)
    return _catalog_instance


def get_rollup_config() -> RollupConfig:
    global _rollup_instance
    if _rollup_instance is None:
        _rollup_instance = load_rollup_config(settings.paths.rollup_path)
    return _rollup_instance


def get_session_store() -> FormSessionStore:
    return session_store


def get_form_service() -> PerformanceFormService:
    global _service_instance
    if _service_instance is None:
        probe = None
        if settings.navigation.probe_base_url:
            probe = HttpContentProbe(
                settings.navigation.probe_base_url,
                api_token=settings.security.api_token,
                timeout=settings.navigation.probe_timeout_seconds,
            )
        _service_instance = PerformanceFormService(
            catalog=get_catalog(),
            store=get_store(),
            rollup=get_rollup_config(),
            uploads=LocalUploadStore(
                settings.paths.uploads_dir,
                settings.paths.uploads_base_url,
                settings.security.max_upload_mb * 1024 * 1024,
            ),
            sessions=session_store,
            probe=probe,
            config=settings,
        )
    return _service_instance


def require_auth(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
):
    token = settings.security.api_token
    if not token:
        return
    if authorization == f"Bearer {token}" or authorization == f"Token {token}" or x_api_key == token:
        return
    raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})


def get_current_user(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    x_battalion_id: Optional[int] = Header(None, alias="X-Battalion-Id"),
) -> User:
    """
    Identity is established upstream; this only reads what the gateway forwards.
    """
    return User(id=x_user_id or 0, role=x_user_role or None, battalion_id=x_battalion_id)
