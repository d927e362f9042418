import logging

from fastapi import APIRouter, Depends

from perfstat.api.deps import get_catalog, get_db, get_rollup_config, get_session_store
from perfstat.api.session_store import FormSessionStore
from perfstat.config import settings
from perfstat.data.catalog import FormCatalog
from perfstat.data.storage import Database
from perfstat.engine.rollup import RollupConfig

logger = logging.getLogger("perfstat.api.system")
router = APIRouter()


@router.get("/health")
def health(
    db: Database = Depends(get_db),
    catalog: FormCatalog = Depends(get_catalog),
    rollup: RollupConfig = Depends(get_rollup_config),
    sessions: FormSessionStore = Depends(get_session_store),
):
    db_ok = db.ping()
    if not db_ok:
        logger.warning("Health check: database unreachable", extra={"db_path": str(db.db_path)})
    return {
        "status": "ok" if db_ok else "degraded",
        "version": settings.app.version,
        "modules": len(catalog.modules),
        "rollups": len(rollup.mappings),
        "open_sessions": len(sessions),
    }
