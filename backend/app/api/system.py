from fastapi import APIRouter
from loguru import logger

from app.config import get_settings
from app.core.providers import available_providers
from app.db.store import get_store
from app.models.system import HealthResponse

router = APIRouter(prefix="/api/system", tags=["system"])

HEALTH_PROBE_KEY = "health:probe"


async def check_store() -> bool:
    try:
        store = get_store()
        await store.get(HEALTH_PROBE_KEY)
        return True
    except Exception as e:
        logger.warning("[system] store check failed: {}", e)
        return False


@router.get("/health", response_model=HealthResponse)
async def health():
    settings = get_settings()
    store_ok = await check_store()
    registered = set(available_providers())
    providers = [name for name in settings.configured_providers() if name in registered]

    return {
        "status": "ok" if store_ok and providers else "error",
        "dependencies": {
            settings.store_backend: "connected" if store_ok else "error",
        },
        "providers": providers,
    }
