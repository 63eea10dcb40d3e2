from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..db import engine
from ..schemas.common import ok


router = APIRouter(tags=["integrations"])


def _db_ok() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health")
def health():
    return ok({"status": "ok", "app": settings.app_name, "environment": settings.environment})


@router.get("/integrations/status")
def status():
    return ok({
        "db": _db_ok(),
        "storage": settings.storage_provider,
        "payment_gateway": settings.payment_gateway,
        "sms": "log",
        "push": settings.enable_push,
    })
