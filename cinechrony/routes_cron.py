import hmac
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config, push
from .database import get_db
from .digest import run_weekly_digest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _cron_authorized(request: Request) -> bool:
    secret = config.CRON_SECRET
    if not secret:
        return not config.is_production()
    header = request.headers.get("authorization") or ""
    return hmac.compare_digest(header.encode(), f"Bearer {secret}".encode())


@router.api_route("/weekly-digest", methods=["GET", "POST"])
async def weekly_digest(request: Request, db: AsyncSession = Depends(get_db)):
    if not _cron_authorized(request):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    if not push.enabled():
        return JSONResponse(status_code=500, content={"error": "VAPID keys not configured"})

    try:
        report = await run_weekly_digest(db)
    except SQLAlchemyError:
        logger.exception("Weekly digest run failed")
        return JSONResponse(status_code=500, content={"error": "Failed to send digests"})
    return report.as_response()
