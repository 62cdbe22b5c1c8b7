from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from imbridge.api.schemas import MonitorStatus
from imbridge.core.security import verify_admin
from imbridge.services.dingtalk_monitor import DingtalkMonitor


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dingtalk", tags=["DingTalk"])


def get_monitor(request: Request) -> DingtalkMonitor:
    monitor = getattr(request.app.state, "dingtalk_monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="DingTalk monitor not initialized")
    return monitor


@router.get("/status", response_model=MonitorStatus)
async def monitor_status(monitor: DingtalkMonitor = Depends(get_monitor)):
    return monitor.status()


@router.post("/stop", response_model=MonitorStatus, dependencies=[Depends(verify_admin)])
async def stop_monitor(monitor: DingtalkMonitor = Depends(get_monitor)):
    monitor.stop()
    return monitor.status()


@router.post("/cache/clear", dependencies=[Depends(verify_admin)])
async def clear_cache(monitor: DingtalkMonitor = Depends(get_monitor)):
    size = len(monitor.cache)
    monitor.clear_cache()
    logger.info("DingTalk dedup cache cleared (%s entries)", size)
    return {"status": "ok", "cleared": size}
