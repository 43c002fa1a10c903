"""
Recognition Router
Start/stop the capture session and inspect recognition state
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request

from ..models import CacheClearRequest

logger = logging.getLogger(__name__)

router = APIRouter()


async def reload_labels(app: FastAPI) -> int:
    """Rebuild the labelled descriptor sets and hand them to the state machine"""
    loop = asyncio.get_running_loop()
    labeled_sets = await loop.run_in_executor(
        app.state.executor,
        app.state.enrollment_service.load_labeled_sets
    )
    app.state.recognition_machine.update_labels(labeled_sets)
    return len(labeled_sets)


@router.post("/start")
async def start_recognition(request: Request):
    sampler = request.app.state.frame_sampler
    if sampler.running:
        return {"status": "already_running", "running": True}

    try:
        # Models load before the camera opens
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(request.app.state.executor, request.app.state.load_recognizer)
        labels = await reload_labels(request.app)
        await sampler.start()
    except Exception as e:
        logger.error("Could not start recognition: %s", e)
        raise HTTPException(status_code=503, detail=str(e))

    return {"status": "started", "running": True, "labels": labels}


@router.post("/stop")
async def stop_recognition(request: Request):
    sampler = request.app.state.frame_sampler
    await sampler.stop()
    request.app.state.recognition_machine.reset()
    return {"status": "stopped", "running": False}


@router.get("/status")
async def get_status(request: Request):
    status = request.app.state.recognition_machine.status()
    status["running"] = request.app.state.frame_sampler.running
    return status


@router.post("/reload")
async def reload(request: Request):
    """Reload descriptor sets, using the cache where it is still fresh"""
    try:
        labels = await reload_labels(request.app)
    except Exception as e:
        logger.error("Error reloading labels: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "success", "labels": labels}


@router.post("/cache/clear")
async def clear_cache(request: Request, body: Optional[CacheClearRequest] = None):
    """Drop cached descriptors; the next reload recomputes them"""
    cache = request.app.state.descriptor_cache
    if body is not None and body.prefix:
        removed = cache.invalidate(body.prefix, prefix=True)
    else:
        removed = cache.clear()
    return {"status": "success", "removed": removed}


@router.get("/events")
async def get_events(request: Request, person_label: Optional[str] = None, limit: int = 50):
    events = request.app.state.access_log.get_events(person_label=person_label, limit=limit)
    return {"events": [e.model_dump(mode='json') for e in events], "count": len(events)}
