"""
Enrollment Router
Registers and revokes people allowed through the gate
"""
import asyncio
import logging
from typing import List

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile

from ..models import LABEL_SEPARATOR, AccessCategory
from ..services.image_service import bytes_to_image
from .recognition import reload_labels

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/people")
async def list_people(request: Request):
    people = request.app.state.person_directory.get_all()
    return {
        "people": [p.model_dump(mode='json') | {"label": p.label} for p in people],
        "count": len(people)
    }


@router.post("/people")
async def enroll_person(
    request: Request,
    name: str = Form(...),
    category: AccessCategory = Form(AccessCategory.RESIDENT),
    unit: str = Form(""),
    images: List[UploadFile] = File(...)
):
    """Register a new person from one or more reference photos"""
    logger.info("Enrollment request: name=%s, category=%s, images=%d", name, category.value, len(images))
    if not name.strip():
        raise HTTPException(status_code=400, detail="Name is required")
    if LABEL_SEPARATOR in name or LABEL_SEPARATOR in unit:
        raise HTTPException(status_code=400, detail=f"Name and unit must not contain '{LABEL_SEPARATOR}'")

    cv_images = []
    for upload_file in images:
        image_bytes = await upload_file.read()
        try:
            cv_images.append(bytes_to_image(image_bytes))
        except ValueError as e:
            logger.warning("Failed to decode image %s: %s", upload_file.filename, e)

    if not cv_images:
        raise HTTPException(status_code=400, detail="Failed to decode any images")

    # Image writes stay off the event loop
    service = request.app.state.enrollment_service
    loop = asyncio.get_running_loop()
    person = await loop.run_in_executor(
        request.app.state.executor,
        lambda: service.enroll(name.strip(), cv_images, category=category, unit=unit.strip())
    )

    labels = None
    if request.app.state.frame_sampler.running:
        try:
            labels = await reload_labels(request.app)
        except Exception as e:
            logger.error("Error reloading labels after enrollment: %s", e)

    return {
        "status": "success",
        "person_id": person.person_id,
        "label": person.label,
        "images_saved": len(cv_images),
        "labels": labels
    }


@router.delete("/people/{person_id}")
async def revoke_person(request: Request, person_id: str):
    service = request.app.state.enrollment_service
    loop = asyncio.get_running_loop()
    removed = await loop.run_in_executor(request.app.state.executor, service.revoke, person_id)
    if not removed:
        raise HTTPException(status_code=404, detail="Person not found")

    if request.app.state.frame_sampler.running:
        try:
            await reload_labels(request.app)
        except Exception as e:
            logger.error("Error reloading labels after revocation: %s", e)
    return {"status": "success", "person_id": person_id}
