"""Receipt API endpoints: submission, status, review and re-analysis."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile, status
from fastapi.responses import Response, StreamingResponse
from starlette.concurrency import run_in_threadpool

from src.api.dependencies import (
    get_current_user,
    get_receipt_store,
    get_status_notifier,
    get_storage,
    get_stream_user,
    get_submission_service,
)
from src.config import get_settings
from src.errors import (
    ImageDecodeError,
    ImageNotFoundError,
    InvalidReceiptState,
    ReceiptNotFound,
    ServiceUnavailable,
    StorageUnavailableError,
    ValidationFailed,
)
from src.models.user import User
from src.schemas.receipt import (
    PreviewResponse,
    QueueResponse,
    ReanalyzeResponse,
    ReceiptListItem,
    ReceiptListResponse,
    ReceiptResponse,
    ReceiptStatusInfo,
    ReceiptStatusQuery,
    ReceiptUpdate,
)
from src.services.image_normalizer import create_preview, is_heic
from src.services.receipt_store import ReceiptStore
from src.services.status_notifier import StatusNotifier
from src.services.storage import ObjectStore, mime_type_for
from src.services.submission import SubmissionService, Upload

router = APIRouter(prefix="/api/v1/receipts", tags=["receipts"])


@router.post("/queue", response_model=QueueResponse)
async def queue_receipts(
    current_user: Annotated[User, Depends(get_current_user)],
    service: Annotated[SubmissionService, Depends(get_submission_service)],
    files: Annotated[list[UploadFile] | None, File()] = None,
):
    """Upload receipt images and start one extraction job per image.

    Each image costs one credit, charged when its extraction succeeds. The
    whole batch is rejected if the balance cannot cover it.
    """
    uploads = [
        Upload(
            filename=file.filename or "receipt",
            content_type=file.content_type,
            data=await file.read(),
        )
        for file in files or []
    ]
    return await run_in_threadpool(service.submit, current_user, uploads)


@router.post("/status", response_model=list[ReceiptStatusInfo])
def get_statuses(
    query: ReceiptStatusQuery,
    current_user: Annotated[User, Depends(get_current_user)],
    notifier: Annotated[StatusNotifier, Depends(get_status_notifier)],
):
    """Get current status for a set of receipts. Unknown ids are omitted."""
    return notifier.snapshot(current_user.id, query.ids)


@router.get("/stream")
async def stream_statuses(
    request: Request,
    current_user: Annotated[User, Depends(get_stream_user)],
    notifier: Annotated[StatusNotifier, Depends(get_status_notifier)],
    ids: Annotated[str | None, Query(description="Comma-separated receipt ids")] = None,
):
    """Stream status changes as server-sent events.

    Without ``ids`` the caller's in-flight receipts are watched. The stream
    ends with ``data: [DONE]`` once every watched receipt is terminal.
    """
    receipt_ids = [receipt_id.strip() for receipt_id in (ids or "").split(",") if receipt_id.strip()]
    return StreamingResponse(
        notifier.stream(current_user.id, receipt_ids, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/preview", response_model=PreviewResponse)
async def preview_image(
    current_user: Annotated[User, Depends(get_current_user)],
    file: Annotated[UploadFile, File()],
):
    """Render an upload (including HEIC) as a JPEG data URL."""
    data = await file.read()
    if len(data) > get_settings().max_upload_bytes:
        raise ValidationFailed(f"File {file.filename} too large")
    try:
        preview = await run_in_threadpool(create_preview, data, file.content_type, file.filename)
    except ImageDecodeError as e:
        raise ValidationFailed("Failed to process image") from e
    return PreviewResponse(preview=preview)


@router.get("", response_model=ReceiptListResponse)
def list_receipts(
    current_user: Annotated[User, Depends(get_current_user)],
    store: Annotated[ReceiptStore, Depends(get_receipt_store)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    cursor: datetime | None = None,
):
    """List the current user's receipts, newest first."""
    receipts, next_cursor = store.list_for_user(current_user.id, limit=limit, cursor=cursor)
    return ReceiptListResponse(
        receipts=[ReceiptListItem.model_validate(receipt) for receipt in receipts],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
    )


@router.get("/{receipt_id}", response_model=ReceiptResponse)
def get_receipt(
    receipt_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    store: Annotated[ReceiptStore, Depends(get_receipt_store)],
):
    """Get a receipt with its line items."""
    return store.get_for_user(receipt_id, current_user.id, with_items=True)


@router.get("/{receipt_id}/image")
def get_receipt_image(
    receipt_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    store: Annotated[ReceiptStore, Depends(get_receipt_store)],
    storage: Annotated[ObjectStore, Depends(get_storage)],
) -> Response:
    """Get a receipt's photo. HEIC uploads are served as their JPEG conversion."""
    receipt = store.get_for_user(receipt_id, current_user.id)
    image_path = receipt.image_path
    if is_heic(filename=image_path):
        image_path = f"{image_path}.jpg"

    try:
        data = storage.load(image_path)
    except ImageNotFoundError as e:
        raise ReceiptNotFound("Image not found") from e
    except StorageUnavailableError as e:
        raise ServiceUnavailable("Failed to load image, please try again") from e

    return Response(
        content=data,
        media_type=mime_type_for(image_path) or "application/octet-stream",
        # Keys are never reused, so an object never changes
        headers={"Cache-Control": "private, max-age=31536000, immutable"},
    )


@router.put("/{receipt_id}", response_model=ReceiptResponse)
def update_receipt(
    receipt_id: str,
    changes: ReceiptUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    store: Annotated[ReceiptStore, Depends(get_receipt_store)],
):
    """Correct a receipt by hand. ``items``, when given, replaces all items."""
    receipt = store.get_for_user(receipt_id, current_user.id)
    return store.update(receipt, changes)


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_receipt(
    receipt_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    store: Annotated[ReceiptStore, Depends(get_receipt_store)],
    storage: Annotated[ObjectStore, Depends(get_storage)],
):
    """Delete a receipt, its items and its image."""
    receipt = store.get_for_user(receipt_id, current_user.id)
    if not receipt.status.is_terminal:
        raise InvalidReceiptState("Receipt is still being processed")
    image_path = receipt.image_path
    store.delete(receipt)
    storage.delete(image_path)
    if is_heic(filename=image_path):
        storage.delete(f"{image_path}.jpg")


@router.post(
    "/{receipt_id}/reanalyze",
    response_model=ReanalyzeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def reanalyze_receipt(
    receipt_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    service: Annotated[SubmissionService, Depends(get_submission_service)],
):
    """Run extraction again on a finished receipt."""
    return service.reanalyze(current_user, receipt_id)
