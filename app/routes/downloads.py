"""Signed download endpoint."""

from collections.abc import AsyncIterator
from contextlib import closing

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import iterate_in_threadpool

from app.dependencies import get_delivery_service
from app.schemas.common import ErrorResponse
from databridge.services.file_delivery import FileDeliveryService, FileDownload

router: APIRouter = APIRouter(prefix="/api", tags=["downloads"])


async def _stream(request: Request, download: FileDownload) -> AsyncIterator[bytes]:
    # file reads run in the threadpool, off the event loop
    with closing(download.chunks) as chunks:
        async for chunk in iterate_in_threadpool(chunks):
            if await request.is_disconnected():
                break
            yield chunk


@router.get("/downloads", responses={403: {"model": ErrorResponse}})
def download_file(
    request: Request,
    token: str = Query(..., min_length=1),
    expires: str = Query(..., min_length=1),
    filename: str = Query(..., min_length=1),
    delivery: FileDeliveryService = Depends(get_delivery_service),
) -> StreamingResponse:
    # expires stays a string so a malformed value gets the same denial as a bad token
    download: FileDownload = delivery.verify_and_stream(token, filename, expires)
    return StreamingResponse(
        _stream(request, download),
        headers=download.headers,
        media_type=download.headers["Content-Type"],
    )
