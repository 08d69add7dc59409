"""Upload, status and delete endpoints for documents."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Header, HTTPException, Response, UploadFile, status

from ..errors import DocQAError
from ..services import DocQAService, get_service
from .errors import to_http_exception
from .schemas import DocumentListResponse, DocumentResponse

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])


def require_owner(x_owner_id: str | None = Header(None, alias="X-Owner-Id")) -> str:
    """Resolve the caller's owner id from the ``X-Owner-Id`` header."""

    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=400, detail="X-Owner-Id header is required")
    return x_owner_id.strip()


@router.post("", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
async def upload_document(
    response: Response,
    file: UploadFile = File(...),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    owner_id: str = Depends(require_owner),
    service: DocQAService = Depends(get_service),
) -> DocumentResponse:
    """Ingest one document exactly once per ``Idempotency-Key``."""

    if not idempotency_key or not idempotency_key.strip():
        raise HTTPException(status_code=400, detail="Idempotency-Key header is required")

    payload = await file.read()
    try:
        outcome = await service.ingestion.ingest(
            owner_id,
            idempotency_key.strip(),
            payload,
            file.content_type,
            file_name=file.filename,
        )
    except DocQAError as exc:
        raise to_http_exception(exc) from exc

    if outcome.replayed:
        response.status_code = status.HTTP_200_OK
        response.headers["Idempotent-Replayed"] = "true"
    response.headers["Location"] = f"/documents/{outcome.document.id}"
    return DocumentResponse.from_document(outcome.document)


@router.get("", response_model=DocumentListResponse)
def list_documents(
    owner_id: str = Depends(require_owner),
    service: DocQAService = Depends(get_service),
) -> DocumentListResponse:
    documents = service.ingestion.list_documents(owner_id)
    return DocumentListResponse(documents=[DocumentResponse.from_document(doc) for doc in documents])


@router.get("/{document_id}", response_model=DocumentResponse)
def get_document(
    document_id: str,
    owner_id: str = Depends(require_owner),
    service: DocQAService = Depends(get_service),
) -> DocumentResponse:
    try:
        document = service.ingestion.get_document(owner_id, document_id)
    except DocQAError as exc:
        raise to_http_exception(exc) from exc
    return DocumentResponse.from_document(document)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: str,
    owner_id: str = Depends(require_owner),
    service: DocQAService = Depends(get_service),
) -> Response:
    """Delete a document together with its indexed chunks."""

    try:
        await service.ingestion.delete_document(owner_id, document_id)
    except DocQAError as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
