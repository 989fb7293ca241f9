"""Files API routes.

Identity comes from the X-User-Id header, set by the identity provider in
front of this service after it has verified the session.
"""
from typing import Optional
from urllib.parse import quote
from uuid import UUID

import pydantic
from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response
from pydantic import TypeAdapter

from filevault.errors import ValidationError
from filevault.schemas.common import DeleteResponse, ErrorResponse
from filevault.schemas.file import (
    AccessProbeResponse,
    FileListResponse,
    FileSummary,
    LinkIssue,
    PublicFileListResponse,
    ShareEntryIn,
    ShareRequest,
    SharingResult,
    UpdateSharingRequest,
    UploadResult,
)
from filevault.services.access_policy import Operation
from filevault.services.download_controller import DownloadResult
from filevault.services.vault import FileVault

router = APIRouter(
    prefix="/api/files",
    tags=["files"],
    responses={code: {"model": ErrorResponse} for code in (400, 403, 404, 410, 422, 503)},
)

_share_list_adapter = TypeAdapter(list[ShareEntryIn])


def get_vault(request: Request) -> FileVault:
    return request.app.state.vault


async def optional_user(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id or None


async def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def _download_response(result: DownloadResult) -> Response:
    headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(result.original_name)}",
        "X-Download-Count": str(result.download_count),
    }
    if result.max_downloads is not None:
        headers["X-Downloads-Remaining"] = str(result.max_downloads - result.download_count)
    return Response(content=result.content, media_type=result.mime_type, headers=headers)


@router.post("/upload", response_model=UploadResult, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    visibility: str = Form("private"),
    description: str = Form(""),
    max_downloads: Optional[int] = Form(None),
    ttl_seconds: Optional[int] = Form(None),
    share_list: Optional[str] = Form(None, description="JSON list of {granteeId, permission}"),
    recipients: Optional[str] = Form(None, description="Comma-separated notification recipients"),
    require_secret: Optional[bool] = Form(None),
    owner_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Encrypt and store an uploaded file."""
    shares = None
    if share_list:
        try:
            shares = _share_list_adapter.validate_json(share_list)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid share list: {e.errors()[0]['msg']}") from e
    contents = await file.read()
    return await vault.upload(
        owner_id,
        contents,
        file.filename or "",
        file.content_type,
        visibility,
        shares,
        max_downloads,
        ttl_seconds,
        description=description,
        require_secret=require_secret,
        recipients=(recipients or "").split(","),
    )


@router.get("", response_model=FileListResponse)
async def list_files(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Files owned by the caller and files shared with them."""
    return await vault.list_files(user_id, limit, offset)


@router.get("/public", response_model=PublicFileListResponse)
async def list_public_files(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    vault: FileVault = Depends(get_vault),
):
    """Public files that are still downloadable."""
    return await vault.list_public(limit, offset)


@router.get("/link/{token}", response_model=FileSummary)
async def get_link_details(
    token: str,
    secret: Optional[str] = Query(None),
    x_decryption_secret: Optional[str] = Header(None),
    user_id: Optional[str] = Depends(optional_user),
    vault: FileVault = Depends(get_vault),
):
    """Details of a link-limited file, for the download page."""
    return await vault.get_summary(token, user_id, secret=x_decryption_secret or secret)


@router.get("/link/{token}/download")
async def download_by_link(
    token: str,
    secret: Optional[str] = Query(None),
    x_decryption_secret: Optional[str] = Header(None),
    user_id: Optional[str] = Depends(optional_user),
    vault: FileVault = Depends(get_vault),
):
    """Download through a share link, consuming one download."""
    result = await vault.attempt_download(token, user_id, x_decryption_secret or secret)
    return _download_response(result)


@router.get("/{file_id}", response_model=FileSummary)
async def get_file(
    file_id: UUID,
    user_id: Optional[str] = Depends(optional_user),
    vault: FileVault = Depends(get_vault),
):
    """File details for anyone allowed to view it."""
    return await vault.get_summary(file_id, user_id)


@router.get("/{file_id}/access", response_model=AccessProbeResponse)
async def probe_access(
    file_id: UUID,
    op: Operation = Query(Operation.VIEW),
    user_id: Optional[str] = Depends(optional_user),
    vault: FileVault = Depends(get_vault),
):
    """Tell the UI whether the caller may view/download a file."""
    allowed = await vault.can_access(file_id, user_id, op)
    return AccessProbeResponse(id=file_id, op=op.value, allowed=allowed)


@router.get("/{file_id}/download")
async def download_file(
    file_id: UUID,
    x_decryption_secret: Optional[str] = Header(None),
    user_id: Optional[str] = Depends(optional_user),
    vault: FileVault = Depends(get_vault),
):
    """Download a file by id, consuming one download."""
    result = await vault.attempt_download(file_id, user_id, x_decryption_secret)
    return _download_response(result)


@router.put("/{file_id}/sharing", response_model=SharingResult)
async def update_sharing(
    file_id: UUID,
    body: UpdateSharingRequest,
    user_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Change visibility, share list or description (owner only)."""
    return await vault.update_sharing(
        user_id,
        file_id,
        share_list=body.share_list,
        visibility=body.visibility,
        description=body.description,
    )


@router.post("/{file_id}/share", response_model=SharingResult)
async def share_file(
    file_id: UUID,
    body: ShareRequest,
    user_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Share a file with one more user (owner only)."""
    return await vault.share_with(user_id, file_id, body.grantee_id, body.permission)


@router.delete("/{file_id}/share/{grantee_id}", response_model=FileSummary)
async def revoke_share(
    file_id: UUID,
    grantee_id: str,
    user_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Remove one user's access (owner only)."""
    return await vault.revoke_share(user_id, file_id, grantee_id)


@router.post("/{file_id}/link", response_model=LinkIssue)
async def reissue_link(
    file_id: UUID,
    user_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Issue a new share link; the old one stops working."""
    return await vault.reissue_link(user_id, file_id)


@router.delete("/{file_id}", response_model=DeleteResponse)
async def delete_file(
    file_id: UUID,
    user_id: str = Depends(require_user),
    vault: FileVault = Depends(get_vault),
):
    """Delete a file and its ciphertext. Repeating the call is harmless."""
    return await vault.delete_record(user_id, file_id)
