"""
Image upload and serving routes.
"""

from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File, Request
from fastapi.responses import FileResponse

from ..models.user import User
from ..services.file_service import FileService
from ..utils.security import get_current_user


router = APIRouter(prefix="/api/files", tags=["Files"])


def get_file_service(request: Request) -> FileService:
    return request.app.state.file_service


@router.post("/upload")
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    file_service: FileService = Depends(get_file_service)
):
    """Upload an image for a chat prompt."""
    try:
        file_key, metadata = await file_service.upload_file(file, current_user.id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    base_url = str(request.base_url).rstrip("/")
    return {
        "file_key": file_key,
        "url": file_service.get_file_url(file_key, base_url),
        "metadata": metadata
    }


@router.get("/{user_id}/{filename}")
async def get_file(
    user_id: int,
    filename: str,
    file_service: FileService = Depends(get_file_service)
):
    """Serve an uploaded file."""
    file_path = file_service.get_file_path(f"{user_id}/{filename}")
    if not file_path:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found"
        )
    return FileResponse(file_path)


@router.delete("/{user_id}/{filename}")
async def delete_file(
    user_id: int,
    filename: str,
    current_user: User = Depends(get_current_user),
    file_service: FileService = Depends(get_file_service)
):
    """Delete an uploaded file (only owner can delete)."""
    if current_user.id != user_id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only delete your own files"
        )

    if not await file_service.delete_file(f"{user_id}/{filename}"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found"
        )

    return {"message": "File deleted"}
