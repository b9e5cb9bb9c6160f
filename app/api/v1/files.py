import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from typing import List
from pydantic import BaseModel, Field
from app.db.session import get_db
from app.models.user import User
from app.models.file import File
from app.models.group import Group
from app.models.share import FileShare
from app.api.v1.auth import get_current_user
from app.core.time_utils import utcnow
from app.services.share_store import share_store

router = APIRouter()

class FileCreate(BaseModel):
    filename: str = Field(min_length=1, max_length=500)
    original_filename: str | None = None
    size_bytes: int = Field(gt=0)
    mime_type: str
    url: str
    encrypted: bool = False
    encryption_key_id: str | None = None

class FileResponse(BaseModel):
    id: str
    filename: str
    original_filename: str
    size_bytes: int
    mime_type: str
    url: str
    encrypted: bool
    encryption_key_id: str | None
    owner_user_id: str
    created_at: str

def file_to_dict(file: File) -> dict:
    return {
        "id": str(file.id),
        "filename": file.filename,
        "original_filename": file.original_filename,
        "size_bytes": file.size_bytes,
        "mime_type": file.mime_type,
        "url": file.url,
        "encrypted": bool(file.encrypted),
        "encryption_key_id": file.encryption_key_id,
        "owner_user_id": str(file.owner_user_id),
        "created_at": file.created_at.isoformat(),
    }

@router.post("/", response_model=FileResponse, status_code=201)
async def register_file(
    file_data: FileCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Register metadata of a file already uploaded to the object store"""
    file = File(
        owner_user_id=current_user.id,
        filename=file_data.filename,
        original_filename=file_data.original_filename or file_data.filename,
        size_bytes=file_data.size_bytes,
        mime_type=file_data.mime_type,
        url=file_data.url,
        encrypted=file_data.encrypted,
        encryption_key_id=file_data.encryption_key_id,
    )

    db.add(file)
    await db.commit()
    await db.refresh(file)

    return file_to_dict(file)

@router.get("/", response_model=List[FileResponse])
async def list_files(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the caller's files, newest first"""
    result = await db.execute(
        select(File)
        .where(File.owner_user_id == current_user.id)
        .order_by(File.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [file_to_dict(f) for f in result.scalars().all()]

@router.get("/{file_id}", response_model=FileResponse)
async def get_file(
    file_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """File metadata for its owner or a recipient of an active share"""
    file = await db.get(File, file_id)
    if file is None:
        raise HTTPException(status_code=404, detail="File not found")

    if file.owner_user_id != current_user.id:
        result = await db.execute(
            select(FileShare)
            .options(selectinload(FileShare.group).selectinload(Group.members))
            .where(FileShare.file_id == file.id, FileShare.revoked.is_(False))
        )
        now = utcnow()
        readable = any(
            share.is_active(now) and share_store.is_recipient(share, current_user)
            for share in result.scalars().all()
        )
        if not readable:
            raise HTTPException(status_code=404, detail="File not found")

    return file_to_dict(file)
