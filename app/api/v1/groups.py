import uuid
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
from sqlalchemy.orm import selectinload
from typing import List
from pydantic import BaseModel, EmailStr, Field
from app.db.session import get_db
from app.models.user import User
from app.models.group import Group, group_members
from app.api.v1.auth import get_current_user
from app.services.audit import log_audit_event
from app.services.recipient_validator import normalize_email
from app.services.user_directory import UserDirectory

router = APIRouter()

class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    member_emails: List[EmailStr] = []

class MemberAdd(BaseModel):
    emails: List[EmailStr]

def group_to_dict(group: Group) -> dict:
    return {
        "id": str(group.id),
        "name": group.name,
        "description": group.description,
        "creator_id": str(group.creator_id),
        "members": [
            {"id": str(m.id), "name": m.name, "email": m.email}
            for m in group.members
        ],
        "member_count": len(group.members),
        "created_at": group.created_at.isoformat() if group.created_at else None,
    }

async def _load_group(db: AsyncSession, group_id) -> Group:
    result = await db.execute(select(Group).options(selectinload(Group.members)).where(Group.id == group_id))
    group = result.scalar_one_or_none()
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group

async def _resolve_members(db: AsyncSession, emails: List[str]):
    directory = UserDirectory(db)
    found, missing = [], []
    for email in dict.fromkeys(normalize_email(e) for e in emails):
        user = await directory.find_by_email(email)
        if user is None:
            missing.append(email)
        else:
            found.append(user)
    return found, missing

@router.get("/")
async def list_groups(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Groups the caller created or belongs to"""
    member_of = select(group_members.c.group_id).where(group_members.c.user_id == current_user.id)
    result = await db.execute(
        select(Group)
        .options(selectinload(Group.members))
        .where(or_(Group.creator_id == current_user.id, Group.id.in_(member_of)))
        .order_by(Group.name)
    )
    return [group_to_dict(g) for g in result.scalars().all()]

@router.post("/", status_code=201)
async def create_group(
    group_data: GroupCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    members, missing = await _resolve_members(db, group_data.member_emails)

    group = Group(name=group_data.name, description=group_data.description, creator_id=current_user.id)
    group.members = [current_user] + [m for m in members if m.id != current_user.id]
    db.add(group)
    await db.flush()

    await log_audit_event(
        db, "GROUP_CREATE", user_id=current_user.id, resource="group", resource_id=group.id,
        details={"member_count": len(group.members), "unknown_emails": missing},
    )
    await db.commit()

    group = await _load_group(db, group.id)
    return {**group_to_dict(group), "unknown_emails": missing}

@router.post("/{group_id}/members")
async def add_members(
    group_id: uuid.UUID,
    payload: MemberAdd,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Add registered users to a group (creator only)"""
    group = await _load_group(db, group_id)
    if group.creator_id != current_user.id:
        raise HTTPException(status_code=403, detail="Only the group creator can add members")

    users, missing = await _resolve_members(db, payload.emails)
    existing = {m.id for m in group.members}
    added = [u for u in users if u.id not in existing]
    group.members.extend(added)

    await log_audit_event(
        db, "GROUP_MEMBERS_ADD", user_id=current_user.id, resource="group", resource_id=group.id,
        details={"added": [u.email for u in added], "unknown_emails": missing},
    )
    await db.commit()

    return {**group_to_dict(group), "added": len(added), "unknown_emails": missing}
