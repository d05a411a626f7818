"""
api/routes_content.py

Content CRUD. Ownership is the main override here: the author of an item
may read, edit and delete it without the matching content.* permission.
Everyone else needs the explicit permission.
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import AuthContext, authorize
from insightboard.core.errors import NotFound
from insightboard.core.guards import owner_or, requires
from insightboard.core.permissions import Permission
from insightboard.db.database import get_db
from insightboard.db.models import Content
from insightboard.models.schemas import ContentCreate, ContentResponse, ContentUpdate, MessageResponse
from insightboard.services.audit import AuditAction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/content", tags=["Content"])


async def _get_content(db: AsyncSession, content_id: int) -> Content:
    content = await db.get(Content, content_id)
    if content is None:
        raise NotFound(f"Content {content_id} not found.")
    return content


@router.post("", response_model=ContentResponse, status_code=status.HTTP_201_CREATED)
async def create_content(
    payload: ContentCreate,
    ctx: AuthContext = Depends(authorize(requires(Permission.CONTENT_CREATE))),
    db: AsyncSession = Depends(get_db),
) -> ContentResponse:
    content = Content(
        title=payload.title,
        body=payload.body,
        is_public=payload.is_public,
        created_by=ctx.user_id,
    )
    db.add(content)
    await db.flush()
    ctx.audit(AuditAction.CONTENT_CREATED, "content", content.id, details={"title": content.title})
    return ContentResponse.model_validate(content)


@router.get("/{content_id}", response_model=ContentResponse)
async def get_content(
    content_id: int,
    ctx: AuthContext = Depends(authorize(owner_or(Permission.CONTENT_READ))),
    db: AsyncSession = Depends(get_db),
) -> ContentResponse:
    content = await _get_content(db, content_id)
    if not content.is_public:
        ctx.enforce(owner_id=content.owner_id)
    return ContentResponse.model_validate(content)


@router.put("/{content_id}", response_model=ContentResponse)
async def update_content(
    content_id: int,
    payload: ContentUpdate,
    ctx: AuthContext = Depends(authorize(owner_or(Permission.CONTENT_UPDATE))),
    db: AsyncSession = Depends(get_db),
) -> ContentResponse:
    content = await _get_content(db, content_id)
    ctx.enforce(owner_id=content.owner_id)

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(content, field, value)
    await db.flush()

    ctx.audit(AuditAction.CONTENT_UPDATED, "content", content.id, details={"changed": sorted(changes)})
    return ContentResponse.model_validate(content)


@router.delete("/{content_id}", response_model=MessageResponse)
async def delete_content(
    content_id: int,
    ctx: AuthContext = Depends(authorize(owner_or(Permission.CONTENT_DELETE))),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    content = await _get_content(db, content_id)
    ctx.enforce(owner_id=content.owner_id)

    await db.delete(content)
    await db.flush()
    ctx.audit(AuditAction.CONTENT_DELETED, "content", content_id, details={"title": content.title})
    return MessageResponse(message="Content deleted.")
