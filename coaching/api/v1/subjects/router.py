from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.core.exceptions import ServiceError
from coaching.db.session import get_db

from .schemas import SubjectCreate, SubjectResponse, SubjectUpdate
from . import service

router = APIRouter(prefix="/api/v1/subjects", tags=["subjects"])


@router.post(
    "",
    response_model=SubjectResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subject(
    payload: SubjectCreate,
    db: AsyncSession = Depends(get_db),
):
    """Add a subject to the catalog. Enrollment count always starts at zero."""
    try:
        return await service.create_subject(db, payload)
    except ServiceError as e:
        raise e.to_http_exception()


@router.get("", response_model=List[SubjectResponse])
async def list_subjects(
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_db),
):
    return await service.list_subjects(db, active_only=active_only)


@router.get("/{subject_id}", response_model=SubjectResponse)
async def get_subject(
    subject_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    obj = await service.get_subject(db, subject_id)
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found")
    return obj


@router.put("/{subject_id}", response_model=SubjectResponse)
async def update_subject(
    subject_id: UUID,
    payload: SubjectUpdate,
    db: AsyncSession = Depends(get_db),
):
    try:
        obj = await service.update_subject(db, subject_id, payload)
    except ServiceError as e:
        raise e.to_http_exception()
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found")
    return obj


@router.post("/{subject_id}/deactivate", response_model=SubjectResponse)
async def deactivate_subject(
    subject_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    obj = await service.deactivate_subject(db, subject_id)
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found")
    return obj


@router.delete("/{subject_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subject(
    subject_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    try:
        deleted = await service.delete_subject(db, subject_id)
    except ServiceError as e:
        raise e.to_http_exception()
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found")
