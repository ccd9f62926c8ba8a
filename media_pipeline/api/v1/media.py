from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.db.session import get_session, get_session_factory
from media_pipeline.models.media import MediaAsset
from media_pipeline.schemas.media import (
    DuplicateCandidateRead,
    DuplicateCheckResponse,
    MediaAssetListResponse,
    MediaAssetRead,
    MediaBulkRequest,
    MediaBulkResponse,
    MediaCategoriesResponse,
    MediaMetadataRead,
    MediaMetadataUpdateRequest,
    MediaRenameRequest,
    MediaUploadResponse,
    MediaUsageResponse,
    MediaVariantRead,
    MediaVariantsRequest,
    ModuleReferenceRead,
    NamingPolicyLiteral,
    OperationResultRead,
    OverrideReferenceRead,
    PostReferenceRead,
    ResolutionLiteral,
    SortByLiteral,
    SortOrderLiteral,
    ThemeLiteral,
    VariantStatusResponse,
)
from media_pipeline.services import assets as asset_service
from media_pipeline.services import bulk as bulk_service
from media_pipeline.services import crop_focal
from media_pipeline.services import duplicates as duplicate_service
from media_pipeline.services import storage
from media_pipeline.services import usage as usage_service
from media_pipeline.services import variant_policy
from media_pipeline.services import variants as variant_service
from media_pipeline.services.records import get_asset_or_404

router = APIRouter(prefix="/media", tags=["media"])


def asset_to_read(asset: MediaAsset) -> MediaAssetRead:
    meta = asset.meta or {}
    return MediaAssetRead(
        id=asset.id,
        original_url=asset.original_url,
        original_filename=asset.original_filename,
        mime_type=asset.mime_type,
        size=asset.size,
        width=asset.width,
        height=asset.height,
        optimized_url=asset.optimized_url,
        optimized_size=asset.optimized_size,
        optimized_at=asset.optimized_at,
        alt_text=asset.alt_text,
        title=asset.title,
        description=asset.description,
        categories=list(asset.categories or []),
        metadata=MediaMetadataRead(
            variants=[MediaVariantRead.model_validate(v) for v in variant_policy.variants_of(meta)],
            dark_source_url=meta.get("dark_source_url"),
            dark_optimized_url=meta.get("dark_optimized_url"),
            dark_optimized_size=meta.get("dark_optimized_size"),
            focal_point=meta.get("focal_point"),
            crop_rect=meta.get("crop_rect"),
        ),
        created_at=asset.created_at,
        updated_at=asset.updated_at,
    )


def _split_categories(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


@router.get("", response_model=MediaAssetListResponse)
async def list_media(
    session: AsyncSession = Depends(get_session),
    sort_by: SortByLiteral = Query(default="created_at"),
    sort_order: SortOrderLiteral = Query(default="desc"),
    category: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=24, ge=1, le=100),
) -> MediaAssetListResponse:
    rows, meta = await asset_service.list_assets(
        session,
        asset_service.MediaListFilters(category=category, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit),
    )
    return MediaAssetListResponse(items=[asset_to_read(row) for row in rows], meta=meta)


@router.get("/categories", response_model=MediaCategoriesResponse)
async def list_media_categories(session: AsyncSession = Depends(get_session)) -> MediaCategoriesResponse:
    return MediaCategoriesResponse(items=await asset_service.list_categories(session))


@router.get("/check-duplicate", response_model=DuplicateCheckResponse)
async def check_duplicate(
    original_filename: str = Query(min_length=1, max_length=255),
    session: AsyncSession = Depends(get_session),
) -> DuplicateCheckResponse:
    rows = await duplicate_service.check(session, original_filename)
    return DuplicateCheckResponse(
        original_filename=original_filename,
        duplicates=[
            DuplicateCandidateRead(
                id=row.id,
                original_filename=row.original_filename,
                original_url=row.original_url,
                size=row.size,
                created_at=row.created_at,
            )
            for row in rows
        ],
    )


@router.post("", response_model=MediaUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_media(
    response: Response,
    file: UploadFile = File(...),
    naming: NamingPolicyLiteral = Form(default="original"),
    append_id: bool = Form(default=False),
    alt_text: str | None = Form(default=None),
    title: str | None = Form(default=None),
    description: str | None = Form(default=None),
    categories: str | None = Form(default=None),
    resolution: ResolutionLiteral | None = Form(default=None),
    existing_id: UUID | None = Form(default=None),
    force: bool = Form(default=False),
    session: AsyncSession = Depends(get_session),
) -> MediaUploadResponse:
    upload = storage.read_upload(file)
    asset = await duplicate_service.upload(
        session,
        upload,
        naming=naming,
        append_id=append_id,
        alt_text=alt_text,
        title=title,
        description=description,
        categories=_split_categories(categories),
        resolution=resolution,
        existing_id=existing_id,
        force=force,
    )
    if asset is None:
        response.status_code = status.HTTP_200_OK
        return MediaUploadResponse(asset=None, cancelled=True)
    return MediaUploadResponse(asset=asset_to_read(asset))


@router.post("/bulk", response_model=MediaBulkResponse)
async def bulk_media(
    payload: MediaBulkRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MediaBulkResponse:
    results = await bulk_service.run(
        session_factory,
        payload.operation,
        payload.asset_ids,
        bulk_service.BulkPayload(theme=payload.theme, force=payload.force, add=payload.add, remove=payload.remove),
    )
    return MediaBulkResponse(
        operation=payload.operation,
        results=[
            OperationResultRead(asset_id=r.asset_id, ok=r.ok, error=r.error, detail=r.detail) for r in results
        ],
    )


@router.get("/{asset_id}", response_model=MediaAssetRead)
async def get_media(asset_id: UUID, session: AsyncSession = Depends(get_session)) -> MediaAssetRead:
    return asset_to_read(await get_asset_or_404(session, asset_id))


@router.patch("/{asset_id}", response_model=MediaAssetRead)
async def update_media(
    asset_id: UUID,
    payload: MediaMetadataUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> MediaAssetRead:
    asset = await asset_service.patch_metadata(
        session,
        asset_id,
        alt_text=payload.alt_text,
        title=payload.title,
        description=payload.description,
        categories=payload.categories,
    )
    return asset_to_read(asset)


@router.patch("/{asset_id}/rename", response_model=MediaAssetRead)
async def rename_media(
    asset_id: UUID,
    payload: MediaRenameRequest,
    session: AsyncSession = Depends(get_session),
) -> MediaAssetRead:
    return asset_to_read(await asset_service.rename(session, asset_id, payload.filename))


@router.post("/{asset_id}/override", response_model=MediaAssetRead)
async def override_media(
    asset_id: UUID,
    file: UploadFile = File(...),
    theme: ThemeLiteral = Query(default="light"),
    force: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
) -> MediaAssetRead:
    upload = storage.read_upload(file)
    return asset_to_read(await asset_service.override(session, asset_id, upload, theme, force=force))


@router.post("/{asset_id}/variants", response_model=MediaAssetRead)
async def generate_variants(
    asset_id: UUID,
    payload: MediaVariantsRequest,
    session: AsyncSession = Depends(get_session),
) -> MediaAssetRead:
    requested = [
        value for value in (payload.crop_rect, payload.focal_point, payload.target_variant, payload.crop) if value is not None
    ]
    if len(requested) > 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Send only one of crop_rect, focal_point, target_variant or crop",
        )
    if payload.crop_rect is not None:
        asset = await crop_focal.apply_crop(session, asset_id, payload.crop_rect, payload.target)
    elif payload.focal_point is not None:
        asset = await crop_focal.apply_focal(session, asset_id, payload.focal_point, payload.target)
    elif payload.target_variant is not None:
        asset = await variant_service.derive_one(session, asset_id, payload.theme, payload.target_variant)
    elif payload.crop is not None:
        crop = payload.crop
        asset = await variant_service.derive_custom(
            session, asset_id, payload.theme, crop.name, crop.width, crop.height, crop.fit
        )
    else:
        if payload.mode == "missing":
            asset = await variant_service.derive_missing(session, asset_id, payload.theme)
        else:
            asset = await variant_service.derive_all(session, asset_id, payload.theme)
    return asset_to_read(asset)


@router.get("/{asset_id}/variant-status", response_model=VariantStatusResponse)
async def variant_status(asset_id: UUID, session: AsyncSession = Depends(get_session)) -> VariantStatusResponse:
    current = variant_policy.status(await get_asset_or_404(session, asset_id))
    return VariantStatusResponse(
        has_all_light=current.has_all_light,
        has_all_dark=current.has_all_dark,
        has_dark_base=current.has_dark_base,
        missing_light=list(current.missing_light),
        missing_dark=list(current.missing_dark),
    )


@router.post("/{asset_id}/optimize", response_model=MediaAssetRead)
async def optimize_media(asset_id: UUID, session: AsyncSession = Depends(get_session)) -> MediaAssetRead:
    return asset_to_read(await asset_service.optimize(session, asset_id))


@router.get("/{asset_id}/where-used", response_model=MediaUsageResponse)
async def where_used(asset_id: UUID, session: AsyncSession = Depends(get_session)) -> MediaUsageResponse:
    found = await usage_service.where_used(session, asset_id)
    return MediaUsageResponse(
        asset_id=asset_id,
        in_modules=[ModuleReferenceRead.model_validate(ref, from_attributes=True) for ref in found.in_modules],
        in_overrides=[OverrideReferenceRead.model_validate(ref, from_attributes=True) for ref in found.in_overrides],
        in_posts=[PostReferenceRead.model_validate(ref, from_attributes=True) for ref in found.in_posts],
    )


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_media(
    asset_id: UUID,
    force: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
) -> Response:
    await asset_service.delete(session, asset_id, force=force)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
