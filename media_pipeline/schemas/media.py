from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ThemeLiteral = Literal["light", "dark"]
NamingPolicyLiteral = Literal["original", "generated"]
ResolutionLiteral = Literal["override", "save_as_new", "cancel"]
SortByLiteral = Literal["created_at", "original_filename", "size"]
SortOrderLiteral = Literal["asc", "desc"]
DeriveModeLiteral = Literal["all", "missing"]
FitLiteral = Literal["inside", "cover"]
BulkOperationLiteral = Literal[
    "optimize",
    "generate_missing_variants",
    "regenerate_all_variants",
    "delete",
    "edit_categories",
]


class MediaVariantRead(BaseModel):
    name: str
    url: str
    width: int | None = None
    height: int | None = None
    size: int | None = None
    stale: bool = False
    optimized_url: str | None = None
    optimized_size: int | None = None


class FocalPointRead(BaseModel):
    x: float
    y: float


class CropRectRead(BaseModel):
    x: int
    y: int
    width: int
    height: int


class MediaMetadataRead(BaseModel):
    variants: list[MediaVariantRead] = Field(default_factory=list)
    dark_source_url: str | None = None
    dark_optimized_url: str | None = None
    dark_optimized_size: int | None = None
    focal_point: FocalPointRead | None = None
    crop_rect: CropRectRead | None = None


class MediaAssetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    original_url: str
    original_filename: str
    mime_type: str
    size: int
    width: int | None = None
    height: int | None = None
    optimized_url: str | None = None
    optimized_size: int | None = None
    optimized_at: datetime | None = None
    alt_text: str | None = None
    title: str | None = None
    description: str | None = None
    categories: list[str] = Field(default_factory=list)
    metadata: MediaMetadataRead = Field(default_factory=MediaMetadataRead)
    created_at: datetime
    updated_at: datetime


class MediaAssetListResponse(BaseModel):
    items: list[MediaAssetRead]
    meta: dict[str, int]


class MediaCategoriesResponse(BaseModel):
    items: list[str]


class DuplicateCandidateRead(BaseModel):
    id: UUID
    original_filename: str
    original_url: str
    size: int
    created_at: datetime | None = None


class DuplicateCheckResponse(BaseModel):
    original_filename: str
    duplicates: list[DuplicateCandidateRead] = Field(default_factory=list)


class MediaUploadResponse(BaseModel):
    asset: MediaAssetRead | None = None
    cancelled: bool = False


class MediaMetadataUpdateRequest(BaseModel):
    alt_text: str | None = Field(default=None, max_length=500)
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=10_000)
    categories: list[str] | None = None


class MediaRenameRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)


class CustomVariantRequest(BaseModel):
    name: str = Field(default="crop", min_length=1, max_length=64)
    width: int | None = None
    height: int | None = None
    fit: FitLiteral = "cover"


class MediaVariantsRequest(BaseModel):
    theme: ThemeLiteral = "light"
    mode: DeriveModeLiteral = "all"
    target: str = "original"
    crop_rect: dict[str, Any] | None = None
    focal_point: dict[str, Any] | None = None
    target_variant: str | None = Field(default=None, min_length=1, max_length=64)
    crop: CustomVariantRequest | None = None


class VariantStatusResponse(BaseModel):
    has_all_light: bool
    has_all_dark: bool
    has_dark_base: bool
    missing_light: list[str] = Field(default_factory=list)
    missing_dark: list[str] = Field(default_factory=list)


class ModuleReferenceRead(BaseModel):
    module_id: UUID
    module_type: str
    scope: str
    field: str
    post_id: UUID | None = None


class OverrideReferenceRead(BaseModel):
    override_id: UUID
    post_id: UUID
    module_id: UUID
    field: str


class PostReferenceRead(BaseModel):
    post_id: UUID
    title: str
    field: str


class MediaUsageResponse(BaseModel):
    asset_id: UUID
    in_modules: list[ModuleReferenceRead] = Field(default_factory=list)
    in_overrides: list[OverrideReferenceRead] = Field(default_factory=list)
    in_posts: list[PostReferenceRead] = Field(default_factory=list)


class MediaBulkRequest(BaseModel):
    operation: BulkOperationLiteral
    asset_ids: list[UUID] = Field(min_length=1)
    theme: ThemeLiteral = "light"
    force: bool = False
    add: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class OperationResultRead(BaseModel):
    asset_id: UUID
    ok: bool
    error: str | None = None
    detail: Any = None


class MediaBulkResponse(BaseModel):
    operation: BulkOperationLiteral
    results: list[OperationResultRead]
