from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import anyio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core import metrics
from media_pipeline.core.config import settings
from media_pipeline.services import assets as asset_service
from media_pipeline.services import variants as variant_service
from media_pipeline.services.errors import MediaError
from media_pipeline.services.transforms import Transformer

logger = logging.getLogger(__name__)


class BulkOperation(str, enum.Enum):
    optimize = "optimize"
    generate_missing_variants = "generate_missing_variants"
    regenerate_all_variants = "regenerate_all_variants"
    delete = "delete"
    edit_categories = "edit_categories"


@dataclass(slots=True)
class BulkPayload:
    theme: str = "light"
    force: bool = False
    add: list[str] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class OperationResult:
    asset_id: UUID
    ok: bool
    error: str | None = None
    detail: Any = None


def diff_category_snapshots(before: Iterable[str], after: Iterable[str]) -> tuple[list[str], list[str]]:
    """Categories added and removed between two snapshots of the shared selection."""
    before_list = asset_service.dedupe_categories(list(before))
    after_list = asset_service.dedupe_categories(list(after))
    add = [value for value in after_list if value not in before_list]
    remove = [value for value in before_list if value not in after_list]
    return add, remove


async def _apply(
    session: AsyncSession,
    operation: BulkOperation,
    asset_id: UUID,
    payload: BulkPayload,
    transformer: Transformer | None,
) -> None:
    if operation == BulkOperation.optimize:
        await asset_service.optimize(session, asset_id, transformer=transformer)
    elif operation == BulkOperation.generate_missing_variants:
        await variant_service.derive_missing(session, asset_id, payload.theme, transformer=transformer)
    elif operation == BulkOperation.regenerate_all_variants:
        await variant_service.derive_all(session, asset_id, payload.theme, transformer=transformer)
    elif operation == BulkOperation.delete:
        await asset_service.delete(session, asset_id, force=payload.force)
    elif operation == BulkOperation.edit_categories:
        await asset_service.edit_categories(session, asset_id, add=payload.add, remove=payload.remove)


async def _run_one(
    session_factory: async_sessionmaker[AsyncSession],
    operation: BulkOperation,
    asset_id: UUID,
    payload: BulkPayload,
    transformer: Transformer | None,
) -> OperationResult:
    async with session_factory() as session:
        try:
            await _apply(session, operation, asset_id, payload, transformer)
        except MediaError as exc:
            await session.rollback()
            return OperationResult(asset_id=asset_id, ok=False, error=exc.code, detail=exc.detail)
        except Exception as exc:
            await session.rollback()
            logger.exception(
                "media_bulk_item_failed", extra={"asset_id": str(asset_id), "operation": operation.value}
            )
            return OperationResult(asset_id=asset_id, ok=False, error="internal_error", detail=str(exc))
    return OperationResult(asset_id=asset_id, ok=True)


async def run(
    session_factory: async_sessionmaker[AsyncSession],
    operation: BulkOperation | str,
    asset_ids: list[UUID],
    payload: BulkPayload | None = None,
    *,
    transformer: Transformer | None = None,
) -> list[OperationResult]:
    """Apply one operation to every id and report each outcome in input order.

    Distinct ids run concurrently up to `media_bulk_concurrency`; repeated ids queue
    behind each other. A failing id never stops the others.
    """
    op = BulkOperation(operation)
    payload = payload or BulkPayload()
    if len(asset_ids) > settings.media_bulk_max_ids:
        raise MediaError(
            "Too many assets in one bulk request",
            detail={"message": "Too many assets in one bulk request", "max": settings.media_bulk_max_ids},
        )

    results: list[OperationResult | None] = [None] * len(asset_ids)
    limiter = anyio.CapacityLimiter(max(1, int(settings.media_bulk_concurrency)))
    per_id: dict[UUID, anyio.Lock] = {}

    async def _worker(index: int, asset_id: UUID) -> None:
        lock = per_id.setdefault(asset_id, anyio.Lock())
        async with lock:
            async with limiter:
                results[index] = await _run_one(session_factory, op, asset_id, payload, transformer)

    async with anyio.create_task_group() as tg:
        for index, asset_id in enumerate(asset_ids):
            tg.start_soon(_worker, index, asset_id)

    metrics.record_bulk_run(op.value)
    failed = sum(1 for result in results if result is not None and not result.ok)
    logger.info("media_bulk_run", extra={"operation": op.value, "total": len(asset_ids), "failed": failed})
    return [result for result in results if result is not None]
