import argparse
import asyncio
import json
import uuid
from typing import Any

from media_pipeline.core.config import settings
from media_pipeline.core.logging_config import configure_logging
from media_pipeline.db.session import SessionLocal, init_models
from media_pipeline.services import bulk as bulk_service
from media_pipeline.services import usage as usage_service
from media_pipeline.services import variant_policy
from media_pipeline.services import variants as variant_service
from media_pipeline.services.errors import MediaError


def _parse_ids(raw: list[str]) -> list[uuid.UUID]:
    ids: list[uuid.UUID] = []
    for value in raw:
        try:
            ids.append(uuid.UUID(value))
        except ValueError:
            raise SystemExit(f"Invalid asset id: {value}")
    return ids


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _derive(asset_id: uuid.UUID, theme: str, missing_only: bool) -> None:
    async with SessionLocal() as session:
        if missing_only:
            asset = await variant_service.derive_missing(session, asset_id, theme)
        else:
            asset = await variant_service.derive_all(session, asset_id, theme)
        current = variant_policy.status(asset)
        _print_json(
            {
                "asset_id": asset.id,
                "variants": [v["name"] for v in variant_policy.variants_of(asset.meta)],
                "has_all_light": current.has_all_light,
                "has_all_dark": current.has_all_dark,
                "has_dark_base": current.has_dark_base,
            }
        )


async def _where_used(asset_id: uuid.UUID) -> None:
    async with SessionLocal() as session:
        found = await usage_service.where_used(session, asset_id)
        _print_json({"asset_id": asset_id, **found.as_dict()})


async def _bulk(operation: str, asset_ids: list[uuid.UUID], args: argparse.Namespace) -> int:
    payload = bulk_service.BulkPayload(
        theme=args.theme,
        force=bool(args.force),
        add=list(args.add or []),
        remove=list(args.remove or []),
    )
    results = await bulk_service.run(SessionLocal, operation, asset_ids, payload)
    _print_json([{"asset_id": r.asset_id, "ok": r.ok, "error": r.error} for r in results])
    return sum(1 for r in results if not r.ok)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Media pipeline maintenance commands")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create database tables")

    derive = subparsers.add_parser("derive", help="Generate variants for one asset")
    derive.add_argument("asset_id")
    derive.add_argument("--theme", choices=list(variant_policy.THEMES), default="light")
    derive.add_argument("--missing", action="store_true", help="Only generate missing or stale variants")

    where = subparsers.add_parser("where-used", help="List content that references an asset")
    where.add_argument("asset_id")

    bulk = subparsers.add_parser("bulk", help="Run one operation over several assets")
    bulk.add_argument("operation", choices=[op.value for op in bulk_service.BulkOperation])
    bulk.add_argument("asset_ids", nargs="+")
    bulk.add_argument("--theme", choices=list(variant_policy.THEMES), default="light")
    bulk.add_argument("--force", action="store_true")
    bulk.add_argument("--add", action="append", help="Category to add (repeatable)")
    bulk.add_argument("--remove", action="append", help="Category to remove (repeatable)")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_models())
        print(f"Tables created for {settings.database_url}")
        return True

    if args.command == "derive":
        asset_id = _parse_ids([args.asset_id])[0]
        try:
            asyncio.run(_derive(asset_id, args.theme, bool(args.missing)))
        except MediaError as exc:
            _print_json({"error": exc.code, "detail": exc.detail})
            raise SystemExit(1)
        return True

    if args.command == "where-used":
        asset_id = _parse_ids([args.asset_id])[0]
        try:
            asyncio.run(_where_used(asset_id))
        except MediaError as exc:
            _print_json({"error": exc.code, "detail": exc.detail})
            raise SystemExit(1)
        return True

    if args.command == "bulk":
        failed = asyncio.run(_bulk(args.operation, _parse_ids(args.asset_ids), args))
        if failed:
            raise SystemExit(1)
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
