from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from hubmirror.container import AppContext, Container
from hubmirror.logging_config import configure_from_context
from hubmirror.registry import (
    HubMirrorError,
    InvalidQueryError,
    ModelStore,
    QueryCriteria,
    SyncDriver,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_QUERY = 2


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _parse_params(pairs: list[str]) -> dict[str, str | list[str]]:
    """Turn KEY=VALUE pairs into params; a repeated key collects a list."""
    params: dict[str, str | list[str]] = {}
    for pair in pairs:
        if "=" not in pair:
            raise InvalidQueryError(f"Expected KEY=VALUE, got {pair!r}")
        key, value = (part.strip() for part in pair.split("=", 1))
        current = params.get(key)
        if current is None:
            params[key] = value
        elif isinstance(current, list):
            current.append(value)
        else:
            params[key] = [current, value]
    return params


def cmd_sync(container: Container, params: dict[str, Any], limit: int | None, details: bool) -> int:
    driver = container.get(SyncDriver)
    report = driver.sync_listing(params, limit)
    if not details:
        _print_json(report.to_dict())
        return EXIT_OK if report.ok else EXIT_FAILED

    detail_report = driver.sync_details(report.model_ids, max_workers=container.context.sync_workers)
    _print_json({"listing": report.to_dict(), "details": detail_report.to_dict()})
    return EXIT_OK if report.ok and detail_report.ok else EXIT_FAILED


def cmd_detail(container: Container, model_ids: list[str], force: bool) -> int:
    driver = container.get(SyncDriver)
    if len(model_ids) == 1:
        result = driver.sync_detail(model_ids[0], force=force)
        print(f"{result.record.model_id}: {result.outcome}")
        return EXIT_OK
    report = driver.sync_details(model_ids, max_workers=container.context.sync_workers, force=force)
    _print_json(report.to_dict())
    return EXIT_OK if report.ok else EXIT_FAILED


def cmd_tree(container: Container, model_id: str, path: str | None) -> int:
    result = container.get(SyncDriver).sync_tree(model_id, path=path)
    print(f"{model_id}: {result.outcome} ({len(result.record.siblings)} files)")
    return EXIT_OK


def cmd_show(container: Container, model_id: str) -> int:
    _print_json(container.get(ModelStore).get(model_id).to_dict())
    return EXIT_OK


def cmd_query(container: Container, params: dict[str, Any], as_json: bool) -> int:
    store = container.get(ModelStore)
    page = store.query(QueryCriteria.from_params(params))
    if as_json:
        _print_json(
            {
                "skip": page.skip,
                "limit": page.limit,
                "has_more": page.has_more,
                "items": [record.to_dict() for record in page],
            }
        )
        return EXIT_OK

    for record in page:
        print(
            f"{record.model_id:60} {record.pipeline_tag or '-':28} "
            f"downloads={record.downloads} likes={record.likes}"
        )
    if page.has_more:
        print(f"... more results (--param skip={page.next_skip})")
    return EXIT_OK


def cmd_delete(container: Container, model_id: str) -> int:
    container.get(ModelStore).delete(model_id)
    print(f"OK: deleted {model_id}")
    return EXIT_OK


def cmd_stats(container: Container) -> int:
    _print_json(container.get(ModelStore).stats())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hubmirror", description="Local mirror of model registry metadata")
    p.add_argument("--db", type=Path, default=None, help="SQLite database path (overrides HUBMIRROR_DB)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    sub = p.add_subparsers(dest="cmd", required=True)

    sync = sub.add_parser("sync", help="Mirror listing pages from the registry")
    sync.add_argument("--param", action="append", default=[], metavar="KEY=VALUE", help="Listing parameter (repeatable)")
    sync.add_argument("--limit", type=int, default=None, help="Stop after this many entries")
    sync.add_argument("--details", action="store_true", help="Also fetch full details for the listed models")

    detail = sub.add_parser("detail", help="Fetch and merge full detail for models")
    detail.add_argument("model_ids", nargs="+")
    detail.add_argument("--force", action="store_true", help="Overwrite even if the payload looks older")

    tree = sub.add_parser("tree", help="Fetch and merge a repository file tree")
    tree.add_argument("model_id")
    tree.add_argument("--path", default=None, help="Only list files under this folder")

    show = sub.add_parser("show", help="Print one stored record")
    show.add_argument("model_id")

    query = sub.add_parser("query", help="Query the local mirror")
    query.add_argument("--param", action="append", default=[], metavar="KEY=VALUE", help="Query parameter (repeatable)")
    query.add_argument("--json", dest="as_json", action="store_true", help="Print results as JSON")

    delete = sub.add_parser("delete", help="Remove a model from the mirror")
    delete.add_argument("model_id")

    sub.add_parser("stats", help="Mirror statistics")
    return p


def main(argv: list[str] | None = None, container: Container | None = None) -> int:
    args = build_parser().parse_args(argv)

    if container is None:
        context = AppContext.from_env()
        if args.db is not None:
            context.db_path = args.db
        container = Container(context)
        container.setup_defaults()
    configure_from_context(container.context, verbose=args.verbose, json_output=args.json_logs or None)

    try:
        if args.cmd == "sync":
            return cmd_sync(container, _parse_params(args.param), args.limit, args.details)
        elif args.cmd == "detail":
            return cmd_detail(container, args.model_ids, args.force)
        elif args.cmd == "tree":
            return cmd_tree(container, args.model_id, args.path)
        elif args.cmd == "show":
            return cmd_show(container, args.model_id)
        elif args.cmd == "query":
            return cmd_query(container, _parse_params(args.param), args.as_json)
        elif args.cmd == "delete":
            return cmd_delete(container, args.model_id)
        elif args.cmd == "stats":
            return cmd_stats(container)
        return EXIT_FAILED
    except InvalidQueryError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INVALID_QUERY
    except HubMirrorError as e:
        # clean failure, no traceback
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        container.reset()


if __name__ == "__main__":
    sys.exit(main())
