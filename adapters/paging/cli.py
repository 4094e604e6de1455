"""CLI entry point: page, drain, plan."""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from typing import Any, Optional

from adapters.paging.config import PagingConfig, load_config
from adapters.paging.errors import PagingError
from adapters.paging.logging_config import configure_logging
from adapters.paging.models import PageRequest
from adapters.paging.paginator import UpstreamPaginator
from adapters.paging.planner import TraversalPlanner
from adapters.paging.service import PagingService

logger = logging.getLogger("paging.cli")


PROVIDER_REGISTRY: dict[str, tuple[Optional[str], str, str]] = {
    # name -> (config_attr, module_path, class_name)
    "github": ("github", "adapters.paging.providers.github", "GitHubPaginator"),
    "servicenow": ("servicenow", "adapters.paging.providers.servicenow", "ServiceNowPaginator"),
    "aws_iam": ("aws_iam", "adapters.paging.providers.aws_iam", "AwsIamPaginator"),
    "google_workspace": (
        "google_workspace", "adapters.paging.providers.google_workspace", "GoogleWorkspacePaginator",
    ),
    "static": (None, "adapters.paging.providers.static", "StaticPaginator"),
}


def get_paginator(name: str, config: PagingConfig, fixture: Optional[str] = None) -> UpstreamPaginator:
    """Instantiate a paginator by name. Raises ValueError if unknown or unconfigured."""
    entry = PROVIDER_REGISTRY.get(name)
    if not entry:
        raise ValueError(f"Unknown provider {name!r}")

    config_attr, module_path, class_name = entry
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    if config_attr is None:
        if not fixture:
            raise ValueError(f"{name} provider requires a fixture file")
        return cls.from_file(fixture)
    if not getattr(config, config_attr, None):
        raise ValueError(f"{name} not configured")
    return cls(config)


def _load_request(args: argparse.Namespace, config: PagingConfig) -> PageRequest:
    with open(args.request) as fh:
        data: dict[str, Any] = json.load(fh)
    if args.page_size is not None:
        data["pageSize"] = args.page_size
    data.setdefault("pageSize", config.engine.default_page_size)
    if args.cursor is not None:
        data["cursor"] = args.cursor
    return PageRequest.from_dict(data)


def _service(args: argparse.Namespace, config: PagingConfig) -> PagingService:
    paginator = get_paginator(args.provider, config, args.fixture)
    return PagingService(
        paginator,
        max_concurrency=config.engine.max_concurrency,
        request_timeout_seconds=config.engine.request_timeout_seconds,
    )


def cmd_page(args: argparse.Namespace, config: PagingConfig) -> int:
    """Fetch one page and print its wire form."""
    request = _load_request(args, config)
    service = _service(args, config)
    try:
        response = service.get_page(request)
    finally:
        service.paginator.close()
    print(json.dumps(response.to_wire(), indent=2))
    return 0 if response.ok else 1


def cmd_drain(args: argparse.Namespace, config: PagingConfig) -> int:
    """Follow nextCursor until the traversal completes, one JSON document per page."""
    request = _load_request(args, config)
    service = _service(args, config)
    pages = total = 0
    ok = True
    try:
        for response in service.drain(request, max_pages=args.max_pages):
            print(json.dumps(response.to_wire()))
            pages += 1
            ok = response.ok
            if ok:
                total += len(response.page.objects)
    finally:
        service.paginator.close()
    logger.info("Drained %d objects in %d pages", total, pages, extra={"objects": total})
    return 0 if ok else 1


def cmd_plan(args: argparse.Namespace, config: PagingConfig) -> int:
    """Print the frame stack planned for a request."""
    request = _load_request(args, config)
    plan = TraversalPlanner().plan(request.entity, request.accounts, request.advanced_filters)
    for line in plan.describe():
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paging",
        description="Identity connector paging engine",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--request", "-r", required=True, help="JSON file with the page request")
        sub.add_argument("--page-size", "-n", type=int, help="Override pageSize from the request")
        sub.add_argument("--cursor", "-c", help="Override cursor from the request")

    def _provider(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--provider", "-p",
            choices=sorted(PROVIDER_REGISTRY),
            required=True,
            help="Upstream provider",
        )
        sub.add_argument("--fixture", "-f", help="Fixture file for the static provider")

    page_parser = subparsers.add_parser("page", help="Fetch one page")
    _common(page_parser)
    _provider(page_parser)
    page_parser.set_defaults(func=cmd_page)

    drain_parser = subparsers.add_parser("drain", help="Fetch every page")
    _common(drain_parser)
    _provider(drain_parser)
    drain_parser.add_argument(
        "--max-pages", "-m",
        type=int,
        default=1000,
        help="Stop after this many pages (default: 1000)",
    )
    drain_parser.set_defaults(func=cmd_drain)

    plan_parser = subparsers.add_parser("plan", help="Show the traversal plan")
    _common(plan_parser)
    plan_parser.set_defaults(func=cmd_plan)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config()
    configure_logging(config.log_level)

    try:
        code = args.func(args, config)
    except (PagingError, ValueError, OSError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
