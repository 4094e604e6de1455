"""AWS Lambda handler serving one page per invocation.

Event format (a page request plus the provider name):
  {"provider": "aws_iam", "entity": {...}, "pageSize": 100, "cursor": "",
   "accounts": ["123456789012"]}
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import replace

from adapters.paging.cli import get_paginator
from adapters.paging.config import load_config
from adapters.paging.errors import PagingError
from adapters.paging.logging_config import configure_logging
from adapters.paging.models import PageRequest
from adapters.paging.service import PagingService

logger = logging.getLogger("paging.lambda")

STATUS_BY_CODE = {
    "MALFORMED_CURSOR": 400,
    "INVALID_CONFIG": 400,
    "UPSTREAM_FATAL": 502,
    "UPSTREAM_RETRYABLE": 503,
}

# Seconds of the invocation reserved after the last upstream call
LAMBDA_MARGIN_SECONDS = 1.0


def handler(event: dict, context) -> dict:
    """Lambda entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    provider = event.get("provider", "")
    if not provider:
        return {"statusCode": 400, "body": "Missing 'provider' in event"}

    logger.info("Lambda invoked for provider=%s", provider, extra={"provider": provider})

    try:
        request = PageRequest.from_dict(event)
    except PagingError as exc:
        return {"statusCode": 400, "body": json.dumps({"error": exc.to_dict()})}

    config = load_config()
    if request.page_size == 0:
        request = replace(request, page_size=config.engine.default_page_size)
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is not None:
        remaining = get_remaining() / 1000 - LAMBDA_MARGIN_SECONDS
        request = replace(request, deadline=time.monotonic() + remaining)

    try:
        paginator = get_paginator(provider, config, event.get("fixture"))
    except ValueError as exc:
        return {"statusCode": 400, "body": json.dumps({"provider": provider, "error": str(exc)})}

    try:
        service = PagingService(
            paginator,
            max_concurrency=config.engine.max_concurrency,
            request_timeout_seconds=config.engine.request_timeout_seconds,
        )
        response = service.get_page(request)
    finally:
        paginator.close()

    if response.error is not None:
        status = STATUS_BY_CODE.get(response.error.code, 500)
    else:
        status = 200
    return {"statusCode": status, "body": json.dumps(response.to_wire())}
