"""Build resolved execution requests from an option set."""

from __future__ import annotations

import os
from datetime import UTC, datetime

from queryloop.config import Settings
from queryloop.orchestrator.errors import TemplateResolutionError
from queryloop.orchestrator.models import (
    ExecutionOptionSet,
    QueryAction,
    ResolvedExecutionRequest,
)
from queryloop.orchestrator.options import resolve_option


def build_scheme_request(
    option_set: ExecutionOptionSet,
    *,
    settings: Settings,
) -> ResolvedExecutionRequest:
    """Build the one-shot scheme statement request (always executed as root)."""

    query = option_set.scheme_query
    if option_set.use_templates:
        query = replace_token_template(query, settings=settings)

    return ResolvedExecutionRequest(
        query=query,
        action=QueryAction.EXECUTE,
        trace_id=settings.runner.default_trace_id,
        pool_id="",
        user_id=settings.runner.root_user_id,
        database="",
        timeout_seconds=0.0,
    )


def build_item_request(
    option_set: ExecutionOptionSet,
    index: int,
    iteration: int,
    start_time: datetime,
    *,
    settings: Settings,
) -> ResolvedExecutionRequest:
    """Build the request for item ``index`` on loop counter ``iteration``."""

    if not 0 <= index < len(option_set.queries):
        raise IndexError(
            f"Query index {index} is out of range for {len(option_set.queries)} queries",
        )

    query = option_set.queries[index]
    if option_set.use_templates:
        query = replace_token_template(query, settings=settings)
        query = query.replace(settings.templates.query_id_placeholder, str(iteration))

    trace_base = resolve_option(index, option_set.trace_ids, settings.runner.default_trace_id)
    return ResolvedExecutionRequest(
        query=query,
        action=option_set.action_at(index),
        trace_id=f"{trace_base}-{format_timestamp(start_time)}",
        pool_id=resolve_option(index, option_set.pool_ids, ""),
        user_id=resolve_option(index, option_set.user_ids, settings.runner.root_user_id),
        database=resolve_option(index, option_set.databases, ""),
        timeout_seconds=resolve_option(index, option_set.timeouts, 0.0),
    )


def replace_token_template(query: str, *, settings: Settings) -> str:
    """Substitute the credential placeholder from the environment.

    The placeholder is only an error when it is present and the environment
    variable is unset or empty.
    """

    placeholder = settings.templates.token_placeholder
    token = os.getenv(settings.templates.token_variable, "")
    if token:
        return query.replace(placeholder, token)
    if placeholder in query:
        raise TemplateResolutionError(
            f"Failed to replace {placeholder} template, "
            f"please specify {settings.templates.token_variable} environment variable",
        )
    return query


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
