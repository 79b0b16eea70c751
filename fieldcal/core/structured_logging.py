"""Structured logging helpers (credential-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    org_id: UUID | str | None = None,
    job_id: UUID | str | None = None,
    action: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict for the ``extra=`` argument.

    Never pass tokens or calendar payloads here.
    """
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if org_id:
        context["org_id"] = str(org_id)
    if job_id:
        context["job_id"] = str(job_id)
    if action:
        context["action"] = action
    if route:
        context["route"] = route
    return context
