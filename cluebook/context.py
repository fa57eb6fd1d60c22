"""Per-request view of the signed-in user.

Handlers read the context once and pass it to the services they call instead
of reaching for session globals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import g
from flask_login import current_user


@dataclass(frozen=True, slots=True)
class RequestContext:
    user_id: Optional[int] = None
    username: Optional[str] = None
    signed_in: bool = False
    is_admin: bool = False


ANONYMOUS = RequestContext()


def build_request_context() -> RequestContext:
    if not current_user.is_authenticated:
        return ANONYMOUS
    return RequestContext(
        user_id=int(current_user.id),
        username=current_user.username,
        signed_in=True,
        is_admin=bool(current_user.is_admin),
    )


def current_context() -> RequestContext:
    ctx = g.get("request_ctx")
    if ctx is None:
        ctx = build_request_context()
        g.request_ctx = ctx
    return ctx
