"""Request id lookup for endpoints and error handlers."""

from __future__ import annotations

from typing import Optional

from starlette.requests import Request

from messaging.obs import logging as obs_logging
from messaging.obs.middleware import REQUEST_ID_ATTR


def get_request_id(request: Optional[Request] = None, default: str = "unknown") -> str:
    """Id stamped by the observability middleware, else the bound log context."""
    if request is not None:
        rid = getattr(request.state, REQUEST_ID_ATTR, None)
        if rid:
            return str(rid)
    return obs_logging.current_request_id() or default
