"""OAuth router — consent redirect and callback for linking calendar accounts."""

from __future__ import annotations

import logging
from html import escape

from fastapi import APIRouter, Query
from fastapi.responses import HTMLResponse, RedirectResponse

from calcast.api.auth import decode_scope
from calcast.core.errors import CalcastError
from calcast.core.services import get_services
from calcast.models.workspace import WorkspaceKind

router = APIRouter()
logger = logging.getLogger(__name__)


def _page(title: str, body: str, status_code: int) -> HTMLResponse:
    color = "#4caf50" if status_code < 400 else "#d32f2f"
    html = (
        '<html><body style="font-family: Arial, sans-serif; padding: 40px; text-align: center;">'
        f'<h1 style="color: {color};">{escape(title)}</h1><p>{body}</p></body></html>'
    )
    return HTMLResponse(html, status_code=status_code)


@router.get("/start")
async def oauth_start(
    token: str = Query(..., description="Signed link token for the workspace and actor."),
    kind: WorkspaceKind = Query(WorkspaceKind.PRIVATE, description="Kind of chat being linked."),
):
    """Redirect the user to the provider consent screen."""
    scope = decode_scope(token)
    url = await get_services().linker.start(scope, kind)
    return RedirectResponse(url, status_code=302)


@router.get("/callback", response_class=HTMLResponse)
async def oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
):
    """Complete the link: verify state, exchange the code, store the connection."""
    if error:
        return _page(
            "Authorization Failed",
            f"You denied access or an error occurred: <strong>{escape(error)}</strong>",
            400,
        )
    if not code or not state:
        return _page("Invalid Request", "Missing authorization code or state parameter.", 400)

    try:
        result = await get_services().linker.complete(code, state)
    except CalcastError as exc:
        logger.warning("OAuth callback rejected: %s", exc)
        return _page("Authorization Failed", f"Error: <strong>{escape(str(exc))}</strong>", 400)

    return _page(
        "Success!",
        "Your calendar has been linked to this chat. "
        f"Account: <strong>{escape(result.display_identifier)}</strong>",
        200,
    )
