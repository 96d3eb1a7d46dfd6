from __future__ import annotations
import logging
from html import escape
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel

from gmail_link.core.config import settings
from gmail_link.deps import get_authorization_flow
from gmail_link.services.authorization import AuthorizationFlow, ConnectResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["google-oauth"])

class AuthURLResp(BaseModel):
    auth_url: str

def _scope_names(scopes: Optional[str]) -> List[str]:
    # comma-separated; empty means the configured default
    if not scopes:
        return list(settings.DEFAULT_SCOPES)
    return [s.strip() for s in scopes.split(",")]

def _oauth_error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "error_description": description})

def _success_page(result: ConnectResult) -> str:
    action = result.action
    email = escape(result.account.email)
    n = result.account_count
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Gmail Connected</title>
</head>
<body>
  <h1>Gmail {action.capitalize()}</h1>
  <p>Successfully {action} as <strong>{email}</strong></p>
  <p>You now have {n} Gmail account{'s' if n != 1 else ''} connected.</p>
  <p>You can now close this window and return to your application.</p>
</body>
</html>
"""

@router.get("/url", response_model=AuthURLResp, summary="Generate Google OAuth consent URL")
def auth_url(
    principal: str = Query(..., min_length=1),
    scopes: Optional[str] = Query(None, description="comma-separated scope names"),
    flow: AuthorizationFlow = Depends(get_authorization_flow),
):
    return {"auth_url": flow.start_authorization(principal, _scope_names(scopes))}

@router.get("/start", summary="Redirect to Google's consent screen")
def start(
    principal: str = Query(..., min_length=1),
    scopes: Optional[str] = Query(None, description="comma-separated scope names"),
    flow: AuthorizationFlow = Depends(get_authorization_flow),
):
    url = flow.start_authorization(principal, _scope_names(scopes))
    return RedirectResponse(url, status_code=302)

@router.get("/callback", summary="OAuth callback to exchange code and store tokens")
async def callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    flow: AuthorizationFlow = Depends(get_authorization_flow),
):
    if error:
        logger.info("google returned oauth error", extra={"oauth_error": error})
        return _oauth_error(error, error_description or "OAuth authorization failed")
    if not code or not state:
        return _oauth_error("invalid_request", "Missing code or state parameter")

    result = await flow.complete_authorization(code, state)
    return HTMLResponse(_success_page(result))
