"""Response helpers shared by the browser-facing endpoints."""

from typing import Optional
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import HTMLResponse, RedirectResponse

from gateway.templates import render_error_page

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def redirect_to(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=302, headers=NO_STORE_HEADERS)


def client_redirect(redirect_uri: str, params: dict) -> RedirectResponse:
    """Redirect to a client URI, keeping any query it already has."""
    params = {k: v for k, v in params.items() if v is not None}
    separator = "&" if "?" in redirect_uri else "?"
    return redirect_to(f"{redirect_uri}{separator}{urlencode(params)}")


def client_error_redirect(
    redirect_uri: str,
    error: str,
    state: Optional[str],
    description: Optional[str] = None,
) -> RedirectResponse:
    return client_redirect(
        redirect_uri,
        {"error": error, "error_description": description, "state": state},
    )


def error_page(request: Request, status_code: int = 400, **kwargs) -> HTMLResponse:
    """Generic user-facing failure page carrying only the request reference."""
    reference = getattr(request.state, "request_id", "-")
    return HTMLResponse(render_error_page(reference, **kwargs), status_code=status_code, headers=NO_STORE_HEADERS)
