"""
Authentication routes for OIDC login and callback handling.

This module exposes the authorization code flow over HTTP. The protocol
work is done by the Authenticator stored on app.state; these handlers only
deal with the CSRF state cookie and with turning results into responses.
"""

import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from sentinel.app.auth.driver import Authenticator
from sentinel.app.auth.state import states_match
from sentinel.app.config import Settings
from sentinel.app.errors import (
    ExchangeFailedError,
    MissingIdentityTokenError,
    VerificationFailedError,
)
from sentinel.app.models import LoginResult

logger = logging.getLogger("sentinel.auth.routes")


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    authenticator: Authenticator = Depends(get_authenticator),
    settings: Settings = Depends(get_app_settings),
):
    """
    Start the OIDC login flow.

    Issues a fresh state value, stores it in an HttpOnly cookie and
    redirects to the provider's authorization endpoint.
    """
    redirect = authenticator.login_redirect()

    response = RedirectResponse(url=redirect.url, status_code=302)
    response.set_cookie(
        settings.STATE_COOKIE_NAME,
        redirect.state,
        max_age=settings.STATE_COOKIE_MAX_AGE,
        path="/",
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )
    return response


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback", response_class=HTMLResponse)
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    authenticator: Authenticator = Depends(get_authenticator),
    settings: Settings = Depends(get_app_settings),
):
    """
    Handle the provider redirect.

    1. Reject provider errors and missing parameters
    2. Check state against the cookie (single use; the cookie is cleared)
    3. Exchange the code and verify the ID token
    4. Render the result
    """
    expected_state = request.cookies.get(settings.STATE_COOKIE_NAME)

    if error:
        response = _render_error_page(
            title="Authentication Failed",
            message=f"Unable to authenticate: {error_description or error}",
        )
    elif not code or not state:
        response = _render_error_page(
            title="Invalid Request",
            message="Missing required parameters (code or state)",
        )
    elif not states_match(state, expected_state):
        logger.warning("Rejected callback with invalid state", extra={"has_cookie": expected_state is not None})
        response = _render_error_page(
            title="Security Error",
            message="Invalid state parameter. This may be a CSRF attack or an expired login.",
        )
    else:
        response = await _complete_login(authenticator, code, settings.LOGIN_TIMEOUT)

    response.delete_cookie(settings.STATE_COOKIE_NAME, path="/")
    return response


async def _complete_login(authenticator: Authenticator, code: str, timeout: float) -> HTMLResponse:
    try:
        result = await authenticator.handle_callback(code, timeout=timeout)
    except VerificationFailedError as e:
        logger.warning(f"ID token verification failed: {e}")
        return _render_error_page(
            title="Token Verification Failed",
            message="Unable to verify your identity token.",
            status_code=401,
        )
    except MissingIdentityTokenError as e:
        logger.warning(f"Token response without ID token: {e}")
        return _render_error_page(
            title="Authentication Error",
            message="No ID token received from identity provider",
        )
    except ExchangeFailedError as e:
        logger.warning(f"Authorization code exchange failed: {e}")
        return _render_error_page(
            title="Authentication Error",
            message="Unable to complete sign-in with the identity provider.",
        )

    return _render_success_page(result)


# =============================================================================
# HTML Response Templates
# =============================================================================

_PAGE_STYLE = """
            * { margin: 0; padding: 0; box-sizing: border-box; }
            body {
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: #f5f5f5;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                padding: 20px;
            }
            .container {
                background: white;
                border-radius: 8px;
                padding: 40px;
                max-width: 500px;
                width: 100%;
                box-shadow: 0 2px 10px rgba(0,0,0,0.1);
                text-align: center;
            }
            h1 { color: #1f2937; font-size: 24px; margin-bottom: 16px; }
            .message { color: #6b7280; font-size: 16px; line-height: 1.6; margin-bottom: 24px; }
            .button {
                display: inline-block;
                background: #667eea;
                color: white;
                padding: 12px 28px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }
"""


def _render_page(title: str, body: str, status_code: int) -> HTMLResponse:
    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{html.escape(title)}</title>
        <style>{_PAGE_STYLE}</style>
    </head>
    <body>
        <div class="container">
            {body}
        </div>
    </body>
    </html>
    """
    return HTMLResponse(content=html_content, status_code=status_code)


def _render_success_page(result: LoginResult) -> HTMLResponse:
    """
    Render the signed-in page from verified claims.

    Raw tokens are never written into the page.
    """
    email_line = f'<p class="message">{html.escape(result.email)}</p>' if result.email else ""
    body = f"""
            <h1>Login Successful</h1>
            <p class="message">Welcome, {html.escape(result.display_name)}</p>
            {email_line}
    """
    return _render_page("Login Successful", body, status_code=200)


def _render_error_page(
    title: str,
    message: str,
    status_code: int = 400,
) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no secrets or token contents)
        status_code: HTTP status code
    """
    body = f"""
            <h1>{html.escape(title)}</h1>
            <p class="message">{html.escape(message)}</p>
            <a href="/auth/login" class="button">Try Again</a>
    """
    return _render_page(title, body, status_code=status_code)
