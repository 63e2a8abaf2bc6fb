"""HTML templates for the browser-facing gateway pages.

Values are HTML-escaped by the render helpers before formatting; the
templates themselves never see raw client input.
"""

from html import escape

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #F7F8FA;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 16px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 450px; border: 1px solid #E3E5E8; }}
        h1 {{ margin: 0 0 8px; color: #1B1D21; font-size: 24px; font-weight: 600; }}
        p {{ color: #60646C; margin: 0 0 24px; }}
        .muted {{ color: #8A8F98; font-size: 13px; }}
"""

CONSENT_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authorize - {client_name}</title>
    <style>
""" + _STYLE + """
        .app-info {{ display: flex; align-items: center; gap: 15px; padding: 20px; background: #F1F3F6;
                    border-radius: 8px; margin: 20px 0; }}
        .app-icon {{ width: 50px; height: 50px; background: #2F6FEB; border-radius: 10px;
                    display: flex; align-items: center; justify-content: center; color: white; font-size: 24px; font-weight: 600; }}
        .app-name {{ font-weight: 600; color: #1B1D21; word-break: break-word; }}
        .scopes {{ margin: 20px 0; }}
        .scope {{ display: flex; align-items: center; gap: 10px; padding: 12px; background: #F1F3F6;
                 border-radius: 8px; margin-bottom: 10px; }}
        .redirect {{ color: #60646C; font-size: 13px; word-break: break-all; margin-bottom: 20px; }}
        .buttons {{ display: flex; gap: 12px; }}
        button {{ flex: 1; padding: 14px; border-radius: 8px; font-size: 15px; font-weight: 600; cursor: pointer; }}
        .allow {{ background: #2F6FEB; color: white; border: none; }}
        .deny {{ background: white; color: #60646C; border: 1px solid #D5D8DD; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorize Access</h1>
        <div class="app-info">
            <div class="app-icon">{client_initial}</div>
            <div>
                <div class="app-name">{client_name}</div>
                <div style="color: #60646C; font-size: 14px;">wants to access your account</div>
            </div>
        </div>
        <form method="POST" action="{form_action}">
            <input type="hidden" name="request" value="{request_blob}">
            <input type="hidden" name="csrf_token" value="{csrf_token}">
            <input type="hidden" name="scopes_presented" value="1">
            <div class="scopes">
{scope_items}
            </div>
            <div class="redirect">You will be returned to {redirect_uri}</div>
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Deny</button>
                <button type="submit" name="action" value="approve" class="allow">Allow</button>
            </div>
        </form>
    </div>
</body>
</html>
"""

SCOPE_ITEM = """                <label class="scope">
                    <input type="checkbox" name="scope" value="{scope}" checked>
                    <span>{scope}</span>
                </label>"""

NO_SCOPES_ITEM = """                <div class="scope"><span>Basic sign-in only</span></div>"""

ERROR_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
""" + _STYLE + """
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{message}</p>
        <div class="muted">Reference: {reference}</div>
    </div>
</body>
</html>
"""

GENERIC_ERROR_MESSAGE = "The sign-in request could not be completed. Please return to the application and try again."


def render_consent_page(
    client_name: str,
    scopes: list[str],
    redirect_uri: str,
    request_blob: str,
    csrf_token: str,
    form_action: str = "/consent",
) -> str:
    items = "\n".join(SCOPE_ITEM.format(scope=escape(s)) for s in scopes) or NO_SCOPES_ITEM
    return CONSENT_PAGE.format(
        client_name=escape(client_name),
        client_initial=escape(client_name[:1].upper() or "?"),
        scope_items=items,
        redirect_uri=escape(redirect_uri),
        request_blob=escape(request_blob),
        csrf_token=escape(csrf_token),
        form_action=escape(form_action),
    )


def render_error_page(reference: str, title: str = "Sign-in failed", message: str = GENERIC_ERROR_MESSAGE) -> str:
    return ERROR_PAGE.format(title=escape(title), message=escape(message), reference=escape(reference))
