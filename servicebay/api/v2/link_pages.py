"""Plain HTML pages shown after clicking an emailed approve/reject link."""

from html import escape

from fastapi.responses import HTMLResponse


def link_page(title: str, message: str, ok: bool = True) -> HTMLResponse:
    color = "#16a34a" if ok else "#6b7280"
    html = f"""
<!doctype html>
<meta charset='utf-8'>
<title>{escape(title)}</title>
<div style="font-family: sans-serif; max-width: 480px; margin: 80px auto; text-align: center;">
  <h2 style="color: {color};">{escape(title)}</h2>
  <p>{escape(message)}</p>
  <p>You can close this window.</p>
</div>
"""
    return HTMLResponse(content=html)


def already_processed_page() -> HTMLResponse:
    """Shown for stale or double-clicked links; never an error page."""
    return link_page(
        "Already processed",
        "This link is no longer valid. The request may have already been processed.",
        ok=False,
    )
