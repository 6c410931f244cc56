"""HTML pages for the browser-facing authorize endpoint."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader

_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)

_PROVIDER_LABELS = {
    "google": "Google",
    "github": "GitHub",
    "facebook": "Facebook",
    "apple": "Apple",
}


def social_links(
    providers: List[str], prefix: str, params: Dict[str, str]
) -> List[Dict[str, str]]:
    """One button per enabled provider, carrying the pending authorize request."""
    query = urlencode({k: v for k, v in params.items() if v})
    links = []
    for name in providers:
        url = f"{prefix}/auth/{name}/oauth"
        if query:
            url = f"{url}?{query}"
        links.append({"name": name, "label": _PROVIDER_LABELS.get(name, name.title()), "url": url})
    return links


def authorize_page(
    *,
    action: str,
    params: Dict[str, str],
    client_name: str,
    providers: Optional[List[Dict[str, str]]] = None,
    email: str = "",
    error: str = "",
    two_factor_required: bool = False,
    two_factor_session_id: str = "",
) -> str:
    template = _env.get_template("authorize.jinja2")
    return template.render(
        action=action,
        params=params,
        client_name=client_name,
        providers=providers or [],
        email=email,
        error=error,
        two_factor_required=two_factor_required,
        two_factor_session_id=two_factor_session_id,
    )


__all__ = ["authorize_page", "social_links"]
