"""Text and URL helpers shared by connectors."""

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup

TRACKING_PARAM_PREFIXES = (
    "utm_",
    "ga_",
)
TRACKING_PARAM_EXACT = {
    "tsrc",
    "cmpid",
    "ncid",
    "ocid",
    "fbclid",
    "gclid",
}


def canonicalize_url(url: str) -> str:
    """Normalize a URL so the same article always maps to the same string.

    Lowercases scheme and host, drops default ports, fragments, trailing
    slashes and tracking parameters, and sorts the remaining query.
    """
    if not url:
        return ""

    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower() or "https"
    netloc = parsed.netloc.lower()
    if netloc.endswith(":80"):
        netloc = netloc[:-3]
    if netloc.endswith(":443"):
        netloc = netloc[:-4]

    query_items = []
    for key, value in parse_qsl(parsed.query, keep_blank_values=False):
        key_lower = key.lower()
        if key_lower in TRACKING_PARAM_EXACT:
            continue
        if any(key_lower.startswith(prefix) for prefix in TRACKING_PARAM_PREFIXES):
            continue
        query_items.append((key, value))

    query = urlencode(sorted(query_items), doseq=True)
    path = parsed.path.rstrip("/") or "/"

    return urlunparse((scheme, netloc, path, "", query, ""))


def html_to_text(value: str | None) -> str:
    """Strip markup and collapse whitespace."""
    if not value:
        return ""
    if "<" in value and ">" in value:
        value = BeautifulSoup(value, "html.parser").get_text(separator=" ")
    return re.sub(r"\s+", " ", value).strip()


def make_preview(content: str | None, length: int) -> str | None:
    """Short plain-text preview: first ``length`` characters plus an ellipsis."""
    text = html_to_text(content)
    if not text:
        return None
    if len(text) > length:
        return text[:length].rstrip() + "..."
    return text
