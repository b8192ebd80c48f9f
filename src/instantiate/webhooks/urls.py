"""Clone URL rewriting applied to every normalized event."""

import re
from typing import Optional
from urllib.parse import quote, urlparse, urlunparse

_HAS_CREDENTIALS = re.compile(r"^https?://[^/@]+@")
LOCALHOST = "localhost"


def inject_credentials_if_missing(url: str, username: Optional[str], token: Optional[str]) -> str:
    """
    Embed username:token in an http(s) clone URL.

    URLs that already carry credentials, other schemes, and missing
    credentials leave the URL untouched, so applying this twice is harmless.
    """
    if not username or not token:
        return url
    if _HAS_CREDENTIALS.match(url):
        return url

    credentials = f"{quote(username, safe='')}:{quote(token, safe='')}"
    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            return f"{scheme}{credentials}@{url[len(scheme):]}"
    return url


def rewrite_localhost(url: str, alias: str) -> str:
    """Point localhost URLs at a hostname reachable from inside containers."""
    parsed = urlparse(url)
    if parsed.hostname != LOCALHOST:
        return url
    userinfo, at, host_port = parsed.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{alias}{host_port[len(LOCALHOST):]}"
    return urlunparse(parsed._replace(netloc=netloc))


def gitlab_api_url(project_url: str) -> str:
    """REST API root of the GitLab instance hosting project_url."""
    parsed = urlparse(project_url)
    if not parsed.scheme or not parsed.hostname:
        raise ValueError(f"Invalid GitLab project URL: {project_url}")
    host = parsed.hostname
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return f"{parsed.scheme}://{host}/api/v4"
