"""Core configuration settings for rollout debugging sessions.

@public

This module provides centralized configuration for Laminar Rollout, handling
the backend endpoint, credentials and local ports. Settings are loaded from
environment variables with .env file support via pydantic-settings.

Environment variables:
    LMNR_PROJECT_API_KEY: Laminar project key used for every backend call
    LMNR_BASE_URL: Laminar API endpoint (default https://api.lmnr.ai)
    LMNR_HTTP_PORT: Explicit HTTP port for the backend
    LMNR_GRPC_PORT: gRPC port handed to the worker for span export
    LMNR_FRONTEND_PORT: Dashboard port when running a local backend
    LMNR_ROLLOUT_CACHE_START_PORT: First port tried by the cache server

Example:
    >>> from laminar_rollout.settings import settings
    >>> print(settings.lmnr_base_url)

Note:
    Settings are loaded once at module import and frozen. The process must be
    restarted to pick up changes to environment variables or the .env file.
"""

import re

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "https://api.lmnr.ai"
DEFAULT_HTTP_PORT = 443
DEFAULT_GRPC_PORT = 8443
DEFAULT_FRONTEND_PORT = 5667
DEFAULT_CACHE_START_PORT = 35667

_PORT_SUFFIX = re.compile(r":(\d{1,5})$")


class Settings(BaseSettings):
    """Configuration for the Laminar backend and the local rollout services.

    @public

    Attributes:
        lmnr_project_api_key: Project API key. Required to open a session.

        lmnr_base_url: Backend URL, with or without an explicit port.

        lmnr_http_port: HTTP port override. When unset, the port embedded in
                        ``lmnr_base_url`` is used, falling back to 443.

        lmnr_grpc_port: gRPC port forwarded to the worker's Laminar client.

        lmnr_frontend_port: Dashboard port used when the backend is local.

        lmnr_rollout_cache_start_port: First port the cache server tries to bind.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    lmnr_project_api_key: str = ""
    lmnr_base_url: str = DEFAULT_BASE_URL
    lmnr_http_port: int | None = None
    lmnr_grpc_port: int = DEFAULT_GRPC_PORT
    lmnr_frontend_port: int | None = None
    lmnr_rollout_cache_start_port: int = DEFAULT_CACHE_START_PORT


def resolve_http_port(base_url: str, port: int | None = None) -> int:
    """Return the explicit port, else the one embedded in ``base_url``, else 443."""
    if port is not None:
        return port
    match = _PORT_SUFFIX.search(base_url.rstrip("/"))
    return int(match.group(1)) if match else DEFAULT_HTTP_PORT


def strip_port(base_url: str) -> str:
    """Drop a trailing slash and any explicit ``:port`` suffix."""
    return _PORT_SUFFIX.sub("", base_url.rstrip("/"))


def resolve_base_http_url(base_url: str, port: int | None = None) -> str:
    """Normalize ``base_url`` to ``scheme://host:port`` without a trailing slash.

    Example:
        >>> resolve_base_http_url("https://api.lmnr.ai/")
        'https://api.lmnr.ai:443'
        >>> resolve_base_http_url("http://localhost:8000", 9000)
        'http://localhost:9000'
    """
    http_port = resolve_http_port(base_url, port)
    return f"{strip_port(base_url)}:{http_port}"


def get_frontend_url(base_url: str | None = None, frontend_port: int | None = None) -> str:
    """Map a backend URL to the dashboard URL shown to the developer."""
    url = base_url or DEFAULT_BASE_URL
    if url == DEFAULT_BASE_URL:
        url = "https://www.laminar.sh"
    url = url.rstrip("/")

    if re.search(r"localhost|127\.0\.0\.1", url):
        match = _PORT_SUFFIX.search(url)
        port = frontend_port or (int(match.group(1)) if match else DEFAULT_FRONTEND_PORT)
        return f"{_PORT_SUFFIX.sub('', url)}:{port}"

    return url


settings = Settings()
"""Global settings instance.

@public

Example:
    >>> from laminar_rollout.settings import settings
    >>> print(f"Backend at {settings.lmnr_base_url}")
"""
