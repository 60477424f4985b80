"""HTTP client services."""

from tollgate.services.http.client import HTTPClientManager, get_http_client, http_client_manager

__all__ = ["HTTPClientManager", "get_http_client", "http_client_manager"]
