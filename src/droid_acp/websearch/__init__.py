"""Optional local proxy that reroutes the droid's web-search calls."""

from .proxy import ProxyStats, WebsearchProxy, parse_http_url, resolve_forward_target

__all__ = ["ProxyStats", "WebsearchProxy", "parse_http_url", "resolve_forward_target"]
