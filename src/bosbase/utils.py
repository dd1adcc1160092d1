"""Transport primitives — URL, query and body helpers.

Pure functions, no state. Shared by the REST client and both realtime
managers.
"""

import json
from typing import Any, Mapping, Optional
from urllib.parse import quote, urlencode


def encode_path_segment(value: Any) -> str:
    """Percent-encode a single URL path segment (slashes included)."""
    return quote(str(value), safe="")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_query_params(
    params: Optional[Mapping[str, Any]],
) -> list[tuple[str, str]]:
    """Flatten a query mapping into (key, value) pairs.

    None values are skipped, list/tuple values expand into repeated keys.
    """
    pairs: list[tuple[str, str]] = []
    if not params:
        return pairs
    for key, raw in params.items():
        if raw is None:
            continue
        if isinstance(raw, (list, tuple)):
            pairs.extend((key, _query_value(item)) for item in raw if item is not None)
        else:
            pairs.append((key, _query_value(raw)))
    return pairs


def build_url(
    base_url: str,
    path: str,
    query: Optional[Mapping[str, Any]] = None,
) -> str:
    """Resolve `path` against `base_url` and attach the encoded query."""
    base = base_url if base_url.endswith("/") else base_url + "/"
    full = base + path.lstrip("/")
    pairs = normalize_query_params(query)
    if pairs:
        full += ("&" if "?" in full else "?") + urlencode(pairs)
    return full


def build_relative_url(path: str, query: Optional[Mapping[str, Any]] = None) -> str:
    """Root-relative `path` plus encoded query, as batch sub-requests expect."""
    url = "/" + path.lstrip("/")
    pairs = normalize_query_params(query)
    if pairs:
        url += "?" + urlencode(pairs)
    return url


def to_serializable(value: Any) -> Any:
    """Recursively drop None entries from dicts so JSON bodies stay compact."""
    if isinstance(value, Mapping):
        return {
            str(key): to_serializable(item)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        return [to_serializable(item) for item in value]
    return value


def build_subscription_key(
    topic: str,
    query: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> str:
    """Build the realtime subscription key for a topic and its options.

    Learn: the server treats `topic?options=<json>` as a distinct
    registration, so the same topic subscribed with different query or
    header options gets a separate key. JSON keys are sorted so equal
    options always serialize to the same key.
    """
    options: dict[str, Any] = {}
    if query:
        options["query"] = dict(query)
    if headers:
        options["headers"] = dict(headers)
    if not options:
        return topic
    serialized = json.dumps(options, separators=(",", ":"), sort_keys=True)
    suffix = "options=" + quote(serialized, safe="")
    return topic + ("&" if "?" in topic else "?") + suffix


def matches_topic(key: str, topic: str) -> bool:
    """True when `key` is `topic` itself or `topic` with an options suffix."""
    return key == topic or key.startswith(topic + "?")

