"""
Deterministic cache keys for request identities.
"""

import hashlib
from typing import Iterable, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl

QueryArg = Union[None, str, Mapping[str, str], Sequence[Tuple[str, str]]]


class KeyCodec:
    """Builds ``<namespace>:<route_class>:<digest>`` keys.

    Query parameters are order-insensitive, so ``?a=1&b=2`` and ``?b=2&a=1``
    share a key. Repeated parameters keep their relative order.
    """

    def __init__(self, namespace: str = "cache"):
        self.namespace = namespace

    def _make_key(self, route_class: str, parts: Iterable[str]) -> str:
        key_string = ":".join(parts)
        digest = hashlib.md5(key_string.encode("utf-8")).hexdigest()
        return f"{self.namespace}:{route_class}:{digest}"

    @staticmethod
    def _query_pairs(query: QueryArg) -> Sequence[Tuple[str, str]]:
        if not query:
            return []
        if isinstance(query, str):
            pairs = parse_qsl(query.lstrip("?"), keep_blank_values=True)
        elif isinstance(query, Mapping):
            pairs = [(str(k), str(v)) for k, v in query.items()]
        else:
            pairs = [(str(k), str(v)) for k, v in query]
        return sorted(pairs, key=lambda pair: pair[0])

    def for_request(self, method: str, path: str, query: QueryArg = None, route_class: str = "default") -> str:
        """Key for an HTTP request."""
        encoded_query = "&".join(f"{k}={v}" for k, v in self._query_pairs(query))
        return self._make_key(route_class, [method.upper(), path, encoded_query])

    def for_identity(self, *parts: object, route_class: Optional[str] = None) -> str:
        """Key for any caller-supplied identity."""
        return self._make_key(route_class or "custom", [str(part) for part in parts])
