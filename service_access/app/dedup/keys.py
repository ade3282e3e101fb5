"""
Canonical request keys shared by the deduplicator and the response cache.
"""

import json
from typing import Any, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

Params = Union[Mapping[str, Any], Iterable[Tuple[str, Any]], None]


def normalize_params(params: Params) -> Tuple[Tuple[str, str], ...]:
    """Sorted (name, value) pairs with values stringified.

    List values expand to repeated pairs; None values are dropped, so
    ``?a=1&b=`` style optional parameters do not split the key space.
    """
    if params is None:
        return ()

    items = params.items() if isinstance(params, Mapping) else params
    pairs = []
    for name, value in items:
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((str(name), str(v)) for v in value if v is not None)
        else:
            pairs.append((str(name), str(value)))
    return tuple(sorted(pairs))


def query_string(params: Params) -> str:
    return urlencode(normalize_params(params))


def canonical_request_key(
    method: str,
    route: str,
    params: Params = None,
    user_id: Optional[str] = None,
) -> str:
    """Key identifying a request for single-flight collapsing.

    ``user_id`` is included only for caller-scoped routes.
    """
    return json.dumps(
        [method.upper(), route, normalize_params(params), user_id],
        separators=(",", ":"),
    )
