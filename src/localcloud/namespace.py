"""Tenant namespace resolution from the client identification header.

Clients select an isolated namespace by appending a marker token to their
User-Agent, e.g. ``aws-cli/2.15 Python/3.11 custom-team-a`` selects
``team-a``. Anything else lands in the default namespace.
"""

from __future__ import annotations

from .config import DEFAULT_NAMESPACE, DEFAULT_NAMESPACE_MARKER


def resolve_namespace(
    user_agent: str | None,
    marker: str = DEFAULT_NAMESPACE_MARKER,
    default: str = DEFAULT_NAMESPACE,
) -> str:
    """Derive the namespace for a request.

    Only the last whitespace-delimited token of the header is considered. It
    selects a namespace when it starts with ``marker`` and has a non-empty
    remainder. Never raises.

    Args:
        user_agent: Raw User-Agent header value, possibly absent.
        marker: Token prefix that selects a namespace.
        default: Namespace returned when no marker token is present.

    Returns:
        The namespace name.
    """
    if not user_agent:
        return default

    tokens = user_agent.split()
    if not tokens:
        return default

    last = tokens[-1]
    if last.startswith(marker) and len(last) > len(marker):
        return last[len(marker):]
    return default
