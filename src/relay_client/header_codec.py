"""Header-name codecs for the relay channel.

Two independent passes share the one textual channel:

  1. Escaping: a real header whose name looks like a protocol name
     (``--x`` or ``3-x``) travels as ``--<name>``.
  2. Positional dedup: a repeated header travels as ``0-name``,
     ``1-name``, ... so runtimes that fold duplicate names cannot merge
     the values. ``set-cookie`` is always positional.

The relay encodes with escape-then-dedup; the client decodes with
group-then-unescape. Each pass is usable and testable on its own.
"""

from __future__ import annotations

from collections.abc import Iterable

from .protocol import POSITIONAL_RE, STATUS, SYSTEM_PREFIX

HeaderPairs = list[tuple[str, str]]

ALWAYS_POSITIONAL = frozenset({'set-cookie'})


# ── Pass 1: escaping ──────────────────────────────────────────────────


def needs_escape(name: str) -> bool:
    return name.startswith(SYSTEM_PREFIX) or POSITIONAL_RE.match(name) is not None


def escape_name(name: str) -> str:
    name = name.lower()
    return SYSTEM_PREFIX + name if needs_escape(name) else name


def unescape_name(name: str) -> str:
    """Strip one escape marker, if present."""
    if name.startswith(SYSTEM_PREFIX):
        return name[len(SYSTEM_PREFIX):]
    return name


def escape_names(pairs: Iterable[tuple[str, str]]) -> HeaderPairs:
    return [(escape_name(name), value) for name, value in pairs]


# ── Pass 2: positional dedup ──────────────────────────────────────────


def encode_duplicates(
    pairs: Iterable[tuple[str, str]],
    always: frozenset[str] = ALWAYS_POSITIONAL,
) -> HeaderPairs:
    """Prefix every occurrence of a repeated name with its position."""
    pairs = [(name.lower(), value) for name, value in pairs]
    counts: dict[str, int] = {}
    for name, _ in pairs:
        counts[name] = counts.get(name, 0) + 1

    seen: dict[str, int] = {}
    encoded: HeaderPairs = []
    for name, value in pairs:
        if counts[name] > 1 or name in always:
            index = seen.get(name, 0)
            seen[name] = index + 1
            encoded.append((f'{index}-{name}', value))
        else:
            encoded.append((name, value))
    return encoded


def positional_name(name: str) -> tuple[int, str] | None:
    """``'3-link'`` -> ``(3, 'link')``; None for a plain name."""
    match = POSITIONAL_RE.match(name)
    if match is None:
        return None
    index, bare = match.groups()
    return int(index), bare


def group_positional(pairs: Iterable[tuple[str, str]]) -> dict[str, list[str]]:
    """Collect ``N-name`` fields into ``{name: [values ordered by N]}``.

    Plain fields are ignored. Names keep their order of first appearance.
    """
    groups: dict[str, list[tuple[int, str]]] = {}
    for name, value in pairs:
        parsed = positional_name(name)
        if parsed is not None:
            index, bare = parsed
            groups.setdefault(bare, []).append((index, value))
    return {
        bare: [value for _, value in sorted(entries, key=lambda entry: entry[0])]
        for bare, entries in groups.items()
    }


# ── Relay side ────────────────────────────────────────────────────────


def encode_response_headers(
    status: int,
    pairs: Iterable[tuple[str, str]],
) -> HeaderPairs:
    """Encode a tunneled response the way a relay node does."""
    return [(STATUS, str(status)), *encode_duplicates(escape_names(pairs))]
