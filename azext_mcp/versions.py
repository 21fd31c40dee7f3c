"""Semantic version parsing and comparison for extension upgrades.

Extension-manager records carry ``version`` (installed) and
``latestVersion`` strings.  A provider is upgraded before launch only when
the installed version is strictly older than the latest one.

This module is **self-contained**: standard library only, no intra-package
imports.

Public API
----------
- ``parse_version(s)``       -- ``"1.4.0-beta.2"`` -> comparable key
- ``compare_versions(a, b)`` -- ``-1`` / ``0`` / ``1``
- ``is_older(current, latest)``
"""

from __future__ import annotations

import re

_VERSION_RE = re.compile(
    r"^v?(?P<core>\d+(?:\.\d+)*)"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+[0-9A-Za-z.-]+)?$"
)


def parse_version(s: str) -> tuple:
    """Parse a version string into a tuple that sorts by semver precedence.

    Returns ``(core, pre_release_key)``.  The numeric core is padded to
    three components.  A pre-release sorts
    before the matching release; pre-release identifiers compare numerically
    when numeric and lexically otherwise, numeric ones first.  Build
    metadata is ignored.

    Raises ``ValueError`` on unparseable input.

    >>> parse_version("1.45.3") < parse_version("1.46.0")
    True
    >>> parse_version("2.0.0-beta.1") < parse_version("2.0.0")
    True
    """
    m = _VERSION_RE.match((s or "").strip())
    if not m:
        raise ValueError(f"Cannot parse version: {s!r}")

    core = tuple(int(p) for p in m.group("core").split("."))
    while len(core) < 3:
        core = core + (0,)

    pre = m.group("pre")
    if not pre:
        return core, (1,)

    identifiers = []
    for ident in pre.split("."):
        if ident.isdigit():
            identifiers.append((0, int(ident), ""))
        else:
            identifiers.append((1, 0, ident))
    return core, (0, tuple(identifiers))


def compare_versions(a: str, b: str) -> int:
    """Return ``-1`` if *a* < *b*, ``0`` if equal, ``1`` if *a* > *b*."""
    ka, kb = parse_version(a), parse_version(b)
    if ka < kb:
        return -1
    if ka > kb:
        return 1
    return 0


def is_older(current: str, latest: str) -> bool:
    """Return *True* when *current* is strictly older than *latest*.

    Empty or unparseable versions never trigger an upgrade.
    """
    if not current or not latest:
        return False
    try:
        return compare_versions(current, latest) < 0
    except ValueError:
        return False
