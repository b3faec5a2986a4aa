"""
watch.py: watch rules and the change detector.

A rule such as ``src/**/*.js`` is split into a literal base directory
(``src``) that is watched recursively and a wildcard remainder
(``**/*.js``) that every reported path is checked against.
"""

import logging
import os
import re
from dataclasses import dataclass, field

from watchfiles import Change, awatch


logger = logging.getLogger(__name__)

WILDCARD_CHARS = "*?[{"


class ConfigError(Exception):
    """Fatal startup configuration problem (bad glob, missing directory, ...)."""


# ─────────────────────────────────────────────────────────────────────────────
# GLOB PATTERNS
# ─────────────────────────────────────────────────────────────────────────────

def _is_wildcard(segment):
    return any(c in segment for c in WILDCARD_CHARS)


def split_pattern(pattern):
    """Split a glob into ``(base_directory, remainder)``.

    The base directory is every segment before the first one holding a
    wildcard. Raises ``ConfigError`` if the pattern has no wildcard at all.
    """
    pattern = pattern.replace(os.sep, "/")
    segments = pattern.split("/")
    for i, segment in enumerate(segments):
        if _is_wildcard(segment):
            break
    else:
        raise ConfigError(f"watch pattern has no wildcard segment: {pattern!r}")

    base = "/".join(segments[:i])
    if not base:
        base = "/" if pattern.startswith("/") else "."
    remainder = "/".join(s for s in segments[i:] if s)
    return base, remainder


def _translate_segment(segment):
    """Translate one path segment of a glob into a regex fragment."""
    out = []
    i, n = 0, len(segment)
    while i < n:
        c = segment[i]
        i += 1
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            start = i + 1 if i < n and segment[i] in "!^" else i
            if segment[start:start + 1] == "]":
                start += 1
            end = segment.find("]", start)
            if end < 0:
                out.append(re.escape(c))
                continue
            body = segment[i:end].replace("\\", "\\\\")
            if body[:1] in ("!", "^"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = end + 1
        elif c == "{":
            end = segment.find("}", i)
            if end < 0:
                out.append(re.escape(c))
                continue
            alternatives = segment[i:end].split(",")
            out.append("(?:" + "|".join(_translate_segment(a) for a in alternatives) + ")")
            i = end + 1
        else:
            out.append(re.escape(c))
    return "".join(out)


def compile_pattern(remainder):
    """Compile the wildcard remainder of a glob into a regex.

    ``**`` matches zero or more whole segments, ``*`` and ``?`` never
    cross a ``/``.
    """
    segments = remainder.split("/")
    parts = []
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if segment == "**":
            parts.append(".*" if last else "(?:[^/]+/)*")
        else:
            parts.append(_translate_segment(segment) + ("" if last else "/"))
    try:
        return re.compile("".join(parts))
    except re.error as e:
        raise ConfigError(f"invalid watch pattern {remainder!r}: {e}") from e


# ─────────────────────────────────────────────────────────────────────────────
# WATCH RULES
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WatchRule:
    pattern: str
    command: str = None
    silent: bool = False
    base_dir: str = field(init=False, repr=False)
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        base, remainder = split_pattern(self.pattern)
        object.__setattr__(self, "base_dir", os.path.abspath(base))
        object.__setattr__(self, "_regex", compile_pattern(remainder))

    def matches(self, path):
        """Return True if ``path`` lies under the base directory and fits the glob."""
        rel = os.path.relpath(os.path.abspath(path), self.base_dir)
        if rel == "." or rel == ".." or rel.startswith(".." + os.sep):
            return False
        return self._regex.fullmatch(rel.replace(os.sep, "/")) is not None

    def check(self):
        """Raise ``ConfigError`` unless the base directory can be watched."""
        if not os.path.isdir(self.base_dir):
            raise ConfigError(
                f"base directory of {self.pattern!r} does not exist: {self.base_dir}")
        if not os.access(self.base_dir, os.R_OK | os.X_OK):
            raise ConfigError(f"cannot read base directory {self.base_dir}")


# ─────────────────────────────────────────────────────────────────────────────
# CHANGE DETECTOR
# ─────────────────────────────────────────────────────────────────────────────

async def watch_rule(rule, on_change, stop_event=None):
    """Call ``on_change(rule, path)`` for every matching change under the rule.

    Runs until ``stop_event`` is set or the task is cancelled. Nothing is
    filtered out before the rule's own pattern (not even ``node_modules``
    or editor swap files). Deletions are not reported; a rename shows up as
    the added new name.
    """
    logger.debug("Watching %s for %s", rule.base_dir, rule.pattern)
    async for changes in awatch(rule.base_dir, watch_filter=None, stop_event=stop_event):
        for change, path in sorted(changes, key=lambda c: c[1]):
            if change == Change.deleted:
                continue
            if not rule.matches(path):
                continue
            logger.debug("Changed: %s (%s)", path, rule.pattern)
            on_change(rule, path)
