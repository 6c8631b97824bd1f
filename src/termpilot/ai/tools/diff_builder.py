"""Unified diff previews for confirmation prompts on file-editing tools."""

from __future__ import annotations

import difflib

DEFAULT_CONTEXT_LINES = 3
DEFAULT_MAX_PREVIEW_LINES = 200


def unified_diff_preview(
    original: str,
    updated: str,
    *,
    filename: str | None = None,
    context: int | None = None,
    max_lines: int | None = DEFAULT_MAX_PREVIEW_LINES,
) -> str:
    """Return a unified diff between ``original`` and ``updated`` for display.

    New files (empty ``original``) diff against ``/dev/null``. Long diffs are
    truncated to ``max_lines`` with a trailing marker counting hidden lines.
    """

    if original is None or updated is None:
        raise ValueError("Both original and updated text must be provided")
    source_name = filename.strip() if isinstance(filename, str) and filename.strip() else "file"
    context_lines = DEFAULT_CONTEXT_LINES if context is None else max(0, int(context))
    from_label = "/dev/null" if not original else f"a/{source_name}"
    diff = list(
        difflib.unified_diff(
            original.splitlines(),
            updated.splitlines(),
            fromfile=from_label,
            tofile=f"b/{source_name}",
            lineterm="",
            n=context_lines,
        )
    )
    if not diff:
        return f"(no changes to {source_name})"
    if max_lines is not None and len(diff) > max_lines:
        hidden = len(diff) - max_lines
        diff = diff[:max_lines]
        diff.append(f"... ({hidden} more line(s))")
    return "\n".join(diff)


def diff_stats(diff_text: str) -> tuple[int, int]:
    """Count added and removed lines in a unified diff."""

    additions = deletions = 0
    for line in diff_text.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return additions, deletions


__all__ = ["DEFAULT_CONTEXT_LINES", "diff_stats", "unified_diff_preview"]
