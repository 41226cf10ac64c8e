"""
Tolerant JSON extraction for model output.

Models wrap JSON in prose, fences, or both. Strategy (in order):
    1. The first fenced code block (```json ... ``` or ``` ... ```).
    2. The first balanced ``{...}`` span that parses.
    3. The raw text verbatim.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")


def extract_json(text: Optional[str]) -> Optional[Any]:
    """
    Return the parsed JSON payload found in *text*, or ``None`` when nothing
    parseable could be found.
    """
    if not text or not text.strip():
        return None

    for strategy, candidate in (
        ("code_block", _extract_from_code_block(text)),
        ("brace_scan", _extract_by_brace_scan(text)),
        ("raw", text.strip()),
    ):
        if candidate is None:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            logger.debug("json_extract_miss | strategy=%s", strategy)

    logger.warning(
        "json_extract_failed | strategy=none_matched | text_len=%d | head=%.200s",
        len(text), text[:200],
    )
    return None


# ---------------------------------------------------------------------------
# Extraction strategies
# ---------------------------------------------------------------------------

def _extract_from_code_block(text: str) -> Optional[str]:
    match = _FENCE_RE.search(text)
    if not match:
        return None
    candidate = match.group(1).strip()
    return candidate or None


def _extract_by_brace_scan(text: str) -> Optional[str]:
    """
    Find the first balanced ``{...}`` block in *text* that parses as JSON.
    Stray braces in the surrounding prose are skipped.

    The text is scanned once. Blocks are then tried outermost first, in
    order of their opening brace; a block that fails to parse is replaced
    by the blocks nested directly inside it.
    """
    roots, children = _balanced_blocks(text)

    pending = list(reversed(roots))
    while pending:
        start, end = pending.pop()
        candidate = text[start : end + 1]
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            pending.extend(reversed(children.get(start, [])))
    return None


def _balanced_blocks(text: str) -> Tuple[List[Tuple[int, int]], Dict[int, List[Tuple[int, int]]]]:
    """
    Single pass over *text* returning ``(roots, children)``.

    ``roots`` are balanced blocks not enclosed by another balanced block (an
    unclosed ``{`` does not count as enclosing). ``children`` maps the start
    of a block to the blocks nested directly inside it. Quotes only open a
    string literal inside a brace, so apostrophes and quotes in prose are
    ignored.
    """
    closed: List[Tuple[int, int, Optional[int]]] = []
    stack: List[int] = []
    in_string = False
    escape = False

    for i, ch in enumerate(text):
        if not stack:
            if ch == "{":
                stack.append(i)
            continue

        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append(i)
        elif ch == "}":
            start = stack.pop()
            closed.append((start, i, stack[-1] if stack else None))

    closed_starts = {start for start, _, _ in closed}
    roots: List[Tuple[int, int]] = []
    children: Dict[int, List[Tuple[int, int]]] = {}
    for start, end, parent in sorted(closed):
        if parent is None or parent not in closed_starts:
            roots.append((start, end))
        else:
            children.setdefault(parent, []).append((start, end))
    return roots, children
