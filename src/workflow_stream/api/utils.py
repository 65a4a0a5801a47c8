from __future__ import annotations


def sse_comment(text: str) -> str:
    # SSE "comment" lines start with ":" and are ignored by EventSource clients.
    t = str(text or "").replace("\n", " ").replace("\r", " ")
    return f": {t}\n\n"
