from __future__ import annotations

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"


def contains_completion(text: str) -> bool:
    """Report whether the agent signalled completion.

    The match is an exact, case-sensitive substring test against
    ``COMPLETION_SENTINEL``; no whitespace or case normalization is applied.
    """
    return COMPLETION_SENTINEL in text
