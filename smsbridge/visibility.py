"""
Message visibility: which version of a message a viewer is shown.

A conversation's mode decides whether the intermediary's processed text
replaces, accompanies or is ignored in favour of what the sender typed.
"""

from enum import Enum
from typing import Iterable, Optional


class ConversationMode(str, Enum):
    DIRECT = "direct"
    ASSISTED = "assisted"
    ANONYMOUS = "anonymous"


SUMMARY_LABEL = "AI Summary"


def compose_assisted(raw: str, processed: str) -> str:
    """Original text followed by the labelled mediator summary."""
    return f"{raw}\n\n{SUMMARY_LABEL}: {processed}"


def resolve_content(
    raw: str,
    processed: Optional[str],
    raw_visible_to: Optional[Iterable[str]],
    viewer_id: Optional[str],
    mode,
) -> str:
    """
    Pick the single content string a viewer sees.

    Args:
        raw: What the sender typed
        processed: Intermediary-transformed text, None until processing completes
        raw_visible_to: User ids allowed to see raw in anonymous mode
        viewer_id: Viewing user, None for an unauthenticated caller
        mode: ConversationMode or its string value

    Returns:
        The displayed content
    """
    mode = ConversationMode(mode)

    if mode is ConversationMode.DIRECT:
        return raw

    if mode is ConversationMode.ASSISTED:
        if processed is not None:
            return compose_assisted(raw, processed)
        return raw

    # Anonymous: privileged viewers see raw, everyone else the processed text.
    # Until processing completes raw is the only content there is.
    if viewer_id is not None and raw_visible_to and viewer_id in raw_visible_to:
        return raw
    if processed is not None:
        return processed
    return raw


def resolve(message, viewer_id: Optional[str], mode) -> str:
    """Resolve the displayed content of a Message row for a viewer."""
    return resolve_content(
        raw=message.content_raw,
        processed=message.content_processed,
        raw_visible_to=message.raw_visible_to,
        viewer_id=viewer_id,
        mode=mode,
    )
