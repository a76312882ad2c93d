"""
Detect messages addressed to the agent participant.

Triggers are a closed list of (kind, pattern) pairs so each phrase can be
audited and tested on its own.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

DEFAULT_AGENT_NAME = "stef"
DEFAULT_AGENT_ALIAS = "claude"

GREETINGS = ("hey", "hi", "hello", "yo")


class MentionKind(str, Enum):
    AT_NAME = "at_name"        # "@stef"
    BARE_NAME = "bare_name"    # "stef" as a standalone word
    AT_ALIAS = "at_alias"      # "@claude"
    GREETING = "greeting"      # "hey stef"


@dataclass(frozen=True)
class MentionPattern:
    kind: MentionKind
    pattern: re.Pattern


def build_patterns(agent_name: str = DEFAULT_AGENT_NAME, alias: str = DEFAULT_AGENT_ALIAS) -> list[MentionPattern]:
    name = re.escape(agent_name.lower())
    alias_re = re.escape(alias.lower())
    greetings = "|".join(GREETINGS)
    return [
        MentionPattern(MentionKind.AT_NAME, re.compile(rf"@{name}\b", re.IGNORECASE)),
        MentionPattern(MentionKind.BARE_NAME, re.compile(rf"\b{name}\b", re.IGNORECASE)),
        MentionPattern(MentionKind.AT_ALIAS, re.compile(rf"@{alias_re}\b", re.IGNORECASE)),
        MentionPattern(MentionKind.GREETING, re.compile(rf"\b(?:{greetings})\s+{name}\b", re.IGNORECASE)),
    ]


class MentionDetector:
    def __init__(self, agent_name: str = DEFAULT_AGENT_NAME, alias: str = DEFAULT_AGENT_ALIAS):
        self.patterns = build_patterns(agent_name, alias)

    def find_mention(self, text: Optional[str]) -> Optional[MentionKind]:
        """Return the kind of the first trigger found in text, or None."""
        if not text:
            return None
        for entry in self.patterns:
            if entry.pattern.search(text):
                return entry.kind
        return None

    def is_addressed_to_agent(self, text: Optional[str]) -> bool:
        return self.find_mention(text) is not None


_default_detector = MentionDetector()


def is_addressed_to_agent(text: Optional[str]) -> bool:
    return _default_detector.is_addressed_to_agent(text)


def find_mention(text: Optional[str]) -> Optional[MentionKind]:
    return _default_detector.find_mention(text)
