"""
Tests for agent mention detection.
"""

import pytest

from smsbridge.mentions import MentionDetector, MentionKind, find_mention, is_addressed_to_agent


class TestMentionDetected:

    @pytest.mark.parametrize("text", [
        "@stef help",
        "hey stef, question",
        "STEF",
        "Stef",
        "what do you think stef?",
        "@claude can you summarize",
        "ok. Hi Stef!",
    ])
    def test_addressed(self, text):
        assert is_addressed_to_agent(text)

    def test_kind_reported(self):
        assert find_mention("@stef help") is MentionKind.AT_NAME
        assert find_mention("thanks stef") is MentionKind.BARE_NAME
        assert find_mention("@Claude ping") is MentionKind.AT_ALIAS


class TestMentionNotDetected:

    @pytest.mark.parametrize("text", [
        "stefan wrote this",
        "forestef",
        "@stefanie is out today",
        "claude without the at sign",
        "",
        None,
    ])
    def test_not_addressed(self, text):
        assert not is_addressed_to_agent(text)


class TestCustomAgentName:

    def test_configured_name_and_alias(self):
        detector = MentionDetector(agent_name="Ada", alias="helper")
        assert detector.is_addressed_to_agent("hello ada")
        assert detector.is_addressed_to_agent("@helper")
        assert not detector.is_addressed_to_agent("adamant about it")
        assert not detector.is_addressed_to_agent("hey stef")

    def test_name_is_escaped(self):
        detector = MentionDetector(agent_name="r.2", alias="bot")
        assert detector.is_addressed_to_agent("@r.2 status")
        assert not detector.is_addressed_to_agent("rx2 status")

    def test_patterns_are_tagged(self):
        kinds = [entry.kind for entry in MentionDetector().patterns]
        assert kinds == [MentionKind.AT_NAME, MentionKind.BARE_NAME, MentionKind.AT_ALIAS, MentionKind.GREETING]
