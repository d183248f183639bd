"""Shared fixtures: a recording responder and trigger factories."""

from typing import Any, List

import pytest

from switchboard.triggers import (
    Actor,
    InteractiveTrigger,
    Option,
    OptionType,
    Origin,
    Responder,
    TextTrigger,
)


class RecordingResponder(Responder):
    """Responder that keeps everything sent through it."""

    def __init__(self):
        self.replies: List[Any] = []
        self.sent: List[Any] = []
        self.follow_ups: List[Any] = []
        self.reactions: List[str] = []
        self.defers = 0

    async def reply(self, content, **options):
        self.replies.append(content)

    async def send(self, content, **options):
        self.sent.append(content)

    async def follow_up(self, content, **options):
        self.follow_ups.append(content)

    async def defer(self):
        self.defers += 1

    async def react(self, emoji):
        self.reactions.append(emoji)

    @property
    def messages(self) -> List[Any]:
        """Everything the actor would see, in reply order."""
        return self.replies + self.follow_ups


@pytest.fixture
def responder():
    return RecordingResponder()


@pytest.fixture
def make_text():
    """Factory for text triggers. ``guild_id=None`` makes a direct message."""

    def _make(
        content,
        actor_id="100",
        guild_id="g1",
        channel_id="c1",
        nsfw=False,
        permissions=(),
        is_bot=False,
        responder=None,
    ):
        return TextTrigger(
            actor=Actor(id=actor_id, name="tester", is_bot=is_bot, permissions=frozenset(permissions)),
            origin=Origin(channel_id=channel_id, guild_id=guild_id, nsfw=nsfw),
            content=content,
            responder=responder or RecordingResponder(),
        )

    return _make


@pytest.fixture
def make_interaction():
    """Factory for interactive triggers. ``options`` maps name -> value."""

    def _make(
        command_name,
        options=None,
        actor_id="100",
        guild_id="g1",
        channel_id="c1",
        permissions=(),
        responder=None,
    ):
        built = []
        for name, value in (options or {}).items():
            if isinstance(value, bool):
                option_type = OptionType.BOOLEAN
            elif isinstance(value, int):
                option_type = OptionType.INTEGER
            elif isinstance(value, float):
                option_type = OptionType.NUMBER
            else:
                option_type = OptionType.STRING
            built.append(Option(name=name, type=option_type, value=value))
        return InteractiveTrigger(
            actor=Actor(id=actor_id, name="tester", permissions=frozenset(permissions)),
            origin=Origin(channel_id=channel_id, guild_id=guild_id),
            command_name=command_name,
            responder=responder or RecordingResponder(),
            options=built,
        )

    return _make
