"""Tests for the CommandDispatcher pipeline."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from switchboard.commands.base import Command, OverloadPattern
from switchboard.commands.dispatcher import CommandDispatcher, Notices, Outcome
from switchboard.commands.overrides import GuildOverrideTable
from switchboard.context import normalize
from switchboard.cooldown import CooldownLedger


class FakeClock:
    def __init__(self, now=500.0):
        self.now = now

    def __call__(self):
        return self.now


def _dispatcher(**kwargs):
    kwargs.setdefault("ledger", CooldownLedger(clock=FakeClock()))
    return CommandDispatcher(**kwargs)


def _ctx(make_text, content="!cmd", responder=None, **kwargs):
    return normalize(make_text(content, responder=responder, **kwargs), "!")


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_handler_runs_with_context(self, make_text, responder):
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler)
        ctx = _ctx(make_text, responder=responder)
        result = await _dispatcher().dispatch(cmd, ctx)
        handler.assert_awaited_once_with(ctx)
        assert result.outcome == Outcome.COMPLETED
        assert result.ran_handler is True
        assert responder.messages == []

    @pytest.mark.asyncio
    async def test_sync_handler_supported(self, make_text):
        seen = []
        cmd = Command(name="cmd", handler=lambda ctx: seen.append(ctx.command_name))
        await _dispatcher().dispatch(cmd, _ctx(make_text))
        assert seen == ["cmd"]

    @pytest.mark.asyncio
    async def test_before_and_after_hooks_wrap_handler(self, make_text):
        order = []
        cmd = Command(
            name="cmd",
            handler=lambda ctx: order.append("handler"),
            before=lambda ctx: order.append("before"),
            after=lambda ctx: order.append("after"),
        )
        await _dispatcher().dispatch(cmd, _ctx(make_text))
        assert order == ["before", "handler", "after"]


class TestGuards:

    @pytest.mark.asyncio
    async def test_guild_only_rejects_direct(self, make_text, responder):
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, guild_only=True)
        ctx = _ctx(make_text, responder=responder, guild_id=None)
        result = await _dispatcher().dispatch(cmd, ctx)
        handler.assert_not_awaited()
        assert result.outcome == Outcome.REJECTED
        assert result.detail == "guild_only"
        assert responder.replies == [Notices().guild_only]

    @pytest.mark.asyncio
    async def test_direct_only_rejects_guild(self, make_text, responder):
        cmd = Command(name="cmd", handler=AsyncMock(), direct_only=True)
        result = await _dispatcher().dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.detail == "direct_only"
        assert len(responder.replies) == 1

    @pytest.mark.asyncio
    async def test_restricted_only(self, make_text, responder):
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, restricted_only=True)
        result = await _dispatcher().dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.detail == "restricted_only"
        await _dispatcher().dispatch(cmd, _ctx(make_text, nsfw=True))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_owner_only(self, make_text, responder):
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, owner_only=True)
        dispatcher = _dispatcher(owner_ids=["1"])
        result = await dispatcher.dispatch(cmd, _ctx(make_text, responder=responder, actor_id="2"))
        assert result.detail == "owner_only"
        assert responder.replies == ["❌ This command is only for bot developers."]
        await dispatcher.dispatch(cmd, _ctx(make_text, actor_id="1"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_permissions(self, make_text, responder):
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, permissions=["ban"])
        result = await _dispatcher().dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.detail == "missing_permissions"
        await _dispatcher().dispatch(cmd, _ctx(make_text, permissions=("ban",)))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_guard_order_origin_first(self, make_text, responder):
        cmd = Command(
            name="cmd",
            handler=AsyncMock(),
            guild_only=True,
            restricted_only=True,
            owner_only=True,
            permissions=["ban"],
        )
        result = await _dispatcher().dispatch(
            cmd, _ctx(make_text, responder=responder, guild_id=None)
        )
        assert result.detail == "guild_only"
        assert len(responder.replies) == 1

    @pytest.mark.asyncio
    async def test_guard_order_restricted_before_owner(self, make_text):
        cmd = Command(name="cmd", handler=AsyncMock(), restricted_only=True, owner_only=True)
        result = await _dispatcher().dispatch(cmd, _ctx(make_text))
        assert result.detail == "restricted_only"

    @pytest.mark.asyncio
    async def test_slash_only_rejects_text(self, make_text, make_interaction, responder):
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, is_slash=True, slash_only=True)
        result = await _dispatcher().dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.detail == "slash_only"
        assert "slash command" in responder.replies[0]
        await _dispatcher().dispatch(cmd, normalize(make_interaction("cmd")))
        handler.assert_awaited_once()


class TestCooldown:

    @pytest.mark.asyncio
    async def test_second_call_in_window_gets_please_wait(self, make_text, responder):
        clock = FakeClock()
        dispatcher = _dispatcher(ledger=CooldownLedger(clock=clock))
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, cooldown=5)

        first = await dispatcher.dispatch(cmd, _ctx(make_text))
        clock.now += 2
        second = await dispatcher.dispatch(cmd, _ctx(make_text, responder=responder))

        assert first.outcome == Outcome.COMPLETED
        assert second.outcome == Outcome.COOLDOWN
        assert 0 < second.detail <= 5
        assert responder.replies == [f"⏳ Please wait {second.detail}s before using `cmd` again."]
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_guard_failure_leaves_ledger_untouched(self, make_text):
        clock = FakeClock()
        ledger = CooldownLedger(clock=clock)
        # Expired-but-present entry
        ledger.check_and_set("cmd", "100", 1)
        clock.now += 10
        before = ledger.expiry("cmd", "100")

        cmd = Command(name="cmd", handler=AsyncMock(), guild_only=True, cooldown=5)
        result = await _dispatcher(ledger=ledger).dispatch(cmd, _ctx(make_text, guild_id=None))

        assert result.outcome == Outcome.REJECTED
        assert ledger.expiry("cmd", "100") == before

    @pytest.mark.asyncio
    async def test_concurrent_invocations_only_one_passes(self, make_text):
        """Two dispatches interleaved on the loop: the second sees the first's window."""
        release = asyncio.Event()
        runs = []

        async def handler(ctx):
            runs.append(ctx.actor.id)
            await release.wait()

        cmd = Command(name="cmd", handler=handler, cooldown=5)
        dispatcher = _dispatcher()
        first = asyncio.ensure_future(dispatcher.dispatch(cmd, _ctx(make_text)))
        second = asyncio.ensure_future(dispatcher.dispatch(cmd, _ctx(make_text)))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(first, second)

        assert runs == ["100"]
        assert sorted(r.outcome.value for r in results) == ["completed", "cooldown"]

    @pytest.mark.asyncio
    async def test_cooldown_string_duration(self, make_text):
        dispatcher = _dispatcher()
        cmd = Command(name="cmd", handler=AsyncMock(), cooldown="1m")
        await dispatcher.dispatch(cmd, _ctx(make_text))
        result = await dispatcher.dispatch(cmd, _ctx(make_text))
        assert result.detail == 60


class TestEnablementAndInhibitors:

    @pytest.mark.asyncio
    async def test_disabled_in_guild(self, make_text, responder):
        overrides = GuildOverrideTable()
        await overrides.set_enabled("g1", "cmd", False)
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler)
        result = await _dispatcher(overrides=overrides).dispatch(
            cmd, _ctx(make_text, responder=responder)
        )
        assert result.outcome == Outcome.DISABLED
        assert responder.replies == ["❌ This command is disabled in this server."]
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_override_ignored_in_direct(self, make_text):
        overrides = GuildOverrideTable()
        await overrides.set_enabled("g1", "cmd", False)
        handler = AsyncMock()
        await _dispatcher(overrides=overrides).dispatch(
            Command(name="cmd", handler=handler), _ctx(make_text, guild_id=None)
        )
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_plugin_is_silent(self, make_text, responder):
        handler = AsyncMock()
        run_hook = MagicMock()
        dispatcher = _dispatcher(is_plugin_enabled=lambda name: False)
        dispatcher.on_command_run(run_hook)
        cmd = Command(name="cmd", handler=handler, plugin="p")
        result = await dispatcher.dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.outcome == Outcome.IGNORED
        assert responder.messages == []
        run_hook.assert_not_called()
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inhibitor_false_is_silent(self, make_text, responder):
        dispatcher = _dispatcher()
        dispatcher.add_inhibitor(lambda cmd, ctx: False)
        handler = AsyncMock()
        result = await dispatcher.dispatch(
            Command(name="cmd", handler=handler), _ctx(make_text, responder=responder)
        )
        assert result.outcome == Outcome.INHIBITED
        assert responder.messages == []
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inhibitor_string_replies(self, make_text, responder):
        dispatcher = _dispatcher()

        async def maintenance(cmd, ctx):
            return "🔧 Down for maintenance."

        dispatcher.add_inhibitor(maintenance)
        result = await dispatcher.dispatch(
            Command(name="cmd", handler=AsyncMock()), _ctx(make_text, responder=responder)
        )
        assert result.detail == "🔧 Down for maintenance."
        assert responder.replies == ["🔧 Down for maintenance."]

    @pytest.mark.asyncio
    async def test_inhibitors_run_in_order(self, make_text):
        seen = []
        dispatcher = _dispatcher()
        dispatcher.add_inhibitor(lambda cmd, ctx: seen.append("a") or True)
        dispatcher.add_inhibitor(lambda cmd, ctx: seen.append("b") or False)
        dispatcher.add_inhibitor(lambda cmd, ctx: seen.append("c") or True)
        await dispatcher.dispatch(Command(name="cmd", handler=AsyncMock()), _ctx(make_text))
        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failing_inhibitor_stops_and_reports(self, make_text):
        diagnostics = []
        dispatcher = _dispatcher(on_diagnostic=diagnostics.append)

        def broken(cmd, ctx):
            raise ValueError("boom")

        dispatcher.add_inhibitor(broken)
        handler = AsyncMock()
        result = await dispatcher.dispatch(Command(name="cmd", handler=handler), _ctx(make_text))
        assert result.outcome == Outcome.INHIBITED
        handler.assert_not_awaited()
        assert diagnostics[0].stage == "inhibitor"

    @pytest.mark.asyncio
    async def test_enablement_before_inhibitors(self, make_text):
        overrides = GuildOverrideTable()
        await overrides.set_enabled("g1", "cmd", False)
        inhibitor = MagicMock(return_value=True)
        dispatcher = _dispatcher(overrides=overrides)
        dispatcher.add_inhibitor(inhibitor)
        await dispatcher.dispatch(Command(name="cmd", handler=AsyncMock()), _ctx(make_text))
        inhibitor.assert_not_called()


class TestOverloads:

    @pytest.mark.asyncio
    async def test_first_matching_pattern_wins(self, make_text):
        p1 = AsyncMock()
        p2 = AsyncMock()
        cmd = Command(
            name="cmd",
            overload=True,
            overload_patterns=[
                OverloadPattern(match=lambda args: len(args) >= 1, handler=p1),
                OverloadPattern(match=lambda args: len(args) == 1, handler=p2),
            ],
        )
        ctx = _ctx(make_text, "!cmd 5")
        result = await _dispatcher().dispatch(cmd, ctx)
        p1.assert_awaited_once_with(ctx, ["5"])
        p2.assert_not_awaited()
        assert result.detail == 0

    @pytest.mark.asyncio
    async def test_later_pattern_when_first_rejects(self, make_text):
        p1 = AsyncMock()
        p2 = AsyncMock()
        cmd = Command(
            name="cmd",
            overload=True,
            overload_patterns=[
                OverloadPattern(match=lambda args: len(args) == 2, handler=p1),
                OverloadPattern(match=lambda args: len(args) == 1, handler=p2),
            ],
        )
        await _dispatcher().dispatch(cmd, _ctx(make_text, "!cmd 5"))
        p1.assert_not_awaited()
        p2.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_match_notice(self, make_text, responder):
        cmd = Command(
            name="cmd",
            overload=True,
            overload_patterns=[OverloadPattern(match=lambda args: False, handler=AsyncMock())],
        )
        result = await _dispatcher().dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.outcome == Outcome.NO_MATCH
        assert responder.replies == ["❌ No matching overload for arguments."]

    @pytest.mark.asyncio
    async def test_overload_skips_guards_and_cooldown(self, make_text):
        ledger = CooldownLedger(clock=FakeClock())
        p1 = AsyncMock()
        cmd = Command(
            name="cmd",
            overload=True,
            guild_only=True,
            cooldown=10,
            overload_patterns=[OverloadPattern(match=lambda args: True, handler=p1)],
        )
        dispatcher = _dispatcher(ledger=ledger)
        await dispatcher.dispatch(cmd, _ctx(make_text, guild_id=None))
        await dispatcher.dispatch(cmd, _ctx(make_text, guild_id=None))
        assert p1.await_count == 2
        assert "cmd" not in ledger


class TestErrorFanOut:

    @pytest.mark.asyncio
    async def test_generic_notice_without_command_hook(self, make_text, responder):
        async def handler(ctx):
            raise RuntimeError("secret stack detail")

        result = await _dispatcher().dispatch(
            Command(name="cmd", handler=handler), _ctx(make_text, responder=responder)
        )
        assert result.outcome == Outcome.FAILED
        assert isinstance(result.detail, RuntimeError)
        assert responder.replies == ["⚠️ Something went wrong."]

    @pytest.mark.asyncio
    async def test_every_observer_called(self, make_text, responder):
        error = RuntimeError("boom")

        async def handler(ctx):
            raise error

        per_command = AsyncMock()
        command_error = AsyncMock()
        generic = MagicMock()
        sink = AsyncMock()
        dispatcher = _dispatcher(diagnostic_sink=sink)
        dispatcher.on_command_error(command_error)
        dispatcher.on_error(generic)
        cmd = Command(name="cmd", handler=handler, on_error=per_command)
        ctx = _ctx(make_text, responder=responder)

        await dispatcher.dispatch(cmd, ctx)

        per_command.assert_awaited_once_with(error, ctx)
        command_error.assert_awaited_once_with(error, cmd, ctx)
        generic.assert_called_once_with(error, cmd, ctx)
        sink.assert_awaited_once()
        assert "boom" in sink.await_args.args[0]
        # The per-command hook replaces the generic notice
        assert responder.replies == []

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_suppress_others(self, make_text):
        async def handler(ctx):
            raise RuntimeError("boom")

        def broken(*args):
            raise ValueError("observer down")

        generic = MagicMock()
        sink = AsyncMock()
        diagnostics = []
        dispatcher = _dispatcher(diagnostic_sink=sink, on_diagnostic=diagnostics.append)
        dispatcher.on_command_error(broken)
        dispatcher.on_error(generic)
        cmd = Command(name="cmd", handler=handler, on_error=broken)

        result = await dispatcher.dispatch(cmd, _ctx(make_text))

        assert result.outcome == Outcome.FAILED
        generic.assert_called_once()
        sink.assert_awaited_once()
        assert [d.stage for d in diagnostics] == ["on_error", "command_error_hook"]

    @pytest.mark.asyncio
    async def test_after_hook_skipped_on_error(self, make_text):
        after = MagicMock()

        def handler(ctx):
            raise RuntimeError("x")

        await _dispatcher().dispatch(Command(name="cmd", handler=handler, after=after), _ctx(make_text))
        after.assert_not_called()

    @pytest.mark.asyncio
    async def test_overload_handler_error_contained(self, make_text, responder):
        async def boom(ctx, args):
            raise RuntimeError("x")

        cmd = Command(
            name="cmd",
            overload=True,
            overload_patterns=[OverloadPattern(match=lambda args: True, handler=boom)],
        )
        result = await _dispatcher().dispatch(cmd, _ctx(make_text, responder=responder))
        assert result.outcome == Outcome.FAILED
        assert responder.replies == ["⚠️ Something went wrong."]


class TestSwallowedHooks:

    @pytest.mark.asyncio
    async def test_hook_failures_reach_diagnostics(self, make_text):
        def broken(*args):
            raise ValueError("nope")

        diagnostics = []
        handler = AsyncMock()
        dispatcher = _dispatcher(on_diagnostic=diagnostics.append)
        dispatcher.on_command_run(broken)
        cmd = Command(name="cmd", handler=handler, before=broken, after=broken)

        result = await dispatcher.dispatch(cmd, _ctx(make_text))

        assert result.outcome == Outcome.COMPLETED
        handler.assert_awaited_once()
        assert [d.stage for d in diagnostics] == ["run_hook", "before", "after"]
        assert all(isinstance(d.error, ValueError) for d in diagnostics)

    @pytest.mark.asyncio
    async def test_run_hook_sees_every_dispatch(self, make_text):
        run_hook = AsyncMock()
        dispatcher = _dispatcher()
        dispatcher.on_command_run(run_hook)
        cmd = Command(name="cmd", handler=AsyncMock(), guild_only=True)
        ctx = _ctx(make_text, guild_id=None)
        await dispatcher.dispatch(cmd, ctx)
        run_hook.assert_awaited_once_with(cmd, ctx)


class TestNotices:

    def test_overrides_replace_known_keys(self):
        notices = Notices.from_overrides({"failure": "oops", "bogus": "x"})
        assert notices.failure == "oops"
        assert notices.guild_only == Notices().guild_only
        assert not hasattr(notices, "bogus")

    @pytest.mark.asyncio
    async def test_custom_notice_used(self, make_text, responder):
        dispatcher = _dispatcher(notices=Notices(guild_only="servers only"))
        cmd = Command(name="cmd", handler=AsyncMock(), guild_only=True)
        await dispatcher.dispatch(cmd, _ctx(make_text, responder=responder, guild_id=None))
        assert responder.replies == ["servers only"]

    @pytest.mark.asyncio
    async def test_failing_responder_on_guard_notice_is_contained(self, make_text):
        broken = MagicMock()
        broken.reply = AsyncMock(side_effect=ConnectionError("socket closed"))
        diagnostics = []
        dispatcher = _dispatcher(on_diagnostic=diagnostics.append)
        cmd = Command(name="cmd", handler=AsyncMock(), guild_only=True)

        result = await dispatcher.dispatch(cmd, _ctx(make_text, responder=broken, guild_id=None))

        assert result.outcome == Outcome.REJECTED
        assert [(d.stage, d.source) for d in diagnostics] == [("notice", "cmd")]

    @pytest.mark.asyncio
    async def test_failing_responder_on_cooldown_notice_is_contained(self, make_text):
        broken = MagicMock()
        broken.reply = AsyncMock(side_effect=ConnectionError("socket closed"))
        diagnostics = []
        dispatcher = _dispatcher(on_diagnostic=diagnostics.append)
        handler = AsyncMock()
        cmd = Command(name="cmd", handler=handler, cooldown=10)

        await dispatcher.dispatch(cmd, _ctx(make_text))
        result = await dispatcher.dispatch(cmd, _ctx(make_text, responder=broken))

        assert result.outcome == Outcome.COOLDOWN
        handler.assert_awaited_once()
        assert [d.stage for d in diagnostics] == ["notice"]
