"""End-to-end tests through the Bot facade."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from switchboard.bot import Bot
from switchboard.commands.dispatcher import Outcome
from switchboard.config import Config
from switchboard.context import EventContext
from switchboard.plugin_base import SwitchboardPlugin
from switchboard.store import MemoryStore
from switchboard.triggers import ContextMenuType


def _bot(settings=None, **kwargs):
    return Bot(config=Config(settings=settings or {}), **kwargs)


class TestTextCommands:

    @pytest.mark.asyncio
    async def test_guild_only_in_direct_message(self, make_text, responder):
        bot = _bot()
        handler = AsyncMock()
        bot.command("ping", handler, guild_only=True)

        result = await bot.handle_message(make_text("!ping", guild_id=None, responder=responder))

        handler.assert_not_awaited()
        assert result.outcome == Outcome.REJECTED
        assert responder.replies == ["❌ This command can only be used in servers."]

    @pytest.mark.asyncio
    async def test_direct_messages_dispatch(self, make_text):
        bot = _bot()
        handler = AsyncMock()
        bot.command("ping", handler)
        await bot.handle_message(make_text("!ping", guild_id=None))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_alias_and_case_folding(self, make_text):
        bot = _bot()
        seen = []
        bot.command("ban", lambda ctx: seen.append((ctx.command_name, ctx.args)), aliases=["b"])
        await bot.handle_message(make_text("!B someone"))
        assert seen == [("ban", ["someone"])]

    @pytest.mark.asyncio
    async def test_mixed_case_name_reachable(self, make_text):
        bot = _bot()
        handler = AsyncMock()
        bot.command("Ping", handler)
        result = await bot.handle_message(make_text("!Ping"))
        assert result.outcome == Outcome.COMPLETED
        assert await bot.handle_message(make_text("!ping")) is None
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bot_authors_ignored(self, make_text):
        bot = _bot()
        handler = AsyncMock()
        message_handler = AsyncMock()
        bot.command("ping", handler)
        bot.on("message", message_handler)
        assert await bot.handle_message(make_text("!ping", is_bot=True)) is None
        handler.assert_not_awaited()
        message_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_and_unprefixed(self, make_text, responder):
        bot = _bot()
        assert await bot.handle_message(make_text("!nothing", responder=responder)) is None
        assert await bot.handle_message(make_text("hello", responder=responder)) is None
        assert await bot.handle_message(make_text("!", responder=responder)) is None
        assert responder.messages == []

    @pytest.mark.asyncio
    async def test_configured_prefix(self, make_text):
        bot = _bot({"prefix": "$"})
        handler = AsyncMock()
        bot.command("ping", handler)
        await bot.handle_message(make_text("!ping"))
        await bot.handle_message(make_text("$ping"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_per_guild_prefix(self, make_text):
        store = MemoryStore()
        bot = _bot(store=store)
        handler = AsyncMock()
        bot.command("ping", handler)
        await bot.set_prefix("g1", "?")

        assert await bot.handle_message(make_text("!ping")) is None
        await bot.handle_message(make_text("?ping"))
        await bot.handle_message(make_text("!ping", guild_id="g2"))
        assert handler.await_count == 2
        assert await _bot(store=store).get_prefix("g1") == "?"
        assert await bot.get_prefix(None) == "!"

    @pytest.mark.asyncio
    async def test_overload_with_tuples(self, make_text, responder):
        bot = _bot()
        results = []
        bot.overload(
            "calc",
            [
                (lambda args: len(args) == 2, lambda ctx, args: results.append(int(args[0]) + int(args[1]))),
                (lambda args: len(args) == 1, lambda ctx, args: results.append(-int(args[0]))),
            ],
        )
        await bot.handle_message(make_text("!calc 2 3"))
        await bot.handle_message(make_text("!calc 4"))
        await bot.handle_message(make_text("!calc", responder=responder))
        assert results == [5, -4]
        assert responder.replies == ["❌ No matching overload for arguments."]


class TestInteractions:

    @pytest.mark.asyncio
    async def test_slash_only_refuses_text(self, make_text, make_interaction, responder):
        bot = _bot()
        handler = AsyncMock()
        bot.command("info", handler, slash=True)

        result = await bot.handle_message(make_text("!info", responder=responder))
        assert result.detail == "slash_only"
        handler.assert_not_awaited()

        await bot.handle(make_interaction("info", {"verbose": True}))
        handler.assert_awaited_once()
        assert handler.await_args.args[0].get_option("verbose") is True

    @pytest.mark.asyncio
    async def test_slash_text_allowed_when_opted_out(self, make_text):
        bot = _bot()
        handler = AsyncMock()
        bot.command("info", handler, {"slash": True, "slash_only": False})
        await bot.handle(make_text("!info"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_context_menu(self, make_interaction):
        bot = _bot()
        handler = AsyncMock()
        cmd = bot.context_menu("Report", "message", handler)
        assert cmd.context_menu_type == ContextMenuType.MESSAGE
        await bot.handle_interaction(make_interaction("Report"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_interaction(self, make_interaction):
        assert await _bot().handle_interaction(make_interaction("ghost")) is None

    @pytest.mark.asyncio
    async def test_interaction_event(self, make_interaction):
        bot = _bot()
        seen = []
        bot.on("interaction", lambda ctx, trigger: seen.append(ctx.command_name))
        await bot.handle_interaction(make_interaction("anything"))
        assert seen == ["anything"]


class TestEvents:

    @pytest.mark.asyncio
    async def test_every_message_routed(self, make_text):
        bot = _bot()
        seen = []
        bot.on("message", lambda ctx, trigger: seen.append((ctx.content, trigger.content)))
        await bot.handle_message(make_text("just chatting"))
        assert seen == [("just chatting", "just chatting")]

    @pytest.mark.asyncio
    async def test_event_context_from_trigger(self, make_text):
        bot = _bot()
        handler = AsyncMock()
        bot.on("message_edit", handler)
        trigger = make_text("edited")
        await bot.emit("message_edit", trigger)
        ctx = handler.await_args.args[0]
        assert ctx.content == "edited"
        assert ctx.bot is bot

    @pytest.mark.asyncio
    async def test_plain_payload_gets_event_context(self):
        bot = _bot()
        handler = AsyncMock()
        bot.on("guild/member_join", handler)
        assert await bot.emit("guild/member_join", {"id": "5"}) == 1
        ctx, payload = handler.await_args.args
        assert payload == {"id": "5"}
        assert isinstance(ctx, EventContext)
        assert ctx.bot is bot
        assert ctx.event_name == "guild/member_join"
        assert ctx.raw == {"id": "5"}

    @pytest.mark.asyncio
    async def test_payloadless_event_gets_bot(self):
        bot = _bot()
        seen = []
        bot.on("ready", lambda ctx: seen.append((ctx.bot, ctx.args, ctx.raw)))
        await bot.emit("ready")
        assert seen == [(bot, [], None)]

    @pytest.mark.asyncio
    async def test_wildcard_and_middleware(self):
        bot = _bot()
        seen = []
        handler = AsyncMock()
        bot.on_any(lambda name, ctx, *raw: seen.append(name))
        bot.on("blocked", handler)
        bot.before_event(lambda name, ctx, *raw: name != "blocked")
        await bot.emit("allowed")
        await bot.emit("blocked")
        assert seen == ["allowed"]
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_contained_event_failures_recorded(self):
        bot = _bot()

        def fail(ctx):
            raise RuntimeError("listener down")

        def broken_middleware(name, ctx, *raw):
            raise ValueError("middleware down")

        bot.on("tick", fail)
        bot.before_event(broken_middleware)
        await bot.emit("tick")
        assert [(d.stage, d.source) for d in bot.diagnostics] == [
            ("middleware", "tick"),
            ("handler", "tick"),
        ]

    @pytest.mark.asyncio
    async def test_once(self):
        bot = _bot()
        handler = AsyncMock()
        bot.on("ready", handler, once=True)
        await bot.emit("ready")
        await bot.emit("ready")
        handler.assert_awaited_once()


class TestHooks:

    @pytest.mark.asyncio
    async def test_before_and_after_command(self, make_text, make_interaction):
        bot = _bot()
        order = []
        bot.command("ping", lambda ctx: order.append("handler"))
        bot.before_command(lambda cmd, ctx: order.append(("before", cmd.name)))
        bot.after_command(lambda cmd, ctx: order.append(("after", cmd.name)))
        await bot.handle_message(make_text("!ping"))
        await bot.handle_interaction(make_interaction("ping"))
        assert order == [("before", "ping"), "handler", ("after", "ping")] * 2

    @pytest.mark.asyncio
    async def test_failing_global_hook_recorded(self, make_text):
        bot = _bot()
        handler = AsyncMock()
        bot.command("ping", handler)

        def broken(cmd, ctx):
            raise ValueError("hook down")

        bot.before_command(broken)
        await bot.handle_message(make_text("!ping"))
        handler.assert_awaited_once()
        assert [d.stage for d in bot.diagnostics] == ["before_command"]

    @pytest.mark.asyncio
    async def test_on_error_sees_commands_and_events(self, make_text):
        bot = _bot()
        error = RuntimeError("boom")

        def fail(*args):
            raise error

        hook = MagicMock()
        bot.on_error(hook)
        cmd = bot.command("explode", fail)
        bot.on("tick", fail)

        await bot.handle_message(make_text("!explode"))
        await bot.emit("tick")

        assert hook.call_args_list[0].args[:2] == (error, cmd)
        event_error, source, event_ctx = hook.call_args_list[1].args
        assert (event_error, source) == (error, "tick")
        assert event_ctx.bot is bot

    @pytest.mark.asyncio
    async def test_inhibitor(self, make_text, responder):
        bot = _bot()
        handler = AsyncMock()
        bot.command("ping", handler)
        bot.add_inhibitor(lambda cmd, ctx: "🔒 Locked." if ctx.actor.id == "666" else True)
        await bot.handle_message(make_text("!ping", actor_id="666", responder=responder))
        await bot.handle_message(make_text("!ping"))
        assert responder.replies == ["🔒 Locked."]
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_reported_to_channel_sink(self, make_text, responder, monkeypatch):
        monkeypatch.delenv("BOT_LOG_WEBHOOK", raising=False)
        monkeypatch.delenv("BOT_LOG_CHANNEL", raising=False)
        transport = AsyncMock()
        bot = _bot({"diagnostic_channel_id": "logs"}, send_message=transport)

        def fail(ctx):
            raise RuntimeError("kaboom")

        bot.command("explode", fail)
        await bot.handle_message(make_text("!explode", responder=responder))

        assert responder.replies == ["⚠️ Something went wrong."]
        channel, text = transport.await_args.args
        assert channel == "logs"
        assert text.startswith("Error in explode: kaboom")

    @pytest.mark.asyncio
    async def test_notice_overrides_from_config(self, make_text, responder):
        bot = _bot({"notices": {"guild_only": "Servers only, please."}})
        bot.command("ping", AsyncMock(), guild_only=True)
        await bot.handle_message(make_text("!ping", guild_id=None, responder=responder))
        assert responder.replies == ["Servers only, please."]


class TestGuildState:

    @pytest.mark.asyncio
    async def test_disable_in_guild(self, make_text, responder):
        bot = _bot()
        handler = AsyncMock()
        bot.command("ping", handler)
        await bot.set_command_enabled("g1", "ping", False)
        assert bot.is_command_enabled("g1", "ping") is False

        result = await bot.handle_message(make_text("!ping", responder=responder))
        assert result.outcome == Outcome.DISABLED
        await bot.handle_message(make_text("!ping", guild_id="g2"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_state_loaded_from_store(self, make_text, responder):
        store = MemoryStore()
        await _bot(store=store).set_command_enabled("g1", "ping", False)

        bot = _bot(store=store)
        handler = AsyncMock()
        bot.command("ping", handler)
        await bot.handle_message(make_text("!ping", responder=responder))
        handler.assert_not_awaited()
        assert responder.replies == ["❌ This command is disabled in this server."]

    @pytest.mark.asyncio
    async def test_cooldown_per_actor(self, make_text, responder):
        clock = MagicMock(return_value=100.0)
        bot = _bot(clock=clock)
        handler = AsyncMock()
        bot.command("daily", handler, cooldown="1h")
        await bot.handle_message(make_text("!daily"))
        result = await bot.handle_message(make_text("!daily", responder=responder))
        await bot.handle_message(make_text("!daily", actor_id="200"))
        assert result.outcome == Outcome.COOLDOWN
        assert result.detail == 3600
        assert handler.await_count == 2


class TestPlugins:

    @pytest.mark.asyncio
    async def test_use_and_disable(self, make_text, responder):
        class Hello(SwitchboardPlugin):
            name = "hello"

            async def on_load(self):
                self.ctx.add_command("hi", self.hi, aliases=["hey"])

            async def hi(self, ctx):
                await ctx.reply(f"hi from {self.ctx.bot.default_prefix}")

        bot = _bot()
        await bot.use(Hello)
        await bot.handle_message(make_text("!hey", responder=responder))
        assert responder.replies == ["hi from !"]

        await bot.plugins.disable("hello")
        assert await bot.handle_message(make_text("!hi", responder=responder)) is None
        assert responder.replies == ["hi from !"]

        await bot.plugins.unload("hello")
        assert bot.registry.resolve("hey") is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path, make_text, responder):
        commands = tmp_path / "commands"
        commands.mkdir()
        (commands / "ping.py").write_text(
            "async def run(ctx):\n"
            "    await ctx.reply('pong')\n"
            "\n"
            "command = {'name': 'ping', 'run': run}\n"
        )
        plugin_dir = tmp_path / "plugins" / "echo"
        plugin_dir.mkdir(parents=True)
        (plugin_dir / "plugin.py").write_text(
            "from switchboard.plugin_base import SwitchboardPlugin\n"
            "\n"
            "\n"
            "class Echo(SwitchboardPlugin):\n"
            "    name = 'echo'\n"
            "\n"
            "    async def on_load(self):\n"
            "        self.ctx.add_command('echo', self.echo)\n"
            "\n"
            "    async def echo(self, ctx):\n"
            "        await ctx.reply(' '.join(ctx.args))\n"
        )
        config = Config(
            config_dir=tmp_path / "config",
            settings={"commands_dir": str(commands), "plugins_dir": str(tmp_path / "plugins")},
        )
        bot = Bot(config=config)
        await bot.start()
        assert bot.running is True

        await bot.handle_message(make_text("!ping", responder=responder))
        await bot.handle_message(make_text("!echo a b", responder=responder))
        assert responder.replies == ["pong", "a b"]

        await bot.stop()
        assert bot.running is False
        assert not bot.plugins.is_loaded("echo")
        assert bot.registry.resolve("echo") is None

    @pytest.mark.asyncio
    async def test_message_listener_plugin_does_not_block_commands(self, make_text, responder):
        heard = []

        class Listener(SwitchboardPlugin):
            name = "listener"

            async def on_load(self):
                self.ctx.add_event("message", lambda ctx, trigger: heard.append(ctx.content))

        bot = _bot()
        handler = AsyncMock()
        bot.command("ping", handler)
        await bot.use(Listener)

        result = await bot.handle_message(make_text("!ping", responder=responder))

        assert result.outcome == Outcome.COMPLETED
        handler.assert_awaited_once()
        assert heard == ["!ping"]
