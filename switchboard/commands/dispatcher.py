"""Command execution pipeline.

Given a resolved Command and a Context, the dispatcher runs the guard
stages in a fixed order and finally invokes the handler:

    0. owning plugin disabled        → silent stop (as if unregistered)
    1. global run hook               (failure swallowed)
    2. guild enablement              → disabled notice
    3. inhibitors, in order          → silent stop or custom reply
    4. overload dispatch             → first matching pattern, then done
    5. per-command ``before`` hook   (failure swallowed)
    6. built-in guards               → origin, restricted channel, owner,
                                       permissions, slash-only
    7. cooldown                      → please-wait notice
    8. handler, then ``after`` hook; on error fan out to every observer

At most one user-visible reply comes out of the pipeline itself. Every
swallowed failure is logged and passed to ``on_diagnostic`` so it stays
observable.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import structlog

from ..context import Context, maybe_await
from ..cooldown import CooldownLedger
from ..diagnostics import Diagnostic, format_error
from .base import Command
from .overrides import GuildOverrideTable

logger = structlog.get_logger("switchboard.dispatch")

Inhibitor = Callable[[Command, Context], Any]
DiagnosticSink = Callable[[str], Awaitable[Any]]


@dataclass
class Notices:
    """User-visible texts produced by the pipeline."""
    disabled: str = "❌ This command is disabled in this server."
    no_overload: str = "❌ No matching overload for arguments."
    guild_only: str = "❌ This command can only be used in servers."
    direct_only: str = "❌ This command can only be used in direct messages."
    restricted_only: str = "❌ This command can only be used in NSFW channels."
    owner_only: str = "❌ This command is only for bot developers."
    missing_permissions: str = "❌ You don’t have permission to use this."
    slash_only: str = (
        "❌ This command is only available as a slash command. "
        "Please use the / version."
    )
    cooldown: str = "⏳ Please wait {remaining}s before using `{command}` again."
    failure: str = "⚠️ Something went wrong."

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, str]]) -> "Notices":
        """Defaults with any known keys replaced. Unknown keys are logged and ignored."""
        overrides = overrides or {}
        known = {f.name for f in fields(cls)}
        for key in sorted(set(overrides) - known):
            logger.warning("notice_override_unknown", notice=key)
        return cls(**{k: v for k, v in overrides.items() if k in known})


class Outcome(str, Enum):
    """Which stage ended a dispatch."""
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"
    DISABLED = "disabled"
    INHIBITED = "inhibited"
    NO_MATCH = "no_match"
    REJECTED = "rejected"
    COOLDOWN = "cooldown"


@dataclass
class DispatchResult:
    """Outcome of one dispatch.

    Attributes:
        outcome: Terminating stage.
        detail: Guard name, inhibitor reply, remaining seconds, or the
            handler exception, depending on ``outcome``.
    """
    outcome: Outcome
    detail: Any = None

    @property
    def ran_handler(self) -> bool:
        return self.outcome in (Outcome.COMPLETED, Outcome.FAILED)


class CommandDispatcher:
    """Runs commands through the guard pipeline.

    All shared state is injected so tests can build isolated instances.

    Args:
        ledger: Cooldown ledger (a fresh one by default).
        overrides: Per-guild enable table (a memory-only one by default).
        owner_ids: Actor ids allowed through owner_only commands.
        notices: User-visible texts.
        diagnostic_sink: Async callable receiving formatted error text.
        is_plugin_enabled: Predicate over a plugin name.
        on_diagnostic: Receives every contained failure.
    """

    def __init__(
        self,
        ledger: Optional[CooldownLedger] = None,
        overrides: Optional[GuildOverrideTable] = None,
        owner_ids: Iterable[str] = (),
        notices: Optional[Notices] = None,
        diagnostic_sink: Optional[DiagnosticSink] = None,
        is_plugin_enabled: Optional[Callable[[str], bool]] = None,
        on_diagnostic: Optional[Callable[[Diagnostic], Any]] = None,
    ):
        self.ledger = ledger or CooldownLedger()
        self.overrides = overrides or GuildOverrideTable()
        self.owner_ids = frozenset(str(o) for o in owner_ids)
        self.notices = notices or Notices()
        self.diagnostic_sink = diagnostic_sink
        self._is_plugin_enabled = is_plugin_enabled
        self._on_diagnostic = on_diagnostic
        self._inhibitors: List[Inhibitor] = []
        self._on_command_run: Optional[Callable[..., Any]] = None
        self._on_command_error: Optional[Callable[..., Any]] = None
        self._on_error: Optional[Callable[..., Any]] = None

    # --- Hook registration ---

    def add_inhibitor(self, fn: Inhibitor) -> None:
        """Append a global guard. Returns True to continue, False to stop
        silently, or a string to stop and reply with it."""
        self._inhibitors.append(fn)

    def remove_inhibitor(self, fn: Inhibitor) -> None:
        if fn in self._inhibitors:
            self._inhibitors.remove(fn)

    def on_command_run(self, fn: Callable[..., Any]) -> None:
        """Observer called as ``fn(cmd, ctx)`` before every dispatch."""
        self._on_command_run = fn

    def on_command_error(self, fn: Callable[..., Any]) -> None:
        """Called as ``fn(err, cmd, ctx)`` when a handler raises."""
        self._on_command_error = fn

    def on_error(self, fn: Callable[..., Any]) -> None:
        """Generic error hook, called as ``fn(err, cmd, ctx)`` after the command error hook."""
        self._on_error = fn

    # --- Containment ---

    def _report(self, stage: str, command: Command, error: BaseException) -> None:
        logger.warning(
            "dispatch_hook_failed",
            stage=stage,
            command=command.name,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._on_diagnostic is None:
            return
        try:
            self._on_diagnostic(Diagnostic(stage=stage, source=command.name, error=error))
        except Exception as e:
            logger.error("diagnostic_callback_failed", stage=stage, error=str(e))

    async def _swallow(self, stage: str, command: Command, fn: Callable[..., Any], *args: Any) -> bool:
        """Run ``fn(*args)``; contain any exception. Returns True on success."""
        try:
            await maybe_await(fn(*args))
            return True
        except Exception as e:
            self._report(stage, command, e)
            return False

    async def _notify(self, ctx: Context, text: str) -> None:
        await ctx.reply(text)

    async def _notice(self, cmd: Command, ctx: Context, text: str) -> None:
        """Send a pipeline notice; a responder failure is contained."""
        await self._swallow("notice", cmd, self._notify, ctx, text)

    # --- Pipeline ---

    async def dispatch(self, cmd: Command, ctx: Context) -> DispatchResult:
        """Run ``cmd`` for ``ctx`` through every pipeline stage."""
        log = logger.bind(command=cmd.name, actor=ctx.actor.id)

        if cmd.plugin and self._is_plugin_enabled and not self._is_plugin_enabled(cmd.plugin):
            log.debug("dispatch_plugin_disabled", plugin=cmd.plugin)
            return DispatchResult(Outcome.IGNORED, cmd.plugin)

        # 1. run hook
        if self._on_command_run is not None:
            await self._swallow("run_hook", cmd, self._on_command_run, cmd, ctx)

        # 2. guild enablement
        if ctx.is_guild and not self.overrides.is_enabled(ctx.guild_id, cmd.name):
            log.debug("dispatch_disabled_in_guild", guild=ctx.guild_id)
            await self._notice(cmd, ctx, self.notices.disabled)
            return DispatchResult(Outcome.DISABLED)

        # 3. inhibitors
        for inhibitor in list(self._inhibitors):
            try:
                verdict = await maybe_await(inhibitor(cmd, ctx))
            except Exception as e:
                self._report("inhibitor", cmd, e)
                return DispatchResult(Outcome.INHIBITED, e)
            if verdict is False:
                log.debug("dispatch_inhibited")
                return DispatchResult(Outcome.INHIBITED)
            if isinstance(verdict, str):
                log.debug("dispatch_inhibited", reply=True)
                await self._notice(cmd, ctx, verdict)
                return DispatchResult(Outcome.INHIBITED, verdict)

        # 4. overloads
        if cmd.overload:
            return await self._dispatch_overload(cmd, ctx)

        # 5. before hook
        if cmd.before is not None:
            await self._swallow("before", cmd, cmd.before, ctx)

        # 6. built-in guards
        guard = self._failed_guard(cmd, ctx)
        if guard is not None:
            log.debug("dispatch_guard_rejected", guard=guard)
            await self._notice(cmd, ctx, getattr(self.notices, guard))
            return DispatchResult(Outcome.REJECTED, guard)

        # 7. cooldown: check and set with no await in between
        duration = cmd.cooldown_seconds
        if duration > 0:
            remaining = self.ledger.check_and_set(cmd.name, ctx.actor.id, duration)
            if remaining is not None:
                log.debug("dispatch_cooldown", remaining=remaining)
                await self._notice(
                    cmd, ctx, self.notices.cooldown.format(remaining=remaining, command=cmd.name)
                )
                return DispatchResult(Outcome.COOLDOWN, remaining)

        # 8. handler
        try:
            await maybe_await(cmd.handler(ctx))
        except Exception as err:
            await self._handle_error(err, cmd, ctx)
            return DispatchResult(Outcome.FAILED, err)
        if cmd.after is not None:
            await self._swallow("after", cmd, cmd.after, ctx)
        log.debug("dispatch_completed")
        return DispatchResult(Outcome.COMPLETED)

    def _failed_guard(self, cmd: Command, ctx: Context) -> Optional[str]:
        """Name of the first failing built-in guard, or None."""
        if cmd.guild_only and ctx.is_direct:
            return "guild_only"
        if cmd.direct_only and ctx.is_guild:
            return "direct_only"
        if cmd.restricted_only and not ctx.origin.nsfw:
            return "restricted_only"
        if cmd.owner_only and ctx.actor.id not in self.owner_ids:
            return "owner_only"
        if cmd.permissions and not ctx.has_perms(cmd.permissions):
            return "missing_permissions"
        if cmd.slash_only and not ctx.is_interactive:
            return "slash_only"
        return None

    async def _dispatch_overload(self, cmd: Command, ctx: Context) -> DispatchResult:
        for index, pattern in enumerate(cmd.overload_patterns):
            try:
                matched = bool(pattern.match(ctx.args))
            except Exception as e:
                self._report("overload_match", cmd, e)
                matched = False
            if not matched:
                continue
            logger.debug("dispatch_overload_selected", command=cmd.name, pattern=index)
            try:
                await maybe_await(pattern.handler(ctx, ctx.args))
            except Exception as err:
                await self._handle_error(err, cmd, ctx)
                return DispatchResult(Outcome.FAILED, err)
            return DispatchResult(Outcome.COMPLETED, index)
        await self._notice(cmd, ctx, self.notices.no_overload)
        return DispatchResult(Outcome.NO_MATCH)

    async def _handle_error(self, err: Exception, cmd: Command, ctx: Context) -> None:
        """Fan a handler error out to every observer.

        Each step runs even if an earlier one failed.
        """
        logger.error(
            "command_failed",
            command=cmd.name,
            actor=ctx.actor.id,
            error=str(err),
            error_type=type(err).__name__,
            exc_info=err,
        )
        if cmd.on_error is not None:
            await self._swallow("on_error", cmd, cmd.on_error, err, ctx)
        else:
            await self._swallow("failure_notice", cmd, self._notify, ctx, self.notices.failure)
        if self._on_command_error is not None:
            await self._swallow("command_error_hook", cmd, self._on_command_error, err, cmd, ctx)
        if self._on_error is not None:
            await self._swallow("error_hook", cmd, self._on_error, err, cmd, ctx)
        if self.diagnostic_sink is not None:
            await self._swallow(
                "diagnostic_sink", cmd, self.diagnostic_sink, format_error(cmd.name, err)
            )
