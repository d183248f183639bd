"""Event router: named subscriptions, wildcard observers and middleware.

Every routed event goes through three phases:

    1. the ``before_event`` middleware; returning exactly False vetoes
       the event for everything below
    2. wildcard observers, called as ``fn(event_name, ctx, *raw)``, and
       pending ``wait_for`` waiters
    3. the specific handlers for the event, called as ``fn(ctx, *raw)``

Handler failures are contained: they are logged and handed to the
error hook, and never reach the emitter.

Event names may be grouped with a slash ("guild/member_join"); the
group is only used for log context.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from .context import DEFAULT_WAIT_TIMEOUT, maybe_await
from .diagnostics import Diagnostic

logger = structlog.get_logger("switchboard.events")

EventHandler = Callable[..., Any]
ContextFactory = Callable[[str, tuple], Any]


@dataclass(eq=False)
class Subscription:
    """One handler bound to one event name.

    Attributes:
        event: Event name.
        handler: Called as ``handler(ctx, *raw_args)``.
        once: Remove after the first invocation, whatever its outcome.
        owner: Owning plugin name, or None for host subscriptions.
    """
    event: str
    handler: EventHandler
    once: bool = False
    owner: Optional[str] = None


@dataclass(eq=False)
class _Waiter:
    check: Optional[Callable[..., Any]]
    future: "asyncio.Future" = field(repr=False)


def event_group(event_name: str) -> Optional[str]:
    """Group part of a grouped event name, or None."""
    if "/" not in event_name:
        return None
    return event_name.split("/", 1)[0]


class EventRouter:
    """Routes named events to subscribed handlers.

    Args:
        context_factory: Builds the Context for an emit when the emitter
            did not supply one. Called as ``factory(event_name, raw_args)``.
        is_owner_enabled: Predicate over a plugin name; subscriptions of
            disabled owners are skipped.
        on_diagnostic: Receives every contained failure (handler,
            error hook, middleware or waiter check).
    """

    def __init__(
        self,
        context_factory: Optional[ContextFactory] = None,
        is_owner_enabled: Optional[Callable[[str], bool]] = None,
        on_diagnostic: Optional[Callable[[Diagnostic], Any]] = None,
    ):
        self.context_factory = context_factory
        self.is_owner_enabled = is_owner_enabled
        self.on_diagnostic = on_diagnostic
        self._handlers: Dict[str, List[Subscription]] = {}
        self._wildcards: List[EventHandler] = []
        self._middleware: Optional[EventHandler] = None
        self._error_hook: Optional[EventHandler] = None
        self._waiters: Dict[str, List[_Waiter]] = {}

    # --- Subscription management ---

    def subscribe(
        self,
        event_name: str,
        handler: EventHandler,
        once: bool = False,
        owner: Optional[str] = None,
    ) -> Subscription:
        """Bind ``handler`` to ``event_name``."""
        subscription = Subscription(event_name, handler, once=once, owner=owner)
        self.add(subscription)
        return subscription

    def add(self, subscription: Subscription) -> None:
        self._handlers.setdefault(subscription.event, []).append(subscription)
        logger.debug(
            "event_subscribed",
            event_name=subscription.event,
            once=subscription.once,
            owner=subscription.owner,
        )

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove one subscription. Returns False if it was not present."""
        handlers = self._handlers.get(subscription.event)
        if not handlers or subscription not in handlers:
            return False
        handlers.remove(subscription)
        if not handlers:
            del self._handlers[subscription.event]
        return True

    def unsubscribe_owner(self, owner: str) -> int:
        """Remove every subscription tagged with ``owner``. Returns the count."""
        removed = len(self.by_owner(owner))
        self.swap_owner(owner, [])
        if removed:
            logger.debug("event_owner_unsubscribed", owner=owner, count=removed)
        return removed

    def swap_owner(self, owner: str, subscriptions: Iterable[Subscription]) -> None:
        """Replace every subscription of ``owner`` with ``subscriptions`` in one step."""
        handlers: Dict[str, List[Subscription]] = {}
        for event, subs in self._handlers.items():
            kept = [s for s in subs if s.owner != owner]
            if kept:
                handlers[event] = kept
        for subscription in subscriptions:
            handlers.setdefault(subscription.event, []).append(subscription)
        self._handlers = handlers

    def unsubscribe_all(self) -> None:
        """Drop every subscription, including plugin-owned ones.

        Used by event hot-reload, which re-subscribes only what the
        loader finds; anything subscribed elsewhere is gone afterwards.
        """
        count = sum(len(subs) for subs in self._handlers.values())
        self._handlers = {}
        logger.info("events_unsubscribed_all", count=count)

    def by_owner(self, owner: Optional[str]) -> List[Subscription]:
        return [s for subs in self._handlers.values() for s in subs if s.owner == owner]

    def handlers(self, event_name: str) -> List[Subscription]:
        return list(self._handlers.get(event_name, []))

    @property
    def events(self) -> List[str]:
        return sorted(self._handlers)

    # --- Global hooks ---

    def on_any(self, fn: EventHandler) -> None:
        """Add a wildcard observer, called as ``fn(event_name, ctx, *raw)``."""
        self._wildcards.append(fn)

    def before_event(self, fn: Optional[EventHandler]) -> None:
        """Set the middleware, called as ``fn(event_name, ctx, *raw)``.

        Returning exactly False cancels the event for wildcard observers,
        waiters and specific handlers.
        """
        self._middleware = fn

    def on_error(self, fn: Optional[EventHandler]) -> None:
        """Set the hook receiving ``(error, event_name, ctx)`` for handler failures."""
        self._error_hook = fn

    # --- Waiters ---

    async def wait_for(
        self,
        event_name: str,
        check: Optional[Callable[..., Any]] = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> Any:
        """Resolve with the next ``event_name`` payload accepted by ``check``.

        Returns None on timeout. The waiter is detached however the wait
        ends.
        """
        future = asyncio.get_running_loop().create_future()
        waiter = _Waiter(check=check, future=future)
        self._waiters.setdefault(event_name, []).append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.debug("event_wait_timeout", event_name=event_name, timeout=timeout)
            return None
        finally:
            self._detach_waiter(event_name, waiter)

    def _detach_waiter(self, event_name: str, waiter: _Waiter) -> None:
        waiters = self._waiters.get(event_name)
        if waiters and waiter in waiters:
            waiters.remove(waiter)
            if not waiters:
                del self._waiters[event_name]

    def pending_waiters(self, event_name: str) -> int:
        return len(self._waiters.get(event_name, []))

    async def _resolve_waiters(self, event_name: str, payload: Any) -> None:
        for waiter in list(self._waiters.get(event_name, [])):
            if waiter.future.done():
                continue
            try:
                accepted = waiter.check is None or await maybe_await(waiter.check(payload))
            except Exception as e:
                logger.warning("event_wait_check_failed", event_name=event_name, error=str(e))
                self._report("wait_check", event_name, e)
                continue
            if accepted and not waiter.future.done():
                waiter.future.set_result(payload)
                self._detach_waiter(event_name, waiter)

    # --- Routing ---

    def _is_live(self, subscription: Subscription) -> bool:
        if subscription.owner is None or self.is_owner_enabled is None:
            return True
        return self.is_owner_enabled(subscription.owner)

    def _report(self, stage: str, event_name: str, error: BaseException) -> None:
        if self.on_diagnostic is None:
            return
        try:
            self.on_diagnostic(Diagnostic(stage=stage, source=event_name, error=error))
        except Exception as e:
            logger.error("diagnostic_callback_failed", stage=stage, error=str(e))

    async def _contain(self, event_name: str, ctx: Any, fn: EventHandler, *args: Any) -> bool:
        try:
            await maybe_await(fn(*args))
            return True
        except Exception as e:
            logger.error(
                "event_handler_failed",
                event_name=event_name,
                group=event_group(event_name),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=e,
            )
            self._report("handler", event_name, e)
            if self._error_hook is not None:
                try:
                    await maybe_await(self._error_hook(e, event_name, ctx))
                except Exception as hook_error:
                    logger.error(
                        "event_error_hook_failed", event_name=event_name, error=str(hook_error)
                    )
                    self._report("error_hook", event_name, hook_error)
            return False

    async def emit(self, event_name: str, *raw_args: Any, ctx: Any = None) -> int:
        """Route one event.

        Args:
            event_name: Name the handlers subscribed to.
            *raw_args: Platform payload passed through to handlers.
            ctx: Prebuilt Context. When omitted the context factory
                builds one (or ctx stays None without a factory).

        Returns:
            Number of specific handlers run. 0 when vetoed.
        """
        if ctx is None and self.context_factory is not None:
            ctx = self.context_factory(event_name, raw_args)
        group = event_group(event_name)

        if self._middleware is not None:
            try:
                verdict = await maybe_await(self._middleware(event_name, ctx, *raw_args))
            except Exception as e:
                logger.error("event_middleware_failed", event_name=event_name, error=str(e))
                self._report("middleware", event_name, e)
                verdict = None
            if verdict is False:
                logger.debug("event_vetoed", event_name=event_name, group=group)
                return 0

        for observer in list(self._wildcards):
            await self._contain(event_name, ctx, observer, event_name, ctx, *raw_args)

        if event_name in self._waiters:
            payload = ctx if ctx is not None else (raw_args[0] if len(raw_args) == 1 else raw_args)
            await self._resolve_waiters(event_name, payload)

        ran = 0
        for subscription in self.handlers(event_name):
            if not self._is_live(subscription):
                continue
            if subscription.once:
                if not self.unsubscribe(subscription):
                    # Already consumed by a re-entrant emit
                    continue
            await self._contain(event_name, ctx, subscription.handler, ctx, *raw_args)
            ran += 1
        if ran:
            logger.debug("event_routed", event_name=event_name, group=group, handlers=ran)
        return ran
