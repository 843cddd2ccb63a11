"""Hook execution runtime with per-plugin fault isolation."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import pluggy
from loguru import logger

type FailureCallback = Callable[[str, Exception], Awaitable[None]]


class HookRuntime:
    """Safe wrapper around pluggy hook execution.

    A failing implementation is reported through ``on_failure`` (or logged when
    none is set) and skipped, so one plugin cannot break its siblings.
    """

    def __init__(self, plugin_manager: pluggy.PluginManager, *, on_failure: FailureCallback | None = None) -> None:
        self._plugin_manager = plugin_manager
        self._on_failure = on_failure

    async def call_first(self, hook_name: str, **kwargs: Any) -> Any:
        """Run hook implementations in precedence order and return first non-None value."""

        for impl in self._iter_hookimpls(hook_name):
            value = await self._invoke_impl_async(hook_name=hook_name, impl=impl, kwargs=kwargs)
            if value is _SKIP_VALUE:
                continue
            if value is not None:
                return value
        return None

    async def call_many(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Run all implementations and collect successful return values."""

        results: list[Any] = []
        for impl in self._iter_hookimpls(hook_name):
            value = await self._invoke_impl_async(hook_name=hook_name, impl=impl, kwargs=kwargs)
            if value is _SKIP_VALUE:
                continue
            results.append(value)
        return results

    async def call_many_strict(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Run all implementations, letting the first failure propagate."""

        results: list[Any] = []
        for impl in self._iter_hookimpls(hook_name):
            value = impl.function(**self._kwargs_for_impl(impl, kwargs))
            if inspect.isawaitable(value):
                value = await value
            results.append(value)
        return results

    def call_many_sync(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Synchronous variant of call_many for bootstrap hooks."""

        results: list[Any] = []
        for impl in self._iter_hookimpls(hook_name):
            value = self._invoke_impl_sync(hook_name=hook_name, impl=impl, kwargs=kwargs)
            if value is _SKIP_VALUE:
                continue
            results.append(value)
        return results

    async def notify_error(self, *, error: BaseException, context: Any = None) -> None:
        """Call on_error hooks, swallowing observer failures."""

        for impl in self._iter_hookimpls("on_error"):
            call_kwargs = self._kwargs_for_impl(impl, {"error": error, "context": context})
            try:
                value = impl.function(**call_kwargs)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning(
                    "hook.on_error_failed plugin={}",
                    impl.plugin_name or "<unknown>",
                )

    def hook_report(self) -> dict[str, list[str]]:
        """Build a hook->plugins mapping for diagnostics."""

        report: dict[str, list[str]] = {}
        for hook_name, hook_caller in sorted(self._plugin_manager.hook.__dict__.items()):
            if hook_name.startswith("_") or not hasattr(hook_caller, "get_hookimpls"):
                continue
            plugin_names = [impl.plugin_name for impl in hook_caller.get_hookimpls()]
            if plugin_names:
                report[hook_name] = plugin_names
        return report

    async def _invoke_impl_async(self, *, hook_name: str, impl: Any, kwargs: dict[str, Any]) -> Any:
        try:
            value = impl.function(**self._kwargs_for_impl(impl, kwargs))
            if inspect.isawaitable(value):
                value = await value
        except Exception as error:
            await self._report_failure(f"{hook_name}:{impl.plugin_name or '<unknown>'}", error)
            return _SKIP_VALUE
        return value

    def _invoke_impl_sync(self, *, hook_name: str, impl: Any, kwargs: dict[str, Any]) -> Any:
        try:
            value = impl.function(**self._kwargs_for_impl(impl, kwargs))
        except Exception:
            logger.opt(exception=True).warning(
                "hook.failed hook={} plugin={}",
                hook_name,
                impl.plugin_name or "<unknown>",
            )
            return _SKIP_VALUE
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            logger.warning(
                "hook.async_not_supported hook={} plugin={}",
                hook_name,
                impl.plugin_name or "<unknown>",
            )
            return _SKIP_VALUE
        return value

    async def _report_failure(self, stage: str, error: Exception) -> None:
        logger.opt(exception=error).warning("hook.failed stage={}", stage)
        if self._on_failure is not None:
            await self._on_failure(stage, error)

    def _iter_hookimpls(self, hook_name: str) -> list[Any]:
        hook = getattr(self._plugin_manager.hook, hook_name, None)
        if hook is None or not hasattr(hook, "get_hookimpls"):
            return []
        # later registrations take precedence
        return list(reversed(hook.get_hookimpls()))

    @staticmethod
    def _kwargs_for_impl(impl: Any, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {name: kwargs[name] for name in impl.argnames if name in kwargs}


_SKIP_VALUE = object()
