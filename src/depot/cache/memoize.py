"""Memoization of expensive async computations.

A ``MemoizationPolicy`` says how a computation's results are cached: the key
template, how volatile the result is (which picks the TTL), which entities
it depends on (which become invalidation tags), whether the in-process tier
may hold it, and which results are worth caching at all.

Wrapping is explicit. Call sites opt in by building the wrapper, so the
caching boundary is visible where the function is used:

    memoizer = Memoizer(get_cache())

    optimize = memoizer.wrap(
        optimize_packaging,
        MemoizationPolicy(
            key_template="packaging:{0}:{1}",
            volatility=Volatility.LOW,
            dependencies=("products", "pallets"),
            accept=lambda plan: plan.feasible,
        ),
    )
    plan = await optimize(product_id, quantity)

Cache writes happen in background tasks. A failing cache never fails the
call: lookup errors count as a miss and write errors are logged.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from depot.cache.keys import KeyBuilder
from depot.cache.local import LocalTier
from depot.config import settings
from depot.errors import CacheError
from depot.observability.metrics import (
    record_cache_hit,
    record_cache_miss,
    record_memoize_write,
)

if TYPE_CHECKING:
    from depot.cache.service import CacheService

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


class Volatility(str, Enum):
    """How quickly a cached result goes stale."""

    HIGH = "high"  # Changes frequently (minutes)
    MEDIUM = "medium"  # Changes moderately (tens of minutes)
    LOW = "low"  # Changes rarely (an hour)
    STATIC = "static"  # Practically never changes

    @property
    def ttl(self) -> int:
        """Remote TTL in seconds."""
        return _REMOTE_TTL[self]

    @property
    def local_ttl(self) -> int:
        """In-process TTL in seconds, always shorter than the remote one."""
        return _LOCAL_TTL[self]


_REMOTE_TTL = {
    Volatility.HIGH: 300,
    Volatility.MEDIUM: 1800,
    Volatility.LOW: 3600,
    Volatility.STATIC: 7200,
}

_LOCAL_TTL = {
    Volatility.HIGH: 60,
    Volatility.MEDIUM: 300,
    Volatility.LOW: 600,
    Volatility.STATIC: 1800,
}


class MemoizeMode(str, Enum):
    """Whether a wrapped call consults the cache before computing."""

    CACHE_FIRST = "cache_first"
    WRITE_THROUGH = "write_through"  # always compute, then cache


def _accept_all(result: Any) -> bool:
    return True


@dataclass(frozen=True)
class MemoizationPolicy:
    """Caching policy for one memoized computation.

    Attributes:
        key_template: Cache key with positional placeholders ``{0}``, ``{1}``...
        volatility: Picks the TTL unless ``ttl`` overrides it
        dependencies: Entity names the result depends on, used as tags
        use_local_tier: Also keep the result in process memory
        accept: Predicate deciding whether a result is cached at all
        ttl: Explicit remote TTL in seconds
        mode: Consult the cache first, or always recompute
    """

    key_template: str
    volatility: Volatility = Volatility.MEDIUM
    dependencies: tuple[str, ...] = ()
    use_local_tier: bool = True
    accept: Callable[[Any], bool] = _accept_all
    ttl: int | None = None
    mode: MemoizeMode = MemoizeMode.CACHE_FIRST

    def __post_init__(self) -> None:
        if not self.key_template:
            raise ValueError("key_template is required")
        if self.ttl is not None and self.ttl <= 0:
            raise ValueError("ttl must be positive")
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    @property
    def remote_ttl(self) -> int:
        return self.ttl or self.volatility.ttl

    @property
    def local_ttl(self) -> int:
        return min(self.volatility.local_ttl, self.remote_ttl)

    @property
    def prefix(self) -> str:
        """Sub-namespace for memoized results of this volatility."""
        return f"memo:{self.volatility.value}"


@dataclass(frozen=True)
class Scenario:
    """One branch of a multi-level cache: a call-shape predicate and its policy."""

    name: str
    predicate: Callable[..., bool]
    policy: MemoizationPolicy


class Memoizer:
    """Builds memoizing wrappers around async callables.

    With ``cache=None`` (caching unavailable) there is no remote tier: the
    wrappers compute on a miss and only the in-process tier serves repeats.
    """

    def __init__(self, cache: CacheService | None, local_tier: LocalTier | None = None):
        self.cache = cache
        self.local_tier = (
            local_tier if local_tier is not None else LocalTier(settings.local_tier_max_size)
        )
        self._pending: set[asyncio.Task[None]] = set()
        # dependency -> local keys, and the reverse, pruned as the tier drops keys
        self._local_dependencies: dict[str, set[str]] = {}
        self._local_key_dependencies: dict[str, tuple[str, ...]] = {}
        self.local_tier.add_listener(self._drop_local)

    # -------------------------------------------------------------------------
    # Keys and tiers
    # -------------------------------------------------------------------------

    @staticmethod
    def build_key(policy: MemoizationPolicy, args: Sequence[Any]) -> str:
        return KeyBuilder.from_template(policy.key_template, args)

    @staticmethod
    def _local_key(key: str, policy: MemoizationPolicy) -> str:
        return f"{policy.prefix}:{key}"

    def _remember(self, key: str, value: Any, policy: MemoizationPolicy) -> None:
        local_key = self._local_key(key, policy)
        self.local_tier.set(local_key, value, policy.local_ttl)
        if not policy.dependencies:
            return
        known = self._local_key_dependencies.get(local_key, ())
        self._local_key_dependencies[local_key] = tuple(
            dict.fromkeys(known + policy.dependencies)
        )
        for dependency in policy.dependencies:
            self._local_dependencies.setdefault(dependency, set()).add(local_key)

    def _drop_local(self, local_key: str) -> None:
        for dependency in self._local_key_dependencies.pop(local_key, ()):
            local_keys = self._local_dependencies.get(dependency)
            if local_keys is None:
                continue
            local_keys.discard(local_key)
            if not local_keys:
                del self._local_dependencies[dependency]

    def local_dependents(self, dependency: str) -> frozenset[str]:
        """In-process keys currently held for results depending on ``dependency``."""
        return frozenset(self._local_dependencies.get(dependency, ()))

    def forget(self, dependency: str) -> int:
        """Drop in-process copies of results depending on ``dependency``."""
        local_keys = self._local_dependencies.pop(dependency, set())
        return self.local_tier.delete_many(local_keys)

    async def lookup(self, key: str, policy: MemoizationPolicy) -> Any | None:
        """Find a cached result, local tier first. Errors count as a miss."""
        if policy.use_local_tier:
            value = self.local_tier.get(self._local_key(key, policy))
            if value is not None:
                record_cache_hit(tier="local")
                return value
            record_cache_miss(tier="local")

        if self.cache is None:
            return None

        try:
            value = await self.cache.get(key, prefix=policy.prefix)
        except CacheError as e:
            logger.warning("Cache lookup failed", extra={"key": key, "error": str(e)})
            return None

        if value is not None and policy.use_local_tier:
            self._remember(key, value, policy)
        return value

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _write(self, key: str, value: Any, policy: MemoizationPolicy) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(
                key,
                value,
                ttl=policy.remote_ttl,
                tags=policy.dependencies,
                prefix=policy.prefix,
            )
        except (CacheError, TypeError) as e:
            # TypeError covers results orjson cannot encode
            record_memoize_write("failed")
            logger.error("Cache operation failed", extra={"key": key, "error": str(e)})
            return
        record_memoize_write("stored")

    def _accepts(self, key: str, value: Any, policy: MemoizationPolicy) -> bool:
        if value is None:
            return False
        try:
            return bool(policy.accept(value))
        except Exception:
            logger.exception("Cache acceptance check failed", extra={"key": key})
            return False

    def offer(self, key: str, value: Any, policy: MemoizationPolicy) -> bool:
        """Cache ``value`` in the background if the policy accepts it.

        Returns whether the value was accepted.
        """
        if not self._accepts(key, value, policy):
            record_memoize_write("rejected")
            return False

        if policy.use_local_tier:
            self._remember(key, value, policy)

        if self.cache is not None:
            task = asyncio.create_task(self._write(key, value, policy))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return True

    async def drain(self) -> None:
        """Wait for every background cache write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # -------------------------------------------------------------------------
    # Manual helpers
    # -------------------------------------------------------------------------

    async def store(self, key: str, value: Any, policy: MemoizationPolicy) -> bool:
        """Cache a value now, outside any wrapper. Returns whether it was accepted."""
        if not self._accepts(key, value, policy):
            record_memoize_write("rejected")
            return False
        if policy.use_local_tier:
            self._remember(key, value, policy)
        await self._write(key, value, policy)
        return True

    async def invalidate(self, dependency: str) -> int:
        """Best-effort invalidation of everything depending on ``dependency``.

        Returns the number of remote keys removed, 0 if the cache failed.
        """
        self.forget(dependency)
        if self.cache is None:
            return 0
        try:
            return await self.cache.invalidate_by_tags([dependency])
        except CacheError as e:
            logger.error(
                "Cache invalidation failed",
                extra={"dependency": dependency, "error": str(e)},
            )
            return 0

    # -------------------------------------------------------------------------
    # Wrappers
    # -------------------------------------------------------------------------

    async def _call(
        self,
        fn: Callable[..., Awaitable[R]],
        policy: MemoizationPolicy,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        force: bool = False,
    ) -> R:
        key = self.build_key(policy, args)

        if policy.mode is MemoizeMode.CACHE_FIRST and not force:
            cached = await self.lookup(key, policy)
            if cached is not None:
                return cached  # type: ignore[no-any-return]

        result = await fn(*args, **kwargs)
        self.offer(key, result, policy)
        return result

    def wrap(
        self, fn: Callable[P, Awaitable[R]], policy: MemoizationPolicy
    ) -> Callable[P, Awaitable[R]]:
        """Memoize ``fn`` under ``policy``.

        Only positional arguments are substituted into the key template;
        keyword arguments do not distinguish cache entries.
        """

        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            return await self._call(fn, policy, args, kwargs)

        return wrapper

    def refreshing(
        self,
        fn: Callable[P, Awaitable[R]],
        policy: MemoizationPolicy,
        interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> Callable[P, Awaitable[R]]:
        """Memoize ``fn`` but recompute each key at least every ``interval_seconds``.

        The first call for a key and every call after the interval has
        elapsed recompute and overwrite the cached value; calls in between
        are served like ``wrap``.

        Refresh times are kept oldest first and only while they can still
        matter: entries older than the interval are dropped, and at most
        ``local_tier.max_size`` keys are tracked. A key pushed out early is
        simply recomputed on its next call. The map is exposed as
        ``wrapper.refresh_times``.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        last_refresh: OrderedDict[str, float] = OrderedDict()
        max_tracked = self.local_tier.max_size

        def prune(now: float) -> None:
            while last_refresh:
                oldest_key, oldest = next(iter(last_refresh.items()))
                if now - oldest < interval_seconds and len(last_refresh) <= max_tracked:
                    break
                del last_refresh[oldest_key]

        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            key = self.build_key(policy, args)
            now = clock()
            prune(now)
            previous = last_refresh.get(key)
            if previous is None or now - previous >= interval_seconds:
                result = await self._call(fn, policy, args, kwargs, force=True)
                last_refresh[key] = now
                last_refresh.move_to_end(key)
                prune(now)
                logger.debug("Refreshed memoized result", extra={"key": key})
                return result
            return await self._call(fn, policy, args, kwargs)

        wrapper.refresh_times = last_refresh  # type: ignore[attr-defined]
        return wrapper

    def conditional(
        self,
        fn: Callable[P, Awaitable[R]],
        predicate: Callable[..., bool],
        policy: MemoizationPolicy,
    ) -> Callable[P, Awaitable[R]]:
        """Memoize only the calls whose arguments satisfy ``predicate``."""
        return self.multi_level(fn, [Scenario("conditional", predicate, policy)])

    def multi_level(
        self,
        fn: Callable[P, Awaitable[R]],
        scenarios: Sequence[Scenario],
    ) -> Callable[P, Awaitable[R]]:
        """Pick a policy per call from the first scenario whose predicate matches.

        Calls matching no scenario run uncached.
        """
        scenario_list = list(scenarios)

        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            for scenario in scenario_list:
                if scenario.predicate(*args, **kwargs):
                    return await self._call(fn, scenario.policy, args, kwargs)
            return await fn(*args, **kwargs)

        return wrapper


def memoize(
    fn: Callable[P, Awaitable[R]],
    policy: MemoizationPolicy,
    cache: CacheService | None,
) -> Callable[P, Awaitable[R]]:
    """Shorthand for ``Memoizer(cache).wrap(fn, policy)``."""
    return Memoizer(cache).wrap(fn, policy)
