from __future__ import annotations

from calendar import monthrange
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any

from attendance_core.models import AdminOverride
from attendance_core.services.cache import SingleFlightCache
from attendance_core.services.status_resolver import LeaveFact, PolicySettings, ResolvedStatus
from attendance_core.settings import Settings

GLOBAL_TENANT = "global"

StatusKey = tuple[int, date, AdminOverride]
LeaveWindowKey = tuple[int, date, date]


class PolicyCache:
    def __init__(self, ttl_seconds: float = 60 * 60, **kwargs: Any) -> None:
        self._cache: SingleFlightCache[str, PolicySettings] = SingleFlightCache("policy", ttl_seconds, **kwargs)

    def get(self, loader: Callable[[], PolicySettings], tenant: str = GLOBAL_TENANT) -> PolicySettings:
        return self._cache.get_or_compute(tenant, loader)

    def invalidate(self, tenant: str = GLOBAL_TENANT) -> None:
        self._cache.invalidate(tenant)

    def mutating(self, tenant: str = GLOBAL_TENANT) -> AbstractContextManager[None]:
        return self._cache.mutating(tenant)

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        return self._cache.stats()


def _status_scope(key: StatusKey) -> tuple[int, date]:
    return key[0], key[1]


class StatusCache:
    """Resolved status per (employee, date).

    The admin override is part of the key, so a day resolved before an override
    is never served once the override is on the log.
    """

    def __init__(self, ttl_seconds: float = 60, **kwargs: Any) -> None:
        self._cache: SingleFlightCache[StatusKey, ResolvedStatus] = SingleFlightCache(
            "status",
            ttl_seconds,
            scope_of=_status_scope,
            **kwargs,
        )

    def get_or_resolve(
        self,
        employee_id: int,
        day: date,
        admin_override: AdminOverride | None,
        resolver: Callable[[], ResolvedStatus],
    ) -> ResolvedStatus:
        key = (employee_id, day, admin_override or AdminOverride.NONE)
        return self._cache.get_or_compute(key, resolver)

    def invalidate(self, employee_id: int, day: date) -> None:
        self._cache.invalidate((employee_id, day))

    def mutating(self, employee_id: int, day: date) -> AbstractContextManager[None]:
        return self._cache.mutating((employee_id, day))

    @contextmanager
    def mutating_many(self, keys: list[tuple[int, date]]) -> Iterator[None]:
        with ExitStack() as stack:
            for key in dict.fromkeys(keys):
                stack.enter_context(self._cache.mutating(key))
            yield

    def mutating_all(self) -> AbstractContextManager[None]:
        return self._cache.mutating_all()

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        return self._cache.stats()


def leave_bucket(day: date) -> tuple[date, date]:
    """Calendar month containing ``day``."""
    return date(day.year, day.month, 1), date(day.year, day.month, monthrange(day.year, day.month)[1])


def _leave_scope(key: LeaveWindowKey) -> int:
    return key[0]


class LeaveWindowCache:
    def __init__(self, ttl_seconds: float = 5 * 60, **kwargs: Any) -> None:
        self._cache: SingleFlightCache[LeaveWindowKey, Mapping[date, LeaveFact]] = SingleFlightCache(
            "leave_window",
            ttl_seconds,
            scope_of=_leave_scope,
            **kwargs,
        )

    def get_window(
        self,
        employee_id: int,
        day: date,
        loader: Callable[[date, date], Mapping[date, LeaveFact]],
    ) -> Mapping[date, LeaveFact]:
        start, end = leave_bucket(day)
        return self._cache.get_or_compute((employee_id, start, end), lambda: loader(start, end))

    def leave_for_date(
        self,
        employee_id: int,
        day: date,
        loader: Callable[[date, date], Mapping[date, LeaveFact]],
    ) -> LeaveFact | None:
        return self.get_window(employee_id, day, loader).get(day)

    def invalidate(self, employee_id: int) -> None:
        self._cache.invalidate(employee_id)

    def mutating(self, employee_id: int) -> AbstractContextManager[None]:
        return self._cache.mutating(employee_id)

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        return self._cache.stats()


@dataclass
class AttendanceCaches:
    policy: PolicyCache
    status: StatusCache
    leave: LeaveWindowCache

    def stats(self) -> dict[str, Any]:
        return {
            "policy": self.policy.stats(),
            "status": self.status.stats(),
            "leave_window": self.leave.stats(),
        }


def build_caches(settings: Settings, **kwargs: Any) -> AttendanceCaches:
    max_entries = settings.cache_max_entries
    return AttendanceCaches(
        policy=PolicyCache(settings.policy_cache_ttl_seconds, max_entries=max_entries, **kwargs),
        status=StatusCache(settings.status_cache_ttl_seconds, max_entries=max_entries, **kwargs),
        leave=LeaveWindowCache(settings.leave_cache_ttl_seconds, max_entries=max_entries, **kwargs),
    )
