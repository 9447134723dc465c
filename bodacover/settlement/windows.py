"""
Batch window coordination.

Partitions the continuous payment stream into non-overlapping daily
settlement windows bounded by configured trigger times (local time,
default 08:00 / 14:00 / 20:00 EAT).

Window i of a day is [trigger_{i-1}, trigger_i), closed-open. Under the
OVERNIGHT_ABSORBED_BY_FIRST_WINDOW policy the first window of a day starts
at the last trigger of the previous day, so the overnight gap belongs to
exactly one window and the N windows of a day cover exactly 24 hours.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Optional, Sequence

from ..scheduler.schedule import EAT


OVERNIGHT_ABSORBED_BY_FIRST_WINDOW = "OVERNIGHT_ABSORBED_BY_FIRST_WINDOW"

DEFAULT_TRIGGER_TIMES = (time(8, 0), time(14, 0), time(20, 0))

WINDOW_ID_PATTERN = re.compile(r"^(\d{8})-B(\d+)$")

# Bound on the catch-up report for very long outages
MAX_LISTED_WINDOWS = 500


@dataclass(frozen=True)
class BatchWindow:
    """A settlement window [range_start, range_end) in UTC."""

    slot_index: int
    range_start: datetime
    range_end: datetime
    window_id: str

    def contains(self, instant: datetime) -> bool:
        return self.range_start <= instant < self.range_end

    @property
    def duration(self) -> timedelta:
        return self.range_end - self.range_start

    def to_dict(self) -> dict:
        return {
            "window_id": self.window_id,
            "slot_index": self.slot_index,
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
        }


def _as_aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


class BatchWindowCoordinator:
    """Maps instants to settlement windows."""

    def __init__(
        self,
        trigger_times: Iterable[time] = DEFAULT_TRIGGER_TIMES,
        tz: tzinfo = EAT,
        overnight_policy: str = OVERNIGHT_ABSORBED_BY_FIRST_WINDOW,
    ):
        """
        Args:
            trigger_times: Local times of day at which windows close
            tz: Zone the trigger times are expressed in
            overnight_policy: How the gap between the last and first
                trigger is assigned

        Raises:
            ValueError: On an empty or duplicated trigger list, or an
                unsupported policy
        """
        times = list(trigger_times)
        if not times:
            raise ValueError("At least one trigger time is required")
        if len(set(times)) != len(times):
            raise ValueError("Trigger times must be distinct")
        if overnight_policy != OVERNIGHT_ABSORBED_BY_FIRST_WINDOW:
            raise ValueError(f"Unsupported overnight policy: {overnight_policy}")

        self.trigger_times: tuple[time, ...] = tuple(sorted(times))
        self.tz = tz
        self.overnight_policy = overnight_policy

    @property
    def slots_per_day(self) -> int:
        return len(self.trigger_times)

    def _trigger_at(self, day: date, slot: int) -> datetime:
        return datetime.combine(day, self.trigger_times[slot], tzinfo=self.tz)

    def _window_ending(self, day: date, slot: int) -> BatchWindow:
        """The window whose range_end is trigger `slot` on local `day`."""
        end = self._trigger_at(day, slot)
        if slot == 0:
            start = self._trigger_at(day - timedelta(days=1), self.slots_per_day - 1)
        else:
            start = self._trigger_at(day, slot - 1)

        return BatchWindow(
            slot_index=slot,
            range_start=start.astimezone(timezone.utc),
            range_end=end.astimezone(timezone.utc),
            window_id=f"{day:%Y%m%d}-B{slot + 1}",
        )

    def _local(self, instant: datetime) -> datetime:
        return _as_aware(instant).astimezone(self.tz)

    # =========================================================================
    # Lookups
    # =========================================================================

    def window_for(self, trigger_time: datetime) -> BatchWindow:
        """
        The most recently closed window at `trigger_time`.

        Returns the window with range_end <= trigger_time < next range_end.
        """
        local = self._local(trigger_time)
        day = local.date()

        for slot in reversed(range(self.slots_per_day)):
            if self._trigger_at(day, slot) <= local:
                return self._window_ending(day, slot)

        return self._window_ending(day - timedelta(days=1), self.slots_per_day - 1)

    def window_containing(self, instant: datetime) -> BatchWindow:
        """The window with range_start <= instant < range_end."""
        local = self._local(instant)
        day = local.date()

        for slot in range(self.slots_per_day):
            if local < self._trigger_at(day, slot):
                return self._window_ending(day, slot)

        return self._window_ending(day + timedelta(days=1), 0)

    def windows_for_day(self, day: date) -> list[BatchWindow]:
        """The N windows whose range_end falls on local `day`."""
        return [self._window_ending(day, slot) for slot in range(self.slots_per_day)]

    def window_by_id(self, window_id: str) -> BatchWindow:
        """
        Rebuild a window from its id ("YYYYMMDD-B<slot+1>").

        Raises:
            ValueError: If the id is malformed or names a missing slot
        """
        match = WINDOW_ID_PATTERN.match(window_id or "")
        if match is None:
            raise ValueError(f"Malformed window id: {window_id!r}")

        day = datetime.strptime(match.group(1), "%Y%m%d").date()
        slot = int(match.group(2)) - 1
        if not 0 <= slot < self.slots_per_day:
            raise ValueError(
                f"Window id {window_id!r} names slot {slot + 1} but only "
                f"{self.slots_per_day} windows exist per day"
            )

        return self._window_ending(day, slot)

    def next_window(self, window: BatchWindow) -> BatchWindow:
        return self.window_containing(window.range_end)

    def previous_window(self, window: BatchWindow) -> BatchWindow:
        return self.window_for(window.range_start - timedelta(microseconds=1))

    def windows_between(
        self,
        start: datetime,
        end: datetime,
        limit: int = MAX_LISTED_WINDOWS,
    ) -> list[BatchWindow]:
        """Windows that closed in (start, end], oldest first."""
        start = _as_aware(start)
        end = _as_aware(end)
        windows: list[BatchWindow] = []

        window = self.window_containing(start)
        while window.range_end <= end and len(windows) < limit:
            windows.append(window)
            window = self.next_window(window)

        return windows

    def next_trigger_after(self, instant: datetime) -> datetime:
        """The first trigger strictly after `instant`, in UTC."""
        return self.window_containing(instant).range_end

    def upcoming_triggers(self, instant: datetime, count: int) -> list[datetime]:
        triggers = []
        current = instant
        for _ in range(count):
            current = self.next_trigger_after(current)
            triggers.append(current)
        return triggers


def missed_windows(
    coordinator: BatchWindowCoordinator,
    current: BatchWindow,
    last_run_at: Optional[datetime],
) -> Sequence[BatchWindow]:
    """
    Windows that closed after the previous run and before `current`.

    A run processes only the most recently closed window; these are the
    ones an operator has to re-run explicitly.
    """
    if last_run_at is None:
        return []
    return coordinator.windows_between(last_run_at, current.range_start)
