"""Word usage metering.

Aggregates recordings inside a billing cycle window and derives the usage
analytics shown against the plan's word limit.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from app.modules.billing.cycles import BillingCycleWindow, ensure_utc
from app.modules.billing.models import Recording
from app.modules.billing.repository import RecordingRepository


class UsageTrend(str, Enum):
    """Direction of word usage between the two most recent cycles."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


# Relative change against the cycle average that counts as a trend
TREND_THRESHOLD_RATIO = 0.1


@dataclass
class UsageReportEntry:
    """One recording inside a usage report."""
    id: int
    name: str
    created_at: datetime
    word_count: int
    duration: int
    order: int
    is_active: bool = True


@dataclass
class UsageReport:
    """Usage aggregated over a billing cycle window."""
    window: BillingCycleWindow
    total_word_count: int = 0
    recording_count: int = 0
    total_duration: int = 0
    first_recording_created_at: Optional[datetime] = None
    last_recording_created_at: Optional[datetime] = None
    recordings: list[UsageReportEntry] = field(default_factory=list)


@dataclass
class CycleAnalytics:
    """Usage of one cycle measured against the word limit."""
    word_limit: int
    current_usage: int
    usage_percentage: int
    remaining_words: int
    has_exceeded_limit: bool
    days_remaining: int
    average_words_per_recording: int
    total_recording_duration: int
    average_duration_per_recording: int


@dataclass
class CycleComparison:
    """Words in one cycle compared with the cycle before it."""
    cycle: str
    words: int
    recordings: int
    change: str


@dataclass
class TrendAnalytics:
    """Usage trend across several cycles."""
    total_words_across_cycles: int
    average_words_per_cycle: int
    usage_trend: UsageTrend
    cycle_comparison: list[CycleComparison] = field(default_factory=list)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    if value < 0:
        return -math.floor(-value + 0.5)
    return math.floor(value + 0.5)


def build_usage_report(
    window: BillingCycleWindow,
    recordings: Sequence[Recording],
) -> UsageReport:
    """Aggregate recordings that fall inside a window.

    Recordings outside ``[window.start, window.end)`` are ignored. The rest
    are ordered by creation time, ties broken by id, and numbered from 1.

    Args:
        window: Billing cycle window
        recordings: Candidate recordings, in any order

    Returns:
        UsageReport for the window
    """
    inside = [
        r for r in recordings
        if window.contains(ensure_utc(r.recorded_at))
    ]
    inside.sort(key=lambda r: (ensure_utc(r.recorded_at), r.id))

    entries = [
        UsageReportEntry(
            id=r.id,
            name=r.title,
            created_at=ensure_utc(r.recorded_at),
            word_count=r.word_count or 0,
            duration=r.duration or 0,
            order=position,
            is_active=r.is_active,
        )
        for position, r in enumerate(inside, start=1)
    ]

    return UsageReport(
        window=window,
        total_word_count=sum(e.word_count for e in entries),
        recording_count=len(entries),
        total_duration=sum(e.duration for e in entries),
        first_recording_created_at=entries[0].created_at if entries else None,
        last_recording_created_at=entries[-1].created_at if entries else None,
        recordings=entries,
    )


def calculate_cycle_analytics(
    report: UsageReport,
    word_limit: int,
    now: datetime,
) -> CycleAnalytics:
    """Measure a usage report against the plan's word limit.

    Args:
        report: Usage report for the cycle
        word_limit: Words allowed per cycle
        now: Current instant, for the days left in the cycle

    Returns:
        CycleAnalytics
    """
    total = report.total_word_count
    count = report.recording_count

    if word_limit > 0:
        usage_percentage = round_half_up(total / word_limit * 100)
    else:
        usage_percentage = 0

    seconds_left = (report.window.end - ensure_utc(now)).total_seconds()
    days_remaining = max(0, math.ceil(seconds_left / timedelta(days=1).total_seconds()))

    return CycleAnalytics(
        word_limit=word_limit,
        current_usage=total,
        usage_percentage=usage_percentage,
        remaining_words=max(0, word_limit - total),
        has_exceeded_limit=total > word_limit,
        days_remaining=days_remaining,
        average_words_per_recording=round_half_up(total / count) if count else 0,
        total_recording_duration=report.total_duration,
        average_duration_per_recording=round_half_up(report.total_duration / count) if count else 0,
    )


def _format_change(current: int, previous: int) -> str:
    if previous <= 0:
        return "N/A"
    percent = round_half_up((current - previous) / previous * 100)
    return f"+{percent}%" if percent > 0 else f"{percent}%"


def calculate_trend(reports: Sequence[UsageReport]) -> TrendAnalytics:
    """Summarize usage across cycles, most recent first.

    The trend compares the two most recent cycles. A difference larger than
    10% of the average cycle counts as increasing or decreasing.

    Args:
        reports: Usage reports, index 0 being the current cycle

    Returns:
        TrendAnalytics
    """
    totals = [r.total_word_count for r in reports]
    total_words = sum(totals)
    average = total_words / len(totals) if totals else 0

    trend = UsageTrend.STABLE
    if len(totals) >= 2:
        threshold = average * TREND_THRESHOLD_RATIO
        difference = totals[0] - totals[1]
        if difference > threshold:
            trend = UsageTrend.INCREASING
        elif difference < -threshold:
            trend = UsageTrend.DECREASING

    comparison = []
    for index, report in enumerate(reports):
        label = "current" if index == 0 else f"{index}_cycles_ago"
        if index + 1 < len(reports):
            change = _format_change(report.total_word_count, reports[index + 1].total_word_count)
        else:
            change = "N/A"
        comparison.append(CycleComparison(
            cycle=label,
            words=report.total_word_count,
            recordings=report.recording_count,
            change=change,
        ))

    return TrendAnalytics(
        total_words_across_cycles=total_words,
        average_words_per_cycle=round_half_up(average),
        usage_trend=trend,
        cycle_comparison=comparison,
    )


class UsageAggregator:
    """Builds usage reports from the recording store."""

    def __init__(self, recording_repo: RecordingRepository):
        self.recording_repo = recording_repo

    async def report(self, window: BillingCycleWindow, user_id: int) -> UsageReport:
        """Aggregate a user's recordings inside a window.

        An empty window is not an error; it yields a zeroed report.
        """
        recordings = await self.recording_repo.get_in_window(
            user_id, window.start, window.end
        )
        return build_usage_report(window, recordings)

    async def reports(
        self,
        windows: Sequence[BillingCycleWindow],
        user_id: int,
    ) -> list[UsageReport]:
        """Aggregate each window independently, preserving order."""
        return [await self.report(window, user_id) for window in windows]
