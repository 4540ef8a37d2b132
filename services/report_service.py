"""Communication analytics for scheduled reports."""

from __future__ import annotations

import calendar
import math
from datetime import datetime, timedelta
from typing import Iterable, List

SUCCESS_STATUSES = ('completed', 'sent', 'delivered')
REPORT_SECTIONS = ('summary', 'channel_breakdown', 'response_times')


def _shift_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def window_start(frequency: str, now: datetime) -> datetime:
    """Start of the reporting window that ends at ``now``."""
    if frequency == 'daily':
        return now - timedelta(days=1)
    if frequency == 'weekly':
        return now - timedelta(days=7)
    if frequency == 'monthly':
        return _shift_months(now, -1)
    return now


def next_run_after(frequency: str, moment: datetime) -> datetime:
    if frequency == 'daily':
        return moment + timedelta(days=1)
    if frequency == 'weekly':
        return moment + timedelta(days=7)
    return _shift_months(moment, 1)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _is_success(comm: dict) -> bool:
    return comm.get('status') in SUCCESS_STATUSES


def calculate_analytics(communications: Iterable[dict], sections: List[str]) -> dict:
    comms = list(communications)
    analytics = {'total': len(comms)}

    if 'summary' in sections:
        successful = sum(1 for c in comms if _is_success(c))
        analytics['summary'] = {
            'total': len(comms),
            'outbound': sum(1 for c in comms if c.get('direction') == 'outbound'),
            'inbound': sum(1 for c in comms if c.get('direction') == 'inbound'),
            'successful': successful,
            'success_rate': _round_half_up(successful / len(comms) * 100) if comms else 0,
        }

    if 'channel_breakdown' in sections:
        channels = {}
        for c in comms:
            bucket = channels.setdefault(c.get('channel'), {'total': 0, 'successful': 0})
            bucket['total'] += 1
            if _is_success(c):
                bucket['successful'] += 1
        analytics['channels'] = channels

    if 'response_times' in sections:
        times = [c['response_time_seconds'] for c in comms if (c.get('response_time_seconds') or 0) > 0]
        analytics['response_times'] = {
            'count': len(times),
            'average': _round_half_up(sum(times) / len(times)) if times else 0,
            'min': min(times) if times else 0,
            'max': max(times) if times else 0,
        }

    return analytics


def format_date_range(start: datetime, end: datetime) -> str:
    return f"{start.strftime('%b')} {start.day} - {end.strftime('%b')} {end.day}"


def format_duration(seconds: int) -> str:
    """Human duration used in alert emails, e.g. ``1h 5m``, ``4m 10s`` or ``12s``."""
    seconds = int(seconds or 0)
    hours, remainder = divmod(seconds, 3600)
    mins, secs = divmod(remainder, 60)
    if hours > 0:
        return f'{hours}h {mins}m'
    if mins > 0:
        return f'{mins}m {secs}s'
    return f'{secs}s'


def success_rate_color(rate: int) -> str:
    if rate >= 80:
        return '#059669'
    if rate >= 60:
        return '#d97706'
    return '#dc2626'
