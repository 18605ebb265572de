"""
Owner-facing statistics for a site.

Per-page totals come from the page/device counters; the day series are
rebuilt from raw visit history. Everything is read inside one transaction
so a concurrent visit is either fully visible or not at all.
"""

from collections import Counter
from datetime import timezone
from zoneinfo import ZoneInfo

from models import PageStat, Visit
from normalize import DEVICE_TYPES
from sites import require_owned_site


def _begin_snapshot(session):
    # SQLite transactions are already serialized (BEGIN IMMEDIATE)
    if session.get_bind().dialect.name == 'postgresql' and not session.in_transaction():
        session.connection(execution_options={'isolation_level': 'REPEATABLE READ'})


def _local_day(visited_at, zone):
    """Calendar day of a naive UTC timestamp in ``zone`` (None = server local time)."""
    return visited_at.replace(tzinfo=timezone.utc).astimezone(zone).date().isoformat()


def _isoformat(value):
    return value.isoformat() if value else None


def summarize_pages(rows):
    """Fold (page, device, count, last_seen) counter rows into one entry per page."""
    pages = {}
    for page_path, device_type, visit_count, last_seen in rows:
        page = pages.setdefault(page_path, {
            'page': page_path,
            'total_visits': 0,
            'devices': dict.fromkeys(DEVICE_TYPES, 0),
            'last_seen': None,
        })
        page['total_visits'] += visit_count
        page['devices'][device_type] = visit_count
        if last_seen and (page['last_seen'] is None or last_seen > page['last_seen']):
            page['last_seen'] = last_seen

    for page in pages.values():
        page['last_seen'] = _isoformat(page['last_seen'])
    return list(pages.values())


def summarize_days(visits, zone=None):
    """Return (visits_by_day, page_visits_by_day) from (page, visited_at) rows."""
    by_day = Counter()
    by_page = {}

    for page_path, visited_at in visits:
        day = _local_day(visited_at, zone)
        by_day[day] += 1
        by_page.setdefault(page_path, Counter())[day] += 1

    visits_by_day = [{'date': day, 'visits': by_day[day]} for day in sorted(by_day)]
    page_visits_by_day = [
        {
            'page': page_path,
            'days': [{'date': day, 'visits': days[day]} for day in sorted(days)],
        }
        for page_path, days in by_page.items()
    ]
    return visits_by_day, page_visits_by_day


def get_site_stats(session, site_uuid, caller_pubkey, tz=None):
    zone = ZoneInfo(tz) if tz else None

    try:
        _begin_snapshot(session)
        site = require_owned_site(session, site_uuid, caller_pubkey)

        rows = (
            session.query(PageStat.page_path, PageStat.device_type, PageStat.visit_count, PageStat.last_seen)
            .filter(PageStat.site_id == site.id)
            .order_by(PageStat.page_path, PageStat.device_type)
            .all()
        )
        visits = (
            session.query(Visit.page_path, Visit.visited_at)
            .filter(Visit.site_id == site.id)
            .order_by(Visit.page_path, Visit.visited_at)
            .all()
        )
        summary = {
            'site_uuid': site.site_uuid,
            'name': site.name,
            'owner_npub': site.owner_npub,
        }
        session.commit()
    except Exception:
        session.rollback()
        raise

    pages = summarize_pages(rows)
    visits_by_day, page_visits_by_day = summarize_days(visits, zone)

    return {
        'site': summary,
        'totals': {
            'visits': sum(page['total_visits'] for page in pages),
            'pages': len(pages),
        },
        'pages': pages,
        'visits_by_day': visits_by_day,
        'page_visits_by_day': page_visits_by_day,
    }
