"""
Visit recording.

Each call writes one raw visit row and bumps the matching
(site, page, device) counter inside a single transaction. A visit that
carries an ``event_id`` already stored is a repeated delivery: nothing is
written and the current counter is returned as is.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.dialects import postgresql, sqlite

from models import PageStat, Visit
from normalize import normalize_device_type, normalize_page_path
from sites import resolve_site

logger = logging.getLogger(__name__)

# Dialects with INSERT ... ON CONFLICT
_UPSERT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


@dataclass
class VisitResult:
    site_uuid: str
    page_path: str
    device_type: str
    visits: int
    last_seen: datetime | None
    duplicate: bool = False

    def to_dict(self):
        return {
            'site_uuid': self.site_uuid,
            'page_path': self.page_path,
            'device_type': self.device_type,
            'visits': self.visits,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None,
        }


def _insert_visit(session, upsert_insert, values):
    """Write the raw visit. Returns False when ``event_id`` was already recorded."""
    if upsert_insert is not None:
        stmt = (
            upsert_insert(Visit.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=['event_id'])
        )
        return session.execute(stmt).rowcount > 0

    # No native upsert: the unique constraint still rejects a racing duplicate
    if values['event_id'] and session.query(Visit.id).filter_by(event_id=values['event_id']).first():
        return False
    session.add(Visit(**values))
    session.flush()
    return True


def _increment_page_stat(session, upsert_insert, site_id, page_path, device_type, now):
    if upsert_insert is not None:
        table = PageStat.__table__
        stmt = upsert_insert(table).values(
            site_id=site_id,
            page_path=page_path,
            device_type=device_type,
            visit_count=1,
            last_seen=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['site_id', 'page_path', 'device_type'],
            set_={'visit_count': table.c.visit_count + 1, 'last_seen': now},
        )
        session.execute(stmt)
        return

    stat = (
        session.query(PageStat)
        .filter_by(site_id=site_id, page_path=page_path, device_type=device_type)
        .with_for_update()
        .first()
    )
    if stat is None:
        session.add(PageStat(
            site_id=site_id,
            page_path=page_path,
            device_type=device_type,
            visit_count=1,
            last_seen=now,
        ))
    else:
        stat.visit_count += 1
        stat.last_seen = now
    session.flush()


def _current_page_stat(session, site_id, page_path, device_type):
    return (
        session.query(PageStat.visit_count, PageStat.last_seen)
        .filter_by(site_id=site_id, page_path=page_path, device_type=device_type)
        .first()
    )


def record_visit(session, site_uuid, page_path=None, device_type=None,
                 user_agent=None, event_id=None, now=None):
    """Record one page view and return the resulting counter for its page/device."""
    page_path = normalize_page_path(page_path)
    device_type = normalize_device_type(device_type, user_agent)
    event_id = (event_id or '').strip() or None
    now = now or datetime.utcnow()

    upsert_insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)

    try:
        site = resolve_site(session, site_uuid)

        inserted = _insert_visit(session, upsert_insert, {
            'site_id': site.id,
            'page_path': page_path,
            'device_type': device_type,
            'event_id': event_id,
            'visited_at': now,
        })
        if inserted:
            _increment_page_stat(session, upsert_insert, site.id, page_path, device_type, now)

        row = _current_page_stat(session, site.id, page_path, device_type)
        session.commit()
    except Exception:
        session.rollback()
        raise

    if not inserted:
        logger.info('Duplicate visit event %s for site %s ignored', event_id, site_uuid)

    visit_count, last_seen = row if row is not None else (0, None)
    return VisitResult(
        site_uuid=site_uuid,
        page_path=page_path,
        device_type=device_type,
        visits=visit_count,
        last_seen=last_seen,
        duplicate=not inserted,
    )
