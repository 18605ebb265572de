"""
Site registry and the ownership guard.

A site is created by its first registration and keyed by the public
``site_uuid`` the website supplies. The owner identity can be set once;
after that only the same key (in either encoding) may touch owner-scoped
operations.
"""

import logging
import secrets
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from errors import AuthorizationFailed, NotFound, OwnershipConflict, ValidationFailed
from identity import normalize_pubkey
from models import PageStat, Site, Visit

logger = logging.getLogger(__name__)

# Marks an optional field the caller did not send, as opposed to an explicit null
UNSET = object()


def generate_secret_token():
    return secrets.token_hex(24)


def _require_site_uuid(site_uuid):
    if not site_uuid or not site_uuid.strip():
        raise ValidationFailed('site_uuid is required')
    return site_uuid


def _same_owner(stored, incoming):
    stored_hex = normalize_pubkey(stored)
    incoming_hex = normalize_pubkey(incoming)
    if stored_hex and incoming_hex:
        return stored_hex == incoming_hex
    return stored == incoming


def find_site(session, site_uuid):
    return session.query(Site).filter_by(site_uuid=site_uuid).first()


def resolve_site(session, site_uuid):
    """Return the site for ``site_uuid`` or raise NotFound."""
    _require_site_uuid(site_uuid)

    site = find_site(session, site_uuid)
    if site is None:
        raise NotFound(f'Site not found: {site_uuid}')
    return site


def register_site(session, site_uuid, owner_npub, name=None):
    """Create the site, or update name/owner of an existing one.

    An owner that is already stored can only be re-sent, never replaced;
    a different non-empty owner raises OwnershipConflict. Fields passed as
    None leave the stored value alone.
    """
    _require_site_uuid(site_uuid)
    owner_npub = (owner_npub or '').strip() or None

    try:
        return _save_site(session, site_uuid, owner_npub, name)
    except IntegrityError:
        # A concurrent registration created the row first; take the update path once
        logger.info('Site %s registered concurrently, retrying as update', site_uuid)
        return _save_site(session, site_uuid, owner_npub, name)


def _save_site(session, site_uuid, owner_npub, name):
    try:
        site = find_site(session, site_uuid)
        now = datetime.utcnow()

        if site is None:
            site = Site(
                site_uuid=site_uuid,
                name=name,
                owner_npub=owner_npub,
                secret_token=generate_secret_token(),
                created_at=now,
                updated_at=now,
            )
            session.add(site)
            logger.info('Registered site %s', site_uuid)
        else:
            if owner_npub and site.owner_npub and not _same_owner(site.owner_npub, owner_npub):
                logger.warning('Owner conflict while registering site %s', site_uuid)
                raise OwnershipConflict('Owner npub does not match existing site owner')

            if name is not None:
                site.name = name
            if owner_npub is not None and not site.owner_npub:
                site.owner_npub = owner_npub
            site.updated_at = now

        session.commit()
    except Exception:
        session.rollback()
        raise

    return site


def list_sites_for_owner(session, owner_npub):
    """Sites owned by ``owner_npub``, newest first.

    Parseable identities match on the canonical key, so the hex and npub
    spellings of one key list the same sites.
    """
    owner_npub = (owner_npub or '').strip()
    if not owner_npub:
        raise ValidationFailed('owner is required')

    owner_hex = normalize_pubkey(owner_npub)
    query = session.query(Site)
    if owner_hex:
        query = query.filter(Site.owner_pubkey == owner_hex)
    else:
        query = query.filter(Site.owner_npub == owner_npub)

    return query.order_by(Site.created_at.desc(), Site.id.desc()).all()


def authorize_owner(site, caller_pubkey):
    """Raise AuthorizationFailed unless ``caller_pubkey`` is the site's owner key."""
    if not site.owner_npub:
        raise AuthorizationFailed('Site has no owner')

    owner_hex = normalize_pubkey(site.owner_npub)
    caller_hex = normalize_pubkey(caller_pubkey)

    if not owner_hex or not caller_hex:
        raise AuthorizationFailed('Unable to validate owner pubkey')

    if owner_hex != caller_hex:
        raise AuthorizationFailed('Caller pubkey does not match site owner')

    return owner_hex


def require_owned_site(session, site_uuid, caller_pubkey):
    site = resolve_site(session, site_uuid)
    try:
        authorize_owner(site, caller_pubkey)
    except AuthorizationFailed as e:
        logger.warning('Rejected owner access to site %s: %s', site_uuid, e.message)
        raise
    return site


def update_site(session, site_uuid, caller_pubkey, name=UNSET):
    """Owner-only update. Only fields that were passed are written."""
    try:
        site = require_owned_site(session, site_uuid, caller_pubkey)

        if name is UNSET:
            session.commit()
            return site

        site.name = name
        site.updated_at = datetime.utcnow()
        session.commit()
    except Exception:
        session.rollback()
        raise

    return site


def delete_site(session, site_uuid, caller_pubkey):
    """Owner-only delete of a site together with its visits and counters."""
    try:
        site = require_owned_site(session, site_uuid, caller_pubkey)
        site_id = site.id

        session.execute(delete(Visit).where(Visit.site_id == site_id))
        session.execute(delete(PageStat).where(PageStat.site_id == site_id))
        result = session.execute(delete(Site).where(Site.id == site_id))
        session.commit()
    except Exception:
        session.rollback()
        raise

    deleted = result.rowcount > 0
    if deleted:
        logger.info('Deleted site %s', site_uuid)

    return {
        'site_uuid': site_uuid,
        'deleted': deleted,
    }
