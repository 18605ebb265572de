import pytest
from sqlalchemy.exc import IntegrityError

import sites
from errors import AuthorizationFailed, NotFound, OwnershipConflict, ValidationFailed
from helpers import encode_npub
from models import PageStat, Site, Visit
from sites import (
    authorize_owner,
    delete_site,
    list_sites_for_owner,
    register_site,
    resolve_site,
    update_site,
)
from visits import record_visit


def test_register_creates_site(session, owner_hex):
    site = register_site(session, 'site-0001', owner_hex, name='Blog')

    assert site.site_uuid == 'site-0001'
    assert site.name == 'Blog'
    assert site.owner_npub == owner_hex
    assert site.owner_pubkey == owner_hex
    assert len(site.secret_token) == 48
    assert site.created_at is not None


def test_secret_token_is_kept_on_update(session, owner_hex):
    token = register_site(session, 'site-0001', owner_hex).secret_token
    site = register_site(session, 'site-0001', owner_hex, name='Renamed')

    assert site.secret_token == token
    assert site.name == 'Renamed'


def test_register_again_with_same_owner_is_an_update(session, owner_hex):
    register_site(session, 'site-0001', owner_hex, name='Blog')
    site = register_site(session, 'site-0001', owner_hex)

    assert site.name == 'Blog'
    assert site.owner_npub == owner_hex
    assert session.query(Site).count() == 1


def test_register_with_different_owner_conflicts(session, owner_hex, other_hex):
    register_site(session, 'site-0001', owner_hex)

    with pytest.raises(OwnershipConflict):
        register_site(session, 'site-0001', other_hex, name='Hijacked')

    site = resolve_site(session, 'site-0001')
    assert site.owner_npub == owner_hex
    assert site.name is None


def test_register_race_retries_as_update(session, owner_hex, monkeypatch):
    register_site(session, 'site-0001', owner_hex)

    # The first lookup misses the row a concurrent registration just created
    lookups = []
    real_find_site = sites.find_site

    def find_after_race(session, site_uuid):
        lookups.append(site_uuid)
        return None if len(lookups) == 1 else real_find_site(session, site_uuid)

    monkeypatch.setattr(sites, 'find_site', find_after_race)
    site = register_site(session, 'site-0001', owner_hex, name='Renamed')

    assert len(lookups) == 2
    assert site.name == 'Renamed'
    assert session.query(Site).count() == 1


def test_register_retries_integrity_error_only_once(session, owner_hex, monkeypatch):
    register_site(session, 'site-0001', owner_hex)

    lookups = []

    def never_found(session, site_uuid):
        lookups.append(site_uuid)
        return None

    monkeypatch.setattr(sites, 'find_site', never_found)
    with pytest.raises(IntegrityError):
        register_site(session, 'site-0001', owner_hex)

    assert len(lookups) == 2
    assert session.query(Site).count() == 1


def test_register_with_other_encoding_of_same_owner(session, owner_hex, owner_npub):
    register_site(session, 'site-0001', owner_hex)
    site = register_site(session, 'site-0001', owner_npub, name='Blog')

    assert site.owner_npub == owner_hex
    assert site.name == 'Blog'


def test_owner_can_be_set_once_later(session, owner_hex):
    site = register_site(session, 'site-0001', '')
    assert site.owner_npub is None

    site = register_site(session, 'site-0001', owner_hex)
    assert site.owner_npub == owner_hex


def test_empty_owner_leaves_stored_owner(session, owner_hex):
    register_site(session, 'site-0001', owner_hex)
    site = register_site(session, 'site-0001', '   ', name='Blog')

    assert site.owner_npub == owner_hex
    assert site.name == 'Blog'


def test_register_requires_site_uuid(session, owner_hex):
    with pytest.raises(ValidationFailed):
        register_site(session, '  ', owner_hex)


def test_resolve_site(session, owner_hex):
    register_site(session, 'site-0001', owner_hex)

    assert resolve_site(session, 'site-0001').site_uuid == 'site-0001'
    with pytest.raises(NotFound):
        resolve_site(session, 'missing-site')
    with pytest.raises(ValidationFailed):
        resolve_site(session, '')


def test_list_sites_newest_first(session, owner_hex, other_hex):
    register_site(session, 'site-0001', owner_hex)
    register_site(session, 'site-0002', other_hex)
    register_site(session, 'site-0003', owner_hex)

    owned = list_sites_for_owner(session, owner_hex)

    assert [site.site_uuid for site in owned] == ['site-0003', 'site-0001']


def test_list_sites_matches_either_encoding(session, owner_hex, owner_npub):
    register_site(session, 'site-0001', owner_npub)
    register_site(session, 'site-0002', owner_hex.upper())

    by_hex = [site.site_uuid for site in list_sites_for_owner(session, owner_hex)]
    by_npub = [site.site_uuid for site in list_sites_for_owner(session, owner_npub)]

    assert by_hex == by_npub == ['site-0002', 'site-0001']


def test_list_sites_with_unparseable_owner_uses_stored_form(session):
    register_site(session, 'site-0001', 'ownerX')
    register_site(session, 'site-0002', 'ownerY')

    assert [site.site_uuid for site in list_sites_for_owner(session, 'ownerX')] == ['site-0001']
    assert list_sites_for_owner(session, 'ownerx') == []


def test_list_sites_requires_owner(session):
    with pytest.raises(ValidationFailed):
        list_sites_for_owner(session, '')


def test_authorize_owner_accepts_both_encodings(session, owner_hex, owner_npub):
    site = register_site(session, 'site-0001', owner_npub)

    assert authorize_owner(site, owner_hex) == owner_hex
    assert authorize_owner(site, owner_hex.upper()) == owner_hex
    assert authorize_owner(site, owner_npub) == owner_hex


def test_authorize_owner_rejects_other_key(session, owner_hex, other_hex):
    site = register_site(session, 'site-0001', owner_hex)

    with pytest.raises(AuthorizationFailed):
        authorize_owner(site, other_hex)
    with pytest.raises(AuthorizationFailed):
        authorize_owner(site, encode_npub(other_hex))


def test_authorize_owner_rejects_unparseable_identities(session, owner_hex):
    site = register_site(session, 'site-0001', owner_hex)
    with pytest.raises(AuthorizationFailed):
        authorize_owner(site, 'ownerX')

    legacy = register_site(session, 'site-0002', 'ownerX')
    with pytest.raises(AuthorizationFailed):
        authorize_owner(legacy, 'ownerX')


def test_ownerless_site_cannot_be_claimed(session, owner_hex):
    site = register_site(session, 'site-0001', None)

    with pytest.raises(AuthorizationFailed):
        authorize_owner(site, owner_hex)
    with pytest.raises(AuthorizationFailed):
        update_site(session, 'site-0001', owner_hex, name='Mine now')


def test_update_site_name(session, owner_hex, owner_npub):
    register_site(session, 'site-0001', owner_hex, name='Blog')

    site = update_site(session, 'site-0001', owner_npub, name='Journal')
    assert site.name == 'Journal'

    site = update_site(session, 'site-0001', owner_hex, name=None)
    assert site.name is None


def test_update_site_without_fields_changes_nothing(session, owner_hex):
    created = register_site(session, 'site-0001', owner_hex, name='Blog')
    updated_at = created.updated_at

    site = update_site(session, 'site-0001', owner_hex)

    assert site.name == 'Blog'
    assert site.updated_at == updated_at


def test_update_site_rejects_other_caller(session, owner_hex, other_hex):
    register_site(session, 'site-0001', owner_hex, name='Blog')

    with pytest.raises(AuthorizationFailed):
        update_site(session, 'site-0001', other_hex, name='Nope')

    assert resolve_site(session, 'site-0001').name == 'Blog'


def test_update_missing_site(session, owner_hex):
    with pytest.raises(NotFound):
        update_site(session, 'missing-site', owner_hex, name='x')


def test_delete_site_removes_history(session, owner_hex, other_hex):
    register_site(session, 'site-0001', owner_hex)
    register_site(session, 'site-0002', other_hex)
    record_visit(session, 'site-0001', '/home', 'desktop')
    record_visit(session, 'site-0002', '/home', 'desktop')

    result = delete_site(session, 'site-0001', owner_hex)

    assert result == {'site_uuid': 'site-0001', 'deleted': True}
    assert session.query(Site).filter_by(site_uuid='site-0001').count() == 0
    assert session.query(Visit).count() == 1
    assert session.query(PageStat).count() == 1


def test_delete_site_rejects_other_caller(session, owner_hex, other_hex):
    register_site(session, 'site-0001', owner_hex)

    with pytest.raises(AuthorizationFailed):
        delete_site(session, 'site-0001', other_hex)

    assert resolve_site(session, 'site-0001').owner_npub == owner_hex
