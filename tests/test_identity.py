from datetime import datetime, timedelta

import pytest

from signalforge.identity import normalize_fragments, resolve_identity
from signalforge.merge import merge_computed, merge_snapshots, order_for_merge, select_primary
from signalforge.models.tables import IdentityLink, UnifiedProfile

DAY1 = datetime(2024, 4, 1, 9, 0)


def test_normalize_fragments_lowercases_email_and_drops_blanks():
    assert normalize_fragments(email="  A@X.com ", phone="", anonymous_id="anon") == {"email": "a@x.com", "anonymous_id": "anon"}


def test_resolve_is_idempotent(db, workspace):
    first = resolve_identity(db, workspace.id, {"email": "a@x.com", "anonymous_id": "anon-1"})
    second = resolve_identity(db, workspace.id, {"email": "a@x.com", "anonymous_id": "anon-1"})
    db.commit()
    assert first.is_new and not second.is_new
    assert first.profile.id == second.profile.id
    links = db.query(IdentityLink).filter_by(workspace_id=workspace.id).all()
    assert sorted((l.identity_type, l.identity_value) for l in links) == [("anonymous_id", "anon-1"), ("email", "a@x.com")]
    assert all(l.profile_id == first.profile.id for l in links)


def test_new_fragment_attaches_to_known_profile(db, workspace):
    p = resolve_identity(db, workspace.id, {"anonymous_id": "anon-1"}).profile
    again = resolve_identity(db, workspace.id, {"anonymous_id": "anon-1", "customer_id": "cust-9"}).profile
    assert again.id == p.id
    assert again.customer_ids == ["cust-9"]


def test_tenants_do_not_share_identities(db, workspace):
    from signalforge.models.tables import Workspace
    other = Workspace(name="Other", settings={})
    db.add(other)
    db.flush()
    a = resolve_identity(db, workspace.id, {"email": "a@x.com"}).profile
    b = resolve_identity(db, other.id, {"email": "a@x.com"}).profile
    assert a.id != b.id


def test_shared_fragment_merges_into_email_profile(db, workspace):
    known = resolve_identity(db, workspace.id, {"email": "a@x.com"}, now=DAY1).profile
    known.computed = {"intent_score": 40, "top_category": "Shoes", "category_counts": {"Shoes": 2}}
    anon = resolve_identity(db, workspace.id, {"anonymous_id": "anon-b"}, now=DAY1 + timedelta(days=4)).profile
    anon.computed = {"intent_score": 70, "top_category": "Hats", "category_counts": {"Hats": 1, "Shoes": 1}}
    anon.traits = {"first_name": "Ann"}
    db.flush()
    anon_id = anon.id

    res = resolve_identity(db, workspace.id, {"email": "a@x.com", "anonymous_id": "anon-b"}, now=DAY1 + timedelta(days=5))
    db.commit()

    assert res.profile.id == known.id
    assert res.merged_ids == [anon_id]
    assert res.profile.computed["intent_score"] == 70
    assert res.profile.computed["top_category"] == "Shoes"
    assert res.profile.computed["category_counts"] == {"Shoes": 3, "Hats": 1}
    assert res.profile.first_seen_at == DAY1
    assert res.profile.traits == {"first_name": "Ann"}
    assert set(res.profile.anonymous_ids) == {"anon-b"}
    assert db.get(UnifiedProfile, anon_id) is None
    owners = {l.profile_id for l in db.query(IdentityLink).filter_by(workspace_id=workspace.id)}
    assert owners == {known.id}


def _profile(pid, email=None, customer=None, first_seen=DAY1):
    return UnifiedProfile(
        id=pid, workspace_id="ws", primary_email=email, emails=[email] if email else [],
        customer_ids=[customer] if customer else [], anonymous_ids=[], first_seen_at=first_seen,
    )


def test_primary_selection_is_deterministic():
    a = _profile("a", first_seen=DAY1)
    b = _profile("b", customer="c1", first_seen=DAY1 + timedelta(days=3))
    c = _profile("c", email="c@x.com", first_seen=DAY1 + timedelta(days=9))
    d = _profile("d", email="d@x.com", first_seen=DAY1 + timedelta(days=9))
    assert select_primary([a, b, c, d]).id == "c"
    assert select_primary([d, b, a, c]).id == "c"
    assert [p.id for p in order_for_merge([a, b])] == ["b", "a"]
    with pytest.raises(ValueError):
        select_primary([])


def test_merge_computed_trait_rules():
    now = DAY1 + timedelta(days=2)
    primary = {"intent_score": 10, "drop_off_stage": None, "last_cart_at": DAY1.isoformat(), "orders_count": 1}
    other = {
        "intent_score": 55, "drop_off_stage": "cart_abandoned", "orders_count": 0,
        "last_cart_at": (DAY1 + timedelta(hours=5)).isoformat(), "viewed_products": ["p1"],
    }
    merged = merge_computed([primary, other], DAY1, now)
    assert merged["intent_score"] == 55
    assert merged["orders_count"] == 1
    assert merged["drop_off_stage"] == "cart_abandoned"
    assert merged["last_cart_at"] == (DAY1 + timedelta(hours=5)).isoformat()
    assert merged["viewed_products"] == ["p1"]
    assert merged["recency_days"] == 2


def test_merge_snapshots_ignore_input_order():
    now = DAY1 + timedelta(days=6)
    a = _profile("a", email="a@x.com", first_seen=DAY1)
    a.last_seen_at = DAY1 + timedelta(days=5)
    a.computed = {"intent_score": 40, "orders_count": 1, "category_counts": {"Shoes": 2}}
    b = _profile("b", first_seen=DAY1 + timedelta(days=2))
    b.last_seen_at = DAY1 + timedelta(days=4)
    b.computed = {"intent_score": 70, "drop_off_stage": "cart_abandoned", "category_counts": {"Hats": 1}}

    primary_ab, merged_ab = merge_snapshots([a, b], now)
    primary_ba, merged_ba = merge_snapshots([b, a], now)

    assert primary_ab.id == primary_ba.id == "a"
    assert merged_ab == merged_ba
    assert merged_ab["intent_score"] == 70
    assert merged_ab["category_counts"] == {"Shoes": 2, "Hats": 1}
