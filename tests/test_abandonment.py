from datetime import datetime, timedelta

from signalforge.models.tables import SyncJob, UnifiedProfile
from signalforge.tasks.abandonment import classify_abandonment, detect_abandonments_pass

NOW = datetime(2024, 8, 1, 15, 0)


def _iso(delta):
    return (NOW - delta).isoformat()


def test_classify_cart_abandonment():
    computed = {"last_cart_at": _iso(timedelta(minutes=90))}
    assert classify_abandonment(computed, NOW, 60, 180) == "cart"
    assert classify_abandonment({"last_cart_at": _iso(timedelta(minutes=30))}, NOW, 60, 180) is None
    already = dict(computed, cart_abandoned_at=_iso(timedelta(minutes=5)))
    assert classify_abandonment(already, NOW, 60, 180) is None


def test_later_checkout_or_order_cancels_cart_abandonment():
    computed = {"last_cart_at": _iso(timedelta(minutes=90)), "checkout_started_at": _iso(timedelta(minutes=80))}
    assert classify_abandonment(computed, NOW, 60, 180) is None
    computed = {"last_cart_at": _iso(timedelta(minutes=90)), "last_order_at": _iso(timedelta(minutes=85))}
    assert classify_abandonment(computed, NOW, 60, 180) is None


def test_classify_checkout_abandonment():
    computed = {"last_cart_at": _iso(timedelta(hours=5)), "checkout_started_at": _iso(timedelta(hours=4))}
    assert classify_abandonment(computed, NOW, 60, 180) == "checkout"
    computed["last_order_at"] = _iso(timedelta(hours=3))
    assert classify_abandonment(computed, NOW, 60, 180) is None


def test_detector_stamps_profile_and_enqueues_once(db, workspace, klaviyo_destination):
    p = UnifiedProfile(
        workspace_id=workspace.id, primary_email="c@x.com", emails=["c@x.com"], anonymous_ids=[],
        first_seen_at=NOW - timedelta(days=1), last_seen_at=NOW - timedelta(hours=2),
        computed={"last_cart_at": _iso(timedelta(hours=2)), "drop_off_stage": "browse_abandoned"}, traits={},
    )
    anon = UnifiedProfile(
        workspace_id=workspace.id, anonymous_ids=["anon-z"], emails=[], first_seen_at=NOW - timedelta(days=1),
        last_seen_at=NOW - timedelta(hours=2), computed={"last_cart_at": _iso(timedelta(hours=2))}, traits={},
    )
    db.add_all([p, anon])
    db.commit()

    stats = detect_abandonments_pass(db, workspace.id, now=NOW)
    assert stats["cart_abandoned"] == 2
    assert stats["sync_jobs_created"] == 1
    assert p.computed["cart_abandoned_at"] == NOW.isoformat()
    assert p.computed["drop_off_stage"] == "cart_abandoned"
    job = db.query(SyncJob).one()
    assert job.profile_id == p.id
    assert job.payload == {"trigger": "abandonment-detector", "abandonment_type": "cart"}

    again = detect_abandonments_pass(db, workspace.id, now=NOW + timedelta(minutes=10))
    assert again["cart_abandoned"] == 0
    assert db.query(SyncJob).count() == 1


def test_detector_never_regresses_stage(db, workspace):
    p = UnifiedProfile(
        workspace_id=workspace.id, anonymous_ids=["anon-y"], emails=[], first_seen_at=NOW - timedelta(days=2),
        last_seen_at=NOW - timedelta(hours=5),
        computed={"last_cart_at": _iso(timedelta(hours=5)), "drop_off_stage": "checkout_abandoned"}, traits={},
    )
    db.add(p)
    db.commit()
    detect_abandonments_pass(db, workspace.id, now=NOW)
    assert p.computed["cart_abandoned_at"] == NOW.isoformat()
    assert p.computed["drop_off_stage"] == "checkout_abandoned"
