from datetime import datetime, timedelta

import pytest

from signalforge.errors import NotFoundError
from signalforge.models.tables import PredictiveSignal, SyncJob, UnifiedProfile
from signalforge.tasks.predictive import (
    RULES_BY_ID,
    ProfileSnapshot,
    delete_expired_signals,
    evaluate_rules,
    mark_flow_triggered,
    run_predictive_pass,
)

NOW = datetime(2024, 7, 1, 12, 0)


def _snapshot(**overrides):
    base = dict(
        intent=0.0, frequency=10.0, depth=0.0, recency=0, stage="visitor", top_category=None, orders=0,
        atc=0, products=0, categories=0, sessions=1, lifetime_value=0.0, checkout_abandoned_at=None, now=NOW,
    )
    base.update(overrides)
    return ProfileSnapshot(**base)


def _matches(snapshot):
    return {rule.id for rule, _ in evaluate_rules(snapshot)}


def test_idle_visitor_matches_nothing():
    assert _matches(_snapshot()) == set()


def test_cart_intent_rules():
    s = _snapshot(intent=45, atc=1, stage="cart_abandoned", recency=1)
    assert "high_intent_cart" in _matches(s)
    assert "high_intent_cart" not in _matches(_snapshot(intent=45, atc=1, recency=8))


def test_checkout_urgency_window():
    fresh = _snapshot(stage="checkout_abandoned", checkout_abandoned_at=NOW - timedelta(hours=10))
    stale = _snapshot(stage="checkout_abandoned", checkout_abandoned_at=NOW - timedelta(hours=49))
    assert "checkout_urgency" in _matches(fresh)
    assert "checkout_urgency" not in _matches(stale)
    assert "checkout_urgency" in _matches(_snapshot(intent=75))
    assert "checkout_urgency" not in _matches(_snapshot(intent=75, orders=1))


def test_churn_and_category_rules():
    assert "churn_risk" in _matches(_snapshot(orders=2, recency=45, intent=10))
    assert "churn_risk" not in _matches(_snapshot(orders=2, recency=45, intent=50))
    s = _snapshot(top_category="Hats", products=4, categories=2)
    assert "category_interest" in _matches(s)
    _, payload = next(m for m in evaluate_rules(s) if m[0].id == "category_interest")
    assert payload == {"category": "Hats", "products_in_category": 4}


def test_about_to_purchase_requires_all_conditions():
    s = _snapshot(intent=85, depth=60, atc=2, recency=1)
    assert "about_to_purchase" in _matches(s)
    assert "about_to_purchase" not in _matches(_snapshot(intent=85, depth=40, atc=2, recency=1))
    assert RULES_BY_ID["about_to_purchase"].confidence == 88


def _profile(db, workspace, email="p@x.com", **computed):
    p = UnifiedProfile(
        workspace_id=workspace.id, primary_email=email, emails=[email] if email else [],
        anonymous_ids=["anon-p"], first_seen_at=NOW - timedelta(days=3), last_seen_at=NOW,
        computed=computed, traits={},
    )
    db.add(p)
    db.commit()
    return p


def test_pass_upserts_signals_and_triggers_flows_once(db, workspace, klaviyo_destination):
    p = _profile(db, workspace, intent_score=50, atc_count_7d=1, drop_off_stage="cart_abandoned")
    stats = run_predictive_pass(db, workspace.id, now=NOW)
    assert stats["profiles_evaluated"] == 1
    sigs = {s.signal_type: s for s in db.query(PredictiveSignal).filter_by(profile_id=p.id)}
    assert set(sigs) == {"high_intent_cart", "browse_warming"}
    hic = sigs["high_intent_cart"]
    assert hic.confidence == 75
    assert hic.expires_at == NOW + timedelta(hours=72)
    assert hic.flow_triggered_at == NOW and hic.should_trigger_flow is False
    jobs = db.query(SyncJob).filter_by(profile_id=p.id, job_type="profile_upsert").all()
    assert {j.payload["signal_type"] for j in jobs} == {"high_intent_cart", "browse_warming"}
    assert all(j.payload["trigger"] == "predictive-engine" for j in jobs)

    later = NOW + timedelta(hours=1)
    stats = run_predictive_pass(db, workspace.id, now=later)
    assert stats["flow_jobs_created"] == 0
    assert db.query(PredictiveSignal).filter_by(profile_id=p.id).count() == 2
    refreshed = db.query(PredictiveSignal).filter_by(profile_id=p.id, signal_type="high_intent_cart").one()
    assert refreshed.expires_at == NOW + timedelta(hours=72)
    assert refreshed.updated_at == later


def test_profile_without_email_gets_signal_but_no_flow(db, workspace, klaviyo_destination):
    p = _profile(db, workspace, email=None, intent_score=50, atc_count_7d=1)
    run_predictive_pass(db, workspace.id, now=NOW)
    sig = db.query(PredictiveSignal).filter_by(profile_id=p.id, signal_type="high_intent_cart").one()
    assert sig.should_trigger_flow is True and sig.flow_triggered_at is None
    assert db.query(SyncJob).count() == 0


def test_inactive_profiles_are_skipped(db, workspace):
    p = _profile(db, workspace, intent_score=90, atc_count_7d=1)
    p.last_seen_at = NOW - timedelta(days=31)
    db.commit()
    stats = run_predictive_pass(db, workspace.id, now=NOW)
    assert stats["profiles_evaluated"] == 0


def test_expired_signals_are_removed_and_recreated(db, workspace):
    p = _profile(db, workspace, intent_score=50, atc_count_7d=1)
    run_predictive_pass(db, workspace.id, now=NOW)
    after_expiry = NOW + timedelta(hours=73)
    assert delete_expired_signals(db, after_expiry) >= 1
    db.commit()
    assert db.query(PredictiveSignal).filter_by(signal_type="high_intent_cart").count() == 0
    p.last_seen_at = after_expiry
    db.commit()
    run_predictive_pass(db, workspace.id, now=after_expiry)
    sig = db.query(PredictiveSignal).filter_by(signal_type="high_intent_cart").one()
    assert sig.expires_at == after_expiry + timedelta(hours=72)


def test_mark_flow_triggered(db, workspace):
    p = _profile(db, workspace, email=None, intent_score=50, atc_count_7d=1)
    run_predictive_pass(db, workspace.id, now=NOW)
    sig = db.query(PredictiveSignal).filter_by(profile_id=p.id, signal_type="browse_warming").one()
    mark_flow_triggered(db, sig.id, NOW)
    assert sig.flow_triggered_at == NOW and not sig.should_trigger_flow
    with pytest.raises(NotFoundError):
        mark_flow_triggered(db, 999999)
