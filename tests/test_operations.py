from datetime import datetime, timedelta

from conftest import vote_request
from voteintegrity import db
from voteintegrity.ledger.merkle import MerkleLedger
from voteintegrity.operations import health_monitor
from voteintegrity.operations.cleanup import CleanupScheduler, prune_risk_history
from voteintegrity.security.risk_history import InMemoryRiskHistory


def test_run_once_reports_counts_and_survives_failing_job():
    def broken():
        raise RuntimeError("boom")

    scheduler = CleanupScheduler({"ok": lambda: 3, "broken": broken, "after": lambda: 0})
    assert scheduler.run_once() == {"ok": 3, "broken": None, "after": 0}


def test_scheduler_start_and_stop():
    scheduler = CleanupScheduler({"noop": lambda: 0}, interval_seconds=60)
    scheduler.start()
    assert scheduler.running
    scheduler.stop()
    assert not scheduler.running


def test_prune_risk_history_uses_retention_window():
    history = InMemoryRiskHistory()
    now = datetime(2026, 5, 1, 12, 0, 0)
    history.record_attempt("org", "voter-1", "e1", "a" * 64, at=now - timedelta(hours=80))
    history.record_attempt("org", "voter-2", "e1", "b" * 64, at=now - timedelta(hours=1))

    job = prune_risk_history(history, retention_hours=72, clock=lambda: now)
    assert job() >= 1
    since = now - timedelta(hours=200)
    assert history.voters_for_fingerprint("org", "a" * 64, since) == set()
    assert history.voters_for_fingerprint("org", "b" * 64, since) == {"voter-2"}


def test_scheduler_runs_jobs_in_app_context(app, services):
    from voteintegrity.database.models import DeviceFingerprintRecord
    services.risk_history.record_attempt("org", "voter-1", "e1", "a" * 64, at=datetime(2020, 1, 1))
    results = services.cleanup.run_once()
    assert results["risk_history"] >= 1
    assert db.session.query(DeviceFingerprintRecord).count() == 0


def test_election_consistency_after_votes(services, election):
    for n in range(3):
        services.pipeline.submit(vote_request(election, f"voter-{n:04d}", n))
    state = health_monitor.check_election_consistency(
        services.elections.get_election(election.id), services.ledgers)
    assert state["ok"] is True
    assert state["admitted_count"] == state["stored_leaves"] == state["ledger_size"] == 3


def test_election_consistency_detects_drift(services, election):
    services.pipeline.submit(vote_request(election, "voter-0001"))
    services.ledgers.get(election.id).append_leaf("e" * 64)
    state = health_monitor.check_election_consistency(
        services.elections.get_election(election.id), services.ledgers)
    assert state["ok"] is False
    assert state["ledger_size"] == 2


def test_check_health_reports_components(services, election, monkeypatch):
    monkeypatch.setattr(health_monitor, "MIN_FREE_DISK_GB", 0)
    result = health_monitor.check_health(services.ledgers)
    assert result["db"]["ok"] is True
    assert result["disk"]["ok"] is True
    assert result["ledgers"]["elections"][election.id]["ok"] is True
    assert result["overall_ok"] is True


def test_verifier_reports_each_failure(services, election, monkeypatch):
    from voteintegrity.database.models import VoteRecord
    from voteintegrity.ledger.verification import INVALID, NOT_FOUND, VALID
    result = services.pipeline.submit(vote_request(election, "voter-0001"))
    verifier = services.verifier

    assert verifier.verify_vote(result.vote_id)["status"] == VALID
    assert verifier.verify_vote("missing")["status"] == NOT_FOUND

    monkeypatch.setattr(services.ledgers, "get", lambda election_id: MerkleLedger(election_id, []))
    outcome = verifier.verify_vote(result.vote_id)
    assert (outcome["status"], outcome["reason"]) == (INVALID, "not_in_ledger")
    monkeypatch.undo()

    record = db.session.get(VoteRecord, result.vote_id)
    record.leaf_hash = "0" * 64
    db.session.commit()
    outcome = verifier.verify_vote(result.vote_id)
    assert (outcome["status"], outcome["reason"]) == (INVALID, "leaf_mismatch")

    record.ciphertext = "not-a-ciphertext"
    db.session.commit()
    outcome = verifier.verify_vote(result.vote_id)
    assert (outcome["status"], outcome["reason"]) == (INVALID, "malformed_ballot")
