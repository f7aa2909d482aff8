import threading
import time
import types
from datetime import datetime

import pytest

from conftest import vote_request
from voteintegrity import db
from voteintegrity.errors import (
    DuplicateVote,
    ElectionNotFound,
    ElectionNotOpen,
    InvalidCandidate,
    InvalidSignature,
    LedgerConflict,
    PipelineTimeout,
    RiskBlocked,
    TallyNotClosed,
)
from voteintegrity.ledger.merkle import verify_proof
from voteintegrity.pipeline.admission import BallotAdmission, PipelineState, VoteRequest, _until
from voteintegrity.pipeline.locks import KeyedLock
from voteintegrity.security.fingerprint import SyntheticFingerprint
from voteintegrity.security.risk_history import SqlRiskHistory

LONG_AGO = datetime(2000, 1, 1)
ALL_STATES = ['received', 'risk_checked', 'encrypted', 'signed', 'ledgered', 'tallied', 'committed']


def audit_events(services, event_type):
    return [e for e in services.audit_logger.read_entries() if e['event_type'] == event_type]


def admitted_count(election_id):
    from voteintegrity.database.models import Election
    db.session.expire_all()
    return db.session.get(Election, election_id).admitted_count


def open_election(services, name, org_id=None):
    created = services.elections.create_election(name, ["Yes", "No"], org_id=org_id)
    info = types.SimpleNamespace(id=created.id, candidate_ids=[c.id for c in created.candidates])
    db.session.remove()
    return info


def test_vote_is_committed_with_inclusion_proof(services, election):
    from voteintegrity.database.models import VoteRecord
    result = services.pipeline.submit(vote_request(election, "voter-0001"))

    assert result.state is PipelineState.COMMITTED
    assert [s.value for s in result.history] == ALL_STATES
    assert result.leaf_index == 0
    assert verify_proof(result.merkle_proof)
    assert result.merkle_root == services.ledgers.get(election.id).current_root()

    record = db.session.get(VoteRecord, result.vote_id)
    assert record.leaf_hash == result.leaf_hash
    assert record.merkle_leaf_index == 0
    assert admitted_count(election.id) == 1
    assert services.elections.has_voted("voter-0001", election.id)

    committed = audit_events(services, 'vote_committed')
    assert committed[0]['data']['vote_id'] == result.vote_id
    assert committed[0]['user_id'] == "voter-0001"


def test_second_ballot_from_same_voter_is_rejected(services, election):
    services.pipeline.submit(vote_request(election, "voter-0001", 0))
    with pytest.raises(DuplicateVote):
        services.pipeline.submit(vote_request(election, "voter-0001", 1))

    assert services.ledgers.get(election.id).size == 1
    assert admitted_count(election.id) == 1
    rejected = audit_events(services, 'vote_rejected')
    assert rejected[0]['data']['reason'] == 'duplicate_vote'
    assert rejected[0]['data']['state_history'] == ['received', 'rejected']


def test_concurrent_double_vote_admits_exactly_one(app, services, election):
    outcomes = []
    barrier = threading.Barrier(4)

    def cast(choice):
        with app.app_context():
            barrier.wait()
            try:
                outcomes.append(services.pipeline.submit(vote_request(election, "voter-0001", choice)))
            except DuplicateVote as e:
                outcomes.append(e)

    threads = [threading.Thread(target=cast, args=(i % 3,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    committed = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(committed) == 1
    assert sum(isinstance(o, DuplicateVote) for o in outcomes) == 3
    assert services.ledgers.get(election.id).size == 1
    assert admitted_count(election.id) == 1


def test_concurrent_distinct_voters_get_distinct_leaves(app, services, election):
    results = []
    errors = []

    def cast(n):
        with app.app_context():
            try:
                results.append(services.pipeline.submit(vote_request(election, f"voter-{n:04d}", n % 3)))
            except Exception as e:
                errors.append(e)

    threads = [threading.Thread(target=cast, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(r.leaf_index for r in results) == list(range(6))
    ledger = services.ledgers.get(election.id)
    assert ledger.size == 6 == admitted_count(election.id)
    for result in results:
        assert ledger.verify_proof(ledger.prove_inclusion(result.leaf_hash))


def test_unknown_candidate_is_rejected(services, election):
    request = VoteRequest(voter_id="voter-0001", election_id=election.id, candidate_id=99999,
                          fingerprint=SyntheticFingerprint("d"))
    with pytest.raises(InvalidCandidate):
        services.pipeline.submit(request)
    assert services.ledgers.get(election.id).size == 0
    assert not services.elections.has_voted("voter-0001", election.id)


def test_unknown_election_is_rejected(services, election):
    request = VoteRequest(voter_id="voter-0001", election_id="nope", candidate_id=election.candidate_ids[0],
                          fingerprint=SyntheticFingerprint("d"))
    with pytest.raises(ElectionNotFound):
        services.pipeline.submit(request)


def test_closed_election_refuses_ballots(services, election):
    services.elections.close_election(election.id)
    with pytest.raises(ElectionNotOpen):
        services.pipeline.submit(vote_request(election, "voter-0001"))


def test_critical_risk_blocks_before_encryption(services, election):
    shared = SyntheticFingerprint("shared-kiosk")
    services.pipeline.submit(vote_request(election, "voter-0001", fingerprint=shared))
    with pytest.raises(RiskBlocked) as excinfo:
        services.pipeline.submit(vote_request(election, "voter-0002", fingerprint=shared,
                                              email="burner@mailinator.com"))

    assert excinfo.value.details['risk_score'] >= 80
    assert not services.elections.has_voted("voter-0002", election.id)
    assert services.ledgers.get(election.id).size == 1
    assert audit_events(services, 'risk_blocked')[0]['user_id'] == "voter-0002"
    rejected = audit_events(services, 'vote_rejected')
    assert rejected[0]['data']['state_history'] == ['received', 'rejected']


def test_medium_risk_is_admitted(services, election):
    shared = SyntheticFingerprint("family-laptop")
    services.pipeline.submit(vote_request(election, "voter-0001", fingerprint=shared))
    result = services.pipeline.submit(vote_request(election, "voter-0002", fingerprint=shared))
    assert "duplicate_device" in result.risk.flags
    assert result.state is PipelineState.COMMITTED


def test_household_device_across_elections_is_admitted(services, election):
    family = SyntheticFingerprint("family-laptop")
    other = open_election(services, "Parish council")
    services.pipeline.submit(vote_request(election, "alice", fingerprint=family))
    services.pipeline.submit(vote_request(election, "bob", fingerprint=family))

    result = services.pipeline.submit(vote_request(other, "bob", fingerprint=family))
    assert result.state is PipelineState.COMMITTED
    assert result.risk.flags == {"duplicate_device"}
    assert result.risk.risk_score == 40


def test_blocked_attempts_are_not_counted_as_votes(services, election):
    shared = SyntheticFingerprint("shared-kiosk")
    services.pipeline.submit(vote_request(election, "voter-0001", fingerprint=shared))
    for _ in range(2):
        with pytest.raises(RiskBlocked):
            services.pipeline.submit(vote_request(election, "voter-0002", fingerprint=shared,
                                                  email="burner@mailinator.com"))
    assert services.risk_history.votes_by_voter("voter-0002", LONG_AGO) == 0

    result = services.pipeline.submit(vote_request(open_election(services, "Other"), "voter-0002"))
    assert "multiple_votes" not in result.risk.flags


def test_third_committed_vote_in_a_day_is_flagged(services, election):
    assert isinstance(services.risk_history, SqlRiskHistory)
    elections = [election, open_election(services, "Second"), open_election(services, "Third")]
    first = services.pipeline.submit(vote_request(elections[0], "voter-0001"))
    second = services.pipeline.submit(vote_request(elections[1], "voter-0001"))
    assert "multiple_votes" not in first.risk.flags | second.risk.flags
    assert services.risk_history.votes_by_voter("voter-0001", LONG_AGO) == 2

    third = services.pipeline.submit(vote_request(elections[2], "voter-0001"))
    assert "multiple_votes" in third.risk.flags
    assert third.risk.risk_score == 50
    assert third.state is PipelineState.COMMITTED


def test_risk_scope_is_the_elections_organization(services):
    from voteintegrity.database.models import RiskAssessmentRecord
    shared = SyntheticFingerprint("office-desktop")
    scoped = open_election(services, "Staff vote", org_id="org-a")
    services.risk_history.record_attempt("org-b", "outsider", "e0", shared.fingerprint_hash())

    first = services.pipeline.submit(vote_request(scoped, "voter-0001", fingerprint=shared))
    assert "duplicate_device" not in first.risk.flags
    second = services.pipeline.submit(vote_request(scoped, "voter-0002", fingerprint=shared))
    assert "duplicate_device" in second.risk.flags

    orgs = db.session.execute(db.select(RiskAssessmentRecord.org_id)).scalars().all()
    assert orgs == ["org-a", "org-a"]


def test_slow_encryption_times_out_without_side_effects(services, election, monkeypatch):
    real_encrypt = services.cipher.encrypt

    def encrypt(*args, **kwargs):
        time.sleep(1.5)
        return real_encrypt(*args, **kwargs)

    monkeypatch.setattr(services.cipher, "encrypt", encrypt)
    monkeypatch.setattr(services.pipeline, "timeout_seconds", 0.75)

    with pytest.raises(PipelineTimeout):
        services.pipeline.submit(vote_request(election, "voter-0001"))

    assert services.ledgers.get(election.id).size == 0
    assert admitted_count(election.id) == 0
    assert not services.elections.has_voted("voter-0001", election.id)
    rejected = audit_events(services, 'vote_rejected')
    assert rejected[0]['data']['reason'] == 'pipeline_timeout'
    assert rejected[0]['data']['state_history'] == ['received', 'risk_checked', 'rejected']


def test_slow_key_custody_counts_against_the_deadline(services, election, monkeypatch):
    real_lookup = services.custody.signing_key_for

    def signing_key_for(*args):
        time.sleep(1.0)
        return real_lookup(*args)

    monkeypatch.setattr(services.custody, "signing_key_for", signing_key_for)
    monkeypatch.setattr(services.pipeline, "timeout_seconds", 0.5)

    with pytest.raises(PipelineTimeout):
        services.pipeline.submit(vote_request(election, "voter-0001"))

    assert not services.elections.has_voted("voter-0001", election.id)
    rejected = audit_events(services, 'vote_rejected')
    assert rejected[0]['data']['reason'] == 'pipeline_timeout'
    assert rejected[0]['data']['state_history'] == ['received', 'risk_checked', 'rejected']


def test_crypto_work_queued_past_the_deadline_is_skipped():
    calls = []
    with pytest.raises(PipelineTimeout):
        _until(time.monotonic() - 1, calls.append, "late")
    assert calls == []
    assert _until(time.monotonic() + 5, len, "abc") == 3


def test_signature_failure_rejects_ballot(services, election, monkeypatch):
    monkeypatch.setattr(services.signer, "verify", lambda signed: False)
    with pytest.raises(InvalidSignature):
        services.pipeline.submit(vote_request(election, "voter-0001"))
    rejected = audit_events(services, 'vote_rejected')
    assert rejected[0]['data']['state_history'] == ['received', 'risk_checked', 'encrypted', 'rejected']
    assert services.ledgers.get(election.id).size == 0


def test_stale_in_memory_ledger_is_rebuilt(services, election):
    services.pipeline.submit(vote_request(election, "voter-0001"))
    services.ledgers.get(election.id).append_leaf("f" * 64)

    result = services.pipeline.submit(vote_request(election, "voter-0002"))
    assert result.leaf_index == 1
    ledger = services.ledgers.get(election.id)
    assert ledger.size == 2
    assert "f" * 64 not in ledger


def test_ledger_and_tally_disagreement_is_a_conflict(services, election):
    from voteintegrity.database.models import Election
    services.pipeline.submit(vote_request(election, "voter-0001"))
    row = db.session.get(Election, election.id)
    row.admitted_count = 5
    db.session.commit()

    with pytest.raises(LedgerConflict):
        services.pipeline.submit(vote_request(election, "voter-0002"))
    assert not services.elections.has_voted("voter-0002", election.id)


def test_evicted_ledger_rebuilds_same_root(services, election):
    for n in range(3):
        services.pipeline.submit(vote_request(election, f"voter-{n:04d}", n))
    root = services.ledgers.get(election.id).current_root()
    services.ledgers.evict(election.id)
    assert election.id not in services.ledgers.loaded()
    assert services.ledgers.get(election.id).current_root() == root


def test_roots_only_change_by_appending(services, election):
    roots = []
    for n in range(4):
        result = services.pipeline.submit(vote_request(election, f"voter-{n:04d}", n % 3))
        roots.append(result.merkle_root)
    assert len(set(roots)) == 4
    ledger = services.ledgers.get(election.id)
    assert ledger.snapshot().prove(0).root == roots[-1]


def test_end_to_end_tally(services, election):
    from voteintegrity.database.models import TallyResult
    choices = [0, 1, 1, 2, 1]
    for n, choice in enumerate(choices):
        services.pipeline.submit(vote_request(election, f"voter-{n:04d}", choice))

    with pytest.raises(TallyNotClosed):
        services.elections.tally(election.id)

    counts = services.elections.close_election(election.id)
    first, second, third = election.candidate_ids
    assert counts == {first: 1, second: 3, third: 1}
    assert sum(counts.values()) == admitted_count(election.id)

    assert services.elections.tally(election.id) == counts
    assert services.elections.close_election(election.id) == counts
    assert db.session.query(TallyResult).filter_by(election_id=election.id).count() == 3
    assert len(audit_events(services, 'tally_decrypted')) == 1


def test_stored_ballots_do_not_reveal_the_choice(services, election):
    from voteintegrity.database.models import VoteRecord
    services.pipeline.submit(vote_request(election, "voter-0001", 0))
    services.pipeline.submit(vote_request(election, "voter-0002", 0))
    records = db.session.query(VoteRecord).all()
    assert records[0].ciphertext != records[1].ciphertext
    assert not hasattr(records[0], 'candidate_id')


def test_state_machine_refuses_skipping_states():
    admission = BallotAdmission()
    with pytest.raises(RuntimeError):
        admission.advance(PipelineState.SIGNED)
    admission.advance(PipelineState.RISK_CHECKED)
    admission.reject(DuplicateVote())
    with pytest.raises(RuntimeError):
        admission.reject(DuplicateVote())


def test_keyed_lock_serializes_per_key_and_cleans_up():
    locks = KeyedLock()
    order = []

    def worker(name):
        with locks.hold("voter-1"):
            order.append(f"{name}-in")
            time.sleep(0.05)
            order.append(f"{name}-out")

    threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert order[0][0] == order[1][0]
    assert order[2][0] == order[3][0]
    assert len(locks) == 0


def test_keyed_lock_timeout():
    locks = KeyedLock()
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("e1"):
            acquired.set()
            release.wait(2)

    t = threading.Thread(target=holder)
    t.start()
    acquired.wait(2)
    with pytest.raises(TimeoutError):
        with locks.hold("e1", timeout=0.05):
            pass
    with locks.hold("e2", timeout=0.05):
        pass
    release.set()
    t.join()
    assert len(locks) == 0
