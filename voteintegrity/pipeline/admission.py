# voteintegrity/pipeline/admission.py
"""Vote admission: risk check, encryption, signing, ledger append and tally fold.

Each ballot walks a fixed sequence of states:

    received -> risk_checked -> encrypted -> signed -> ledgered -> tallied -> committed

and any failure moves it to ``rejected``. Rejection is terminal and is never
retried. Nothing about a ballot becomes visible until ``committed``: the
vote row, its ledger leaf and the folded tally aggregates are written in one
database transaction, and the in-memory Merkle ledger is appended only after
that transaction commits, under the election's writer lock.

Locks:
- one lock per (voter_id, election_id), held for the whole admission, so a
  voter's concurrent submissions are serialized (the unique constraint on
  the vote table backs this up across processes)
- one lock per election, held around the commit, so ledger order, tally
  folds and ``admitted_count`` advance together
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from voteintegrity import db
from voteintegrity.elections.manager import aggregate_from_row
from voteintegrity.errors import (
    DuplicateVote,
    InvalidCandidate,
    InvalidSignature,
    LedgerConflict,
    PipelineTimeout,
    RiskBlocked,
    VoteIntegrityError,
)
from voteintegrity.ledger.merkle import MerkleProof, leaf_hash_for
from voteintegrity.security.fingerprint import FingerprintSource
from voteintegrity.security.risk_gate import BehaviorSample, RiskAssessment
from voteintegrity.tally.aggregator import TallyState

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    RECEIVED = 'received'
    RISK_CHECKED = 'risk_checked'
    ENCRYPTED = 'encrypted'
    SIGNED = 'signed'
    LEDGERED = 'ledgered'
    TALLIED = 'tallied'
    COMMITTED = 'committed'
    REJECTED = 'rejected'


_NEXT_STATE = {
    PipelineState.RECEIVED: PipelineState.RISK_CHECKED,
    PipelineState.RISK_CHECKED: PipelineState.ENCRYPTED,
    PipelineState.ENCRYPTED: PipelineState.SIGNED,
    PipelineState.SIGNED: PipelineState.LEDGERED,
    PipelineState.LEDGERED: PipelineState.TALLIED,
    PipelineState.TALLIED: PipelineState.COMMITTED,
}


class BallotAdmission:
    """State of one ballot moving through the pipeline."""

    def __init__(self):
        self.state = PipelineState.RECEIVED
        self.history = [PipelineState.RECEIVED]
        self.rejection: Optional[VoteIntegrityError] = None

    def advance(self, state: PipelineState):
        if _NEXT_STATE.get(self.state) is not state:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def reject(self, error: VoteIntegrityError):
        if self.state in (PipelineState.COMMITTED, PipelineState.REJECTED):
            raise RuntimeError(f"Ballot is already {self.state.value}")
        self.state = PipelineState.REJECTED
        self.history.append(PipelineState.REJECTED)
        self.rejection = error


@dataclass
class VoteRequest:
    voter_id: str
    election_id: str
    candidate_id: int
    fingerprint: FingerprintSource
    behavior: BehaviorSample = field(default_factory=BehaviorSample)
    ip_address: Optional[str] = None
    email: Optional[str] = None


@dataclass
class AdmissionResult:
    vote_id: str
    election_id: str
    leaf_hash: str
    leaf_index: int
    merkle_proof: MerkleProof
    merkle_root: str
    risk: RiskAssessment
    history: List[PipelineState]

    @property
    def state(self):
        return self.history[-1]


def _until(deadline, fn, *args):
    if time.monotonic() > deadline:
        raise PipelineTimeout(f"{fn.__name__} was queued past the admission deadline")
    return fn(*args)


class VoteAdmissionPipeline:
    def __init__(self, elections, risk_gate, cipher, signer, custody, aggregator, ledgers,
                 voter_locks, election_locks, executor: ThreadPoolExecutor,
                 timeout_seconds=30, audit_logger=None):
        self.elections = elections
        self.risk_gate = risk_gate
        self.cipher = cipher
        self.signer = signer
        self.custody = custody
        self.aggregator = aggregator
        self.ledgers = ledgers
        self.voter_locks = voter_locks
        self.election_locks = election_locks
        self.executor = executor
        self.timeout_seconds = timeout_seconds
        self.audit_logger = audit_logger

    def submit(self, request: VoteRequest) -> AdmissionResult:
        admission = BallotAdmission()
        deadline = time.monotonic() + self.timeout_seconds
        try:
            try:
                with self.voter_locks.hold((request.voter_id, request.election_id),
                                           timeout=self._remaining(deadline)):
                    result = self._admit(request, admission, deadline)
            except TimeoutError:
                raise PipelineTimeout("Timed out waiting for the voter's previous submission")
        except VoteIntegrityError as e:
            db.session.rollback()
            admission.reject(e)
            logger.info("Rejected ballot from voter %s in election %s: %s",
                        request.voter_id, request.election_id, e.reason)
            self._audit('vote_rejected', {
                'election_id': request.election_id,
                'reason': e.reason,
                'state_history': [s.value for s in admission.history],
            }, request.voter_id)
            raise
        except Exception as e:
            db.session.rollback()
            logger.exception("Unexpected failure admitting ballot from voter %s", request.voter_id)
            self._audit('vote_rejected', {
                'election_id': request.election_id,
                'reason': 'internal_error',
                'error': str(e),
            }, request.voter_id)
            raise

        self._audit('vote_committed', {
            'election_id': result.election_id,
            'vote_id': result.vote_id,
            'leaf_index': result.leaf_index,
            'merkle_root': result.merkle_root,
        }, request.voter_id)
        return result

    def _admit(self, request, admission, deadline):
        election = self.elections.get_election(request.election_id)
        self.elections.require_open(election)
        public_key = self.elections.public_key(election)
        if request.candidate_id not in public_key.candidates:
            raise InvalidCandidate(f"Candidate {request.candidate_id} is not on the ballot",
                                   candidate_id=request.candidate_id)
        if self.elections.has_voted(request.voter_id, request.election_id):
            raise DuplicateVote("Voter has already cast a ballot in this election")

        risk = self.risk_gate.assess(
            request.voter_id, request.election_id, request.fingerprint, request.behavior,
            org_id=election.org_id,
            ip_address=request.ip_address,
            email=request.email,
        )
        if risk.blocked:
            raise RiskBlocked("Submission blocked by fraud screening",
                              risk_score=risk.risk_score, flags=sorted(risk.flags))
        admission.advance(PipelineState.RISK_CHECKED)

        signing_key = self.custody.signing_key_for(request.voter_id, request.election_id)
        self._remaining(deadline)

        ballot = self._run(deadline, self.cipher.encrypt, request.candidate_id, public_key, request.voter_id)
        admission.advance(PipelineState.ENCRYPTED)

        signed = self._run(deadline, self.signer.sign_ballot, ballot, signing_key)
        if not self.signer.verify(signed):
            raise InvalidSignature("Ballot signature did not verify after signing")
        admission.advance(PipelineState.SIGNED)

        return self._commit(request, admission, deadline, public_key, signed, risk)

    def _commit(self, request, admission, deadline, public_key, signed, risk):
        try:
            with self.election_locks.hold(request.election_id, timeout=self._remaining(deadline)):
                return self._commit_locked(request, admission, deadline, public_key, signed, risk)
        except TimeoutError:
            raise PipelineTimeout("Timed out waiting for the election writer lock")

    def _commit_locked(self, request, admission, deadline, public_key, signed, risk):
        from voteintegrity.database.models import Election, VoteRecord
        election_id = request.election_id
        election = db.session.execute(
            db.select(Election).filter_by(id=election_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        self.elections.require_open(election)

        ledger = self.ledgers.get(election_id)
        if election.admitted_count != ledger.size:
            logger.warning("Ledger for election %s has %d leaves but %d ballots are admitted; reloading",
                           election_id, ledger.size, election.admitted_count)
            ledger = self.ledgers.reload(election_id)
            if election.admitted_count != ledger.size:
                raise LedgerConflict("Ledger and tally disagree on the admitted count",
                                     admitted_count=election.admitted_count, ledger_size=ledger.size)

        leaf = leaf_hash_for(signed)
        index = ledger.size
        vote_id = uuid.uuid4().hex
        record = VoteRecord(
            vote_id=vote_id,
            election_id=election_id,
            voter_id=request.voter_id,
            ciphertext=signed.ciphertext,
            key_id=signed.ballot.key_id,
            signature=signed.signature,
            signer_public_key=signed.signer_public_key,
            merkle_leaf_index=index,
            leaf_hash=leaf,
            timestamp=signed.timestamp,
        )
        db.session.add(record)
        admission.advance(PipelineState.LEDGERED)

        rows = {row.candidate_id: row for row in self.elections.aggregate_rows(election_id, for_update=True)}
        state = TallyState(
            election_id=election_id,
            aggregates={cid: aggregate_from_row(row, public_key) for cid, row in rows.items()},
            admitted_count=election.admitted_count,
        )
        folded = self.aggregator.fold(state, signed.ballot, public_key)
        for candidate_id, aggregate in folded.aggregates.items():
            rows[candidate_id].ciphertext = aggregate.to_string()
            rows[candidate_id].folded_count = aggregate.count
        election.admitted_count = folded.admitted_count
        admission.advance(PipelineState.TALLIED)

        if time.monotonic() > deadline:
            raise PipelineTimeout("Admission deadline passed before commit")
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateVote("Voter has already cast a ballot in this election")

        ledger.append_leaf(leaf)
        self.risk_gate.record_vote(request.voter_id, election_id)
        proof = ledger.snapshot().prove(index)
        admission.advance(PipelineState.COMMITTED)
        logger.info("Committed vote %s as leaf %d of election %s", vote_id, index, election_id)
        return AdmissionResult(
            vote_id=vote_id,
            election_id=election_id,
            leaf_hash=leaf,
            leaf_index=index,
            merkle_proof=proof,
            merkle_root=proof.root,
            risk=risk,
            history=list(admission.history),
        )

    def _run(self, deadline, fn, *args):
        future = self.executor.submit(_until, deadline, fn, *args)
        try:
            return future.result(timeout=self._remaining(deadline))
        except FutureTimeout:
            # cancel() only drops queued work; a job already running finishes
            # in the background and its result is discarded
            future.cancel()
            raise PipelineTimeout(f"{fn.__name__} did not finish before the admission deadline")

    @staticmethod
    def _remaining(deadline):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PipelineTimeout("Admission deadline passed")
        return remaining

    def _audit(self, event_type, data, voter_id):
        if self.audit_logger is not None:
            self.audit_logger.log_security_event(event_type, data, user_id=voter_id)
