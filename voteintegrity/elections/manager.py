# voteintegrity/elections/manager.py

import logging

from voteintegrity import db
from voteintegrity.clock import utcnow
from voteintegrity.encryption.ballot_cipher import AggregateCiphertext, public_key_from_storage
from voteintegrity.errors import (
    DecryptionFailure,
    ElectionNotFound,
    ElectionNotOpen,
    InvalidCandidate,
    TallyNotClosed,
)

logger = logging.getLogger(__name__)


def aggregate_from_row(row, public_key) -> AggregateCiphertext:
    try:
        value = int(row.ciphertext)
    except (TypeError, ValueError):
        raise DecryptionFailure("Stored aggregate is malformed", candidate_id=row.candidate_id)
    return AggregateCiphertext(
        election_id=public_key.election_id,
        key_id=public_key.key_id,
        candidate_id=row.candidate_id,
        value=value,
        count=row.folded_count,
    )


class ElectionService:
    """Election lifecycle: setup with a fresh Paillier keypair, close, and one-time decryption."""

    def __init__(self, cipher, vault, aggregator, election_locks, audit_logger=None):
        self.cipher = cipher
        self.vault = vault
        self.aggregator = aggregator
        self.election_locks = election_locks
        self.audit_logger = audit_logger

    def create_election(self, name, candidates, org_id=None, starts_at=None, ends_at=None, status='open'):
        from voteintegrity.database.models import Candidate, Election, ElectionKey, TallyAggregate
        if not candidates:
            raise InvalidCandidate("An election needs at least one candidate")

        election = Election(name=name, org_id=org_id, status=status, starts_at=starts_at, ends_at=ends_at)
        db.session.add(election)
        db.session.flush()

        rows = []
        for entry in candidates:
            if isinstance(entry, dict):
                rows.append(Candidate(election_id=election.id, name=entry['name'], party=entry.get('party')))
            else:
                rows.append(Candidate(election_id=election.id, name=str(entry)))
        db.session.add_all(rows)
        db.session.flush()

        try:
            keypair = self.cipher.generate_keypair(election.id, [c.id for c in rows])
            db.session.add(ElectionKey(
                election_id=election.id,
                modulus=str(keypair.public_key.n),
                key_id=keypair.public_key.key_id,
                sealed_private_key=self.vault.seal_private_key(keypair.private_key),
            ))
            for candidate in rows:
                db.session.add(TallyAggregate(election_id=election.id, candidate_id=candidate.id,
                                              ciphertext='1', folded_count=0))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Created election %s with %d candidates", election.id, len(rows))
        self._audit('election_created', {'election_id': election.id, 'candidates': [c.id for c in rows]})
        return election

    def get_election(self, election_id):
        from voteintegrity.database.models import Election
        election = db.session.get(Election, election_id)
        if election is None:
            raise ElectionNotFound(f"Election {election_id} does not exist", election_id=election_id)
        return election

    def require_open(self, election, now=None):
        now = now or utcnow()
        if election.status != 'open':
            raise ElectionNotOpen(f"Election {election.id} is {election.status}", election_id=election.id)
        if election.starts_at and now < election.starts_at:
            raise ElectionNotOpen("Voting has not started yet", election_id=election.id)
        if election.ends_at and now > election.ends_at:
            raise ElectionNotOpen("Voting has ended", election_id=election.id)

    def public_key(self, election):
        if election.key is None:
            raise DecryptionFailure(f"Election {election.id} has no key material")
        return public_key_from_storage(election.id, election.key.modulus, [c.id for c in election.candidates])

    def aggregate_rows(self, election_id, for_update=False):
        from voteintegrity.database.models import TallyAggregate
        query = db.select(TallyAggregate).filter_by(election_id=election_id)
        if for_update:
            query = query.with_for_update()
        return db.session.execute(query).scalars().all()

    def aggregates(self, election, public_key):
        return {row.candidate_id: aggregate_from_row(row, public_key)
                for row in self.aggregate_rows(election.id)}

    def has_voted(self, voter_id, election_id):
        from voteintegrity.database.models import VoteRecord
        return db.session.execute(
            db.select(VoteRecord.vote_id).filter_by(voter_id=voter_id, election_id=election_id)
        ).first() is not None

    def close_election(self, election_id):
        """Close voting and decrypt each candidate aggregate once. Repeated calls return the stored counts."""
        with self.election_locks.hold(election_id):
            election = self.get_election(election_id)
            if not election.is_closed:
                election.status = 'closed'
                election.closed_at = utcnow()
                db.session.commit()
                logger.info("Closed election %s after %d ballots", election_id, election.admitted_count)
                self._audit('election_closed', {'election_id': election_id,
                                                'admitted_count': election.admitted_count})

            stored = self._stored_results(election_id)
            if stored is not None:
                return stored

            public_key = self.public_key(election)
            private_key = self.vault.unseal_private_key(election_id, election.key.sealed_private_key)
            counts = self.aggregator.close_election(
                self.aggregates(election, public_key), private_key, election_closed=election.is_closed)
            self._store_results(election_id, counts)
            self._audit('tally_decrypted', {'election_id': election_id,
                                            'counts': {str(k): v for k, v in counts.items()}})
            return counts

    def tally(self, election_id):
        election = self.get_election(election_id)
        if not election.is_closed:
            raise TallyNotClosed(f"Election {election_id} is still {election.status}", election_id=election_id)
        stored = self._stored_results(election_id)
        if stored is not None:
            return stored
        return self.close_election(election_id)

    def _stored_results(self, election_id):
        from voteintegrity.database.models import TallyResult
        rows = db.session.execute(
            db.select(TallyResult).filter_by(election_id=election_id)
        ).scalars().all()
        if not rows:
            return None
        return {row.candidate_id: row.count for row in rows}

    def _store_results(self, election_id, counts):
        from voteintegrity.database.models import TallyResult
        for candidate_id, count in counts.items():
            db.session.add(TallyResult(election_id=election_id, candidate_id=candidate_id, count=count))
        db.session.commit()

    def _audit(self, event_type, data, user_id=None):
        if self.audit_logger is not None:
            self.audit_logger.log_security_event(event_type, data, user_id=user_id)
