# voteintegrity/tally/aggregator.py
"""Homomorphic tally over admitted ballots.

Aggregates are immutable: ``fold`` and ``combine`` return new values and
never touch their inputs, so a partially folded state can be discarded when
the surrounding commit fails. Decryption happens exactly once, in
``close_election``, and only after the election is closed.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping

from voteintegrity.encryption.ballot_cipher import (
    AggregateCiphertext,
    BallotCipher,
    ElectionPrivateKey,
    ElectionPublicKey,
    EncryptedBallot,
)
from voteintegrity.errors import InvalidCandidate, KeyMismatch, TallyNotClosed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TallyState:
    election_id: str
    aggregates: Mapping[int, AggregateCiphertext]
    admitted_count: int = 0


class TallyAggregator:
    def __init__(self, cipher: BallotCipher):
        self.cipher = cipher

    def empty(self, public_key: ElectionPublicKey) -> TallyState:
        return TallyState(
            election_id=public_key.election_id,
            aggregates={c: self.cipher.identity(public_key, c) for c in public_key.candidates},
            admitted_count=0,
        )

    def fold_component(self, aggregate: AggregateCiphertext, ballot: EncryptedBallot,
                       public_key: ElectionPublicKey) -> AggregateCiphertext:
        """Add the ballot's component for ``aggregate.candidate_id``."""
        self.cipher.check_same_key(public_key, aggregate, ballot)
        value = self.cipher.add(public_key, aggregate.value, ballot.component(aggregate.candidate_id))
        return AggregateCiphertext(
            election_id=aggregate.election_id,
            key_id=aggregate.key_id,
            candidate_id=aggregate.candidate_id,
            value=value,
            count=aggregate.count + 1,
        )

    def fold(self, state: TallyState, ballot: EncryptedBallot, public_key: ElectionPublicKey) -> TallyState:
        if state.election_id != public_key.election_id:
            raise KeyMismatch("Tally state belongs to a different election",
                              expected=public_key.election_id, found=state.election_id)
        if set(ballot.candidates) != set(state.aggregates):
            raise InvalidCandidate("Ballot does not cover the election's candidate slate")
        folded = {
            candidate: self.fold_component(aggregate, ballot, public_key)
            for candidate, aggregate in state.aggregates.items()
        }
        return TallyState(election_id=state.election_id, aggregates=folded,
                          admitted_count=state.admitted_count + 1)

    def combine(self, left: AggregateCiphertext, right: AggregateCiphertext,
                public_key: ElectionPublicKey) -> AggregateCiphertext:
        """Merge two partial aggregates of the same candidate."""
        self.cipher.check_same_key(public_key, left, right)
        if left.candidate_id != right.candidate_id:
            raise InvalidCandidate("Cannot combine aggregates of different candidates")
        return AggregateCiphertext(
            election_id=left.election_id,
            key_id=left.key_id,
            candidate_id=left.candidate_id,
            value=self.cipher.add(public_key, left.value, right.value),
            count=left.count + right.count,
        )

    def close_election(self, aggregates: Mapping[int, AggregateCiphertext], private_key: ElectionPrivateKey,
                       *, election_closed: bool) -> Dict[int, int]:
        """Decrypt every candidate aggregate into a plaintext count."""
        if not election_closed:
            raise TallyNotClosed("Aggregates can only be decrypted after the election closes",
                                 election_id=private_key.election_id)
        results = {}
        for candidate, aggregate in sorted(aggregates.items()):
            results[candidate] = self.cipher.decrypt_aggregate(aggregate, private_key)
        logger.info("Decrypted tally for election %s over %d candidates", private_key.election_id, len(results))
        return results
