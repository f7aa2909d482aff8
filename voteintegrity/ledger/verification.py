# voteintegrity/ledger/verification.py

import logging

from voteintegrity import db
from voteintegrity.encryption.ballot_cipher import EncryptedBallot
from voteintegrity.encryption.ballot_signer import BallotSigner, SignedBallot
from voteintegrity.errors import DecryptionFailure, MerkleInclusionFailure
from voteintegrity.ledger.merkle import leaf_hash_for, verify_proof

logger = logging.getLogger(__name__)

VALID = 'valid'
INVALID = 'invalid'
NOT_FOUND = 'not_found'


def signed_ballot_from_record(record) -> SignedBallot:
    ballot = EncryptedBallot.from_ciphertext(
        record.ciphertext,
        election_id=record.election_id,
        voter_id=record.voter_id,
        timestamp=record.timestamp,
        key_id=record.key_id,
    )
    return SignedBallot(ballot=ballot, signature=record.signature, signer_public_key=record.signer_public_key)


class VoteVerifier:
    """Public inclusion check for a committed vote.

    Re-derives the leaf from the stored ballot, checks the voter signature,
    and proves the leaf against the current ledger root.
    """

    def __init__(self, ledgers, signer: BallotSigner, custody=None):
        self.ledgers = ledgers
        self.signer = signer
        self.custody = custody

    def verify_vote(self, vote_id):
        from voteintegrity.database.models import VoteRecord
        record = db.session.get(VoteRecord, vote_id)
        if record is None:
            return {'status': NOT_FOUND, 'vote_id': vote_id, 'merkle_proof': None, 'merkle_root': None}

        ledger = self.ledgers.get(record.election_id)
        result = {
            'vote_id': vote_id,
            'election_id': record.election_id,
            'merkle_proof': None,
            'merkle_root': ledger.current_root(),
        }

        try:
            signed = signed_ballot_from_record(record)
        except DecryptionFailure as e:
            return self._invalid(result, 'malformed_ballot', e)

        if not self.signer.verify(signed):
            return self._invalid(result, 'invalid_signature')

        if self.custody is not None:
            issued = self.custody.public_key_pem_for(record.voter_id, record.election_id)
            if issued is not None and issued != record.signer_public_key:
                return self._invalid(result, 'unexpected_signer')

        leaf = leaf_hash_for(signed)
        if leaf != record.leaf_hash:
            return self._invalid(result, 'leaf_mismatch')

        try:
            proof = ledger.prove_inclusion(leaf)
        except MerkleInclusionFailure as e:
            return self._invalid(result, 'not_in_ledger', e)

        result['merkle_proof'] = proof.to_dict()
        result['merkle_root'] = proof.root
        if proof.index != record.merkle_leaf_index or not verify_proof(proof):
            return self._invalid(result, 'merkle_inclusion_failure')

        result['status'] = VALID
        return result

    def _invalid(self, result, reason, error=None):
        logger.warning("Vote %s failed verification: %s%s", result['vote_id'], reason,
                       f" ({error})" if error else "")
        result['status'] = INVALID
        result['reason'] = reason
        return result
