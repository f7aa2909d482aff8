# voteintegrity/errors.py
"""Typed rejection reasons for the vote admission pipeline.

Every error carries a stable ``reason`` code that is returned to the caller
and written to the audit log, and the HTTP status the web layer answers with.

Exception hierarchy:
- VoteIntegrityError
  - RiskBlocked, DuplicateVote, InvalidSignature, MerkleInclusionFailure
  - DecryptionFailure, KeyMismatch, TallyNotClosed
  - InvalidCandidate, InvalidVoteRequest, ElectionNotFound, ElectionNotOpen
  - LedgerConflict, PipelineTimeout
"""


class VoteIntegrityError(Exception):
    """Base class for every terminal pipeline or verification failure."""
    reason = "vote_integrity_error"
    http_status = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.reason)
        self.details = details

    def to_dict(self):
        payload = {"error": str(self), "reason": self.reason}
        if self.details:
            payload["details"] = self.details
        return payload


class RiskBlocked(VoteIntegrityError):
    """Raised when the RiskGate scores the request as critical."""
    reason = "risk_blocked"
    http_status = 403


class DuplicateVote(VoteIntegrityError):
    """Raised when the voter already has a committed ballot in the election."""
    reason = "duplicate_vote"
    http_status = 409


class InvalidSignature(VoteIntegrityError):
    reason = "invalid_signature"
    http_status = 400


class MerkleInclusionFailure(VoteIntegrityError):
    """Raised when a proof does not recompute to the stated root."""
    reason = "merkle_inclusion_failure"
    http_status = 409


class DecryptionFailure(VoteIntegrityError):
    """Raised for malformed ciphertexts or a private key that does not fit."""
    reason = "decryption_failure"
    http_status = 500


class KeyMismatch(VoteIntegrityError):
    """Raised when ciphertexts from different elections or keys are mixed."""
    reason = "key_mismatch"
    http_status = 409


class TallyNotClosed(VoteIntegrityError):
    """Raised when decryption is attempted while the election is still open."""
    reason = "tally_not_closed"
    http_status = 409


class InvalidCandidate(VoteIntegrityError):
    reason = "invalid_candidate"
    http_status = 400


class InvalidVoteRequest(VoteIntegrityError):
    reason = "invalid_request"
    http_status = 400


class ElectionNotFound(VoteIntegrityError):
    reason = "election_not_found"
    http_status = 404


class ElectionNotOpen(VoteIntegrityError):
    reason = "election_not_open"
    http_status = 409


class LedgerConflict(VoteIntegrityError):
    """Raised when the ledger and the tally disagree on the admitted count."""
    reason = "ledger_conflict"
    http_status = 409


class PipelineTimeout(VoteIntegrityError):
    reason = "pipeline_timeout"
    http_status = 503
