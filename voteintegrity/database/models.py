# voteintegrity/database/models.py

import json
import uuid

from voteintegrity import db
from voteintegrity.clock import utcnow

# The plaintext candidate choice of a ballot is never stored in any table


def _new_id():
    return uuid.uuid4().hex


class Election(db.Model):
    __tablename__ = 'elections'
    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    org_id = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='open')  # draft | open | closed
    starts_at = db.Column(db.DateTime, nullable=True)
    ends_at = db.Column(db.DateTime, nullable=True)
    admitted_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)

    candidates = db.relationship('Candidate', backref='election', lazy=True, order_by='Candidate.id')
    key = db.relationship('ElectionKey', backref='election', uselist=False, lazy=True)

    @property
    def is_closed(self):
        return self.status == 'closed'

    def __repr__(self):
        return f'<Election {self.id} {self.status}>'


class Candidate(db.Model):
    __tablename__ = 'candidates'
    id = db.Column(db.Integer, primary_key=True)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    party = db.Column(db.String(50), nullable=True)


class ElectionKey(db.Model):
    __tablename__ = 'election_keys'
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), primary_key=True)
    modulus = db.Column(db.Text, nullable=False)  # Paillier n, decimal
    key_id = db.Column(db.String(16), nullable=False)
    sealed_private_key = db.Column(db.Text, nullable=False)  # Fernet envelope, never plaintext
    created_at = db.Column(db.DateTime, default=utcnow)


class VoteRecord(db.Model):
    __tablename__ = 'votes'
    __table_args__ = (
        db.UniqueConstraint('voter_id', 'election_id', name='uq_vote_voter_election'),
        db.UniqueConstraint('election_id', 'merkle_leaf_index', name='uq_vote_leaf_index'),
    )
    vote_id = db.Column(db.String(32), primary_key=True, default=_new_id)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, index=True)
    voter_id = db.Column(db.String(128), nullable=False)  # pseudonymous
    ciphertext = db.Column(db.Text, nullable=False)
    key_id = db.Column(db.String(16), nullable=False)
    signature = db.Column(db.Text, nullable=False)
    signer_public_key = db.Column(db.Text, nullable=False)
    merkle_leaf_index = db.Column(db.Integer, nullable=False)
    leaf_hash = db.Column(db.String(64), nullable=False)
    timestamp = db.Column(db.String(40), nullable=False)  # exact string that was signed
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<Vote {self.vote_id} leaf {self.merkle_leaf_index} in {self.election_id}>'


class TallyAggregate(db.Model):
    __tablename__ = 'tally_aggregates'
    __table_args__ = (db.UniqueConstraint('election_id', 'candidate_id', name='uq_aggregate_candidate'),)
    id = db.Column(db.Integer, primary_key=True)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, index=True)
    candidate_id = db.Column(db.Integer, db.ForeignKey('candidates.id'), nullable=False)
    ciphertext = db.Column(db.Text, nullable=False, default='1')
    folded_count = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class TallyResult(db.Model):
    __tablename__ = 'tally_results'
    __table_args__ = (db.UniqueConstraint('election_id', 'candidate_id', name='uq_result_candidate'),)
    id = db.Column(db.Integer, primary_key=True)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, index=True)
    candidate_id = db.Column(db.Integer, db.ForeignKey('candidates.id'), nullable=False)
    count = db.Column(db.Integer, nullable=False)
    decrypted_at = db.Column(db.DateTime, default=utcnow)


class VoterSigningKey(db.Model):
    __tablename__ = 'voter_signing_keys'
    __table_args__ = (db.UniqueConstraint('voter_id', 'election_id', name='uq_signing_key_voter_election'),)
    id = db.Column(db.Integer, primary_key=True)
    voter_id = db.Column(db.String(128), nullable=False)
    election_id = db.Column(db.String(32), nullable=False)
    sealed_private_key = db.Column(db.Text, nullable=False)
    public_key_pem = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)


class DeviceFingerprintRecord(db.Model):
    __tablename__ = 'device_fingerprints'
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=True, index=True)
    voter_id = db.Column(db.String(128), nullable=False)
    fingerprint_hash = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)


class AdmissionActivity(db.Model):
    __tablename__ = 'admission_activity'
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=True, index=True)
    voter_id = db.Column(db.String(128), nullable=False, index=True)
    election_id = db.Column(db.String(32), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True, index=True)
    email_domain = db.Column(db.String(254), nullable=True)
    username = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)


class RiskAssessmentRecord(db.Model):
    __tablename__ = 'risk_assessments'
    id = db.Column(db.Integer, primary_key=True)
    voter_id = db.Column(db.String(128), nullable=False, index=True)
    election_id = db.Column(db.String(32), nullable=True)
    org_id = db.Column(db.String(64), nullable=True)
    fingerprint_hash = db.Column(db.String(64), nullable=True)
    risk_score = db.Column(db.Integer, nullable=False)
    risk_level = db.Column(db.String(16), nullable=False)
    flags = db.Column(db.Text, nullable=False, default='[]')
    decision = db.Column(db.String(8), nullable=False)
    detection_failed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    @property
    def flag_list(self):
        return json.loads(self.flags or '[]')
