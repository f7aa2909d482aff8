# voteintegrity/security/risk_history.py

# Organizational history the RiskGate scores against. Lookups may fail (the
# database is a network dependency); the gate treats any failure here as a
# detection failure and admits.

import json
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Optional, Set

from voteintegrity import db


class RiskHistory(ABC):
    @abstractmethod
    def voters_for_fingerprint(self, org_id, fingerprint_hash, since: datetime) -> Set[str]:
        pass

    @abstractmethod
    def votes_by_voter(self, voter_id, since: datetime) -> int:
        """Committed ballots cast by the voter since ``since``, across all elections."""

    @abstractmethod
    def voters_from_ip(self, org_id, ip_address, since: datetime) -> Set[str]:
        pass

    @abstractmethod
    def attempts_from_ip(self, ip_address, since: datetime) -> int:
        pass

    @abstractmethod
    def voters_with_email_domain(self, org_id, domain, since: datetime) -> Set[str]:
        pass

    @abstractmethod
    def usernames_for_domain(self, org_id, domain) -> Set[str]:
        pass

    @abstractmethod
    def record_attempt(self, org_id, voter_id, election_id, fingerprint_hash,
                       ip_address=None, email_domain=None, username=None, at: Optional[datetime] = None):
        pass

    @abstractmethod
    def record_assessment(self, voter_id, election_id, org_id, assessment):
        pass

    def record_vote(self, voter_id, election_id, at: Optional[datetime] = None):
        """Note a committed ballot. Stores that read the votes table have nothing to do."""
        pass

    @abstractmethod
    def prune(self, before: datetime) -> int:
        """Drop history older than ``before``; returns the number of rows removed."""

    def reset(self):
        """Recover after a failed lookup."""
        pass


class SqlRiskHistory(RiskHistory):
    def reset(self):
        db.session.rollback()

    def voters_for_fingerprint(self, org_id, fingerprint_hash, since):
        from voteintegrity.database.models import DeviceFingerprintRecord as F
        rows = db.session.execute(
            db.select(F.voter_id).distinct()
            .where(F.org_id == org_id, F.fingerprint_hash == fingerprint_hash, F.created_at >= since)
        ).scalars()
        return set(rows)

    def votes_by_voter(self, voter_id, since):
        from voteintegrity.database.models import VoteRecord as V
        return db.session.execute(
            db.select(db.func.count(V.vote_id)).where(V.voter_id == voter_id, V.created_at >= since)
        ).scalar_one()

    def voters_from_ip(self, org_id, ip_address, since):
        from voteintegrity.database.models import AdmissionActivity as A
        rows = db.session.execute(
            db.select(A.voter_id).distinct()
            .where(A.org_id == org_id, A.ip_address == ip_address, A.created_at >= since)
        ).scalars()
        return set(rows)

    def attempts_from_ip(self, ip_address, since):
        from voteintegrity.database.models import AdmissionActivity as A
        return db.session.execute(
            db.select(db.func.count(A.id)).where(A.ip_address == ip_address, A.created_at >= since)
        ).scalar_one()

    def voters_with_email_domain(self, org_id, domain, since):
        from voteintegrity.database.models import AdmissionActivity as A
        rows = db.session.execute(
            db.select(A.voter_id).distinct()
            .where(A.org_id == org_id, A.email_domain == domain, A.created_at >= since)
        ).scalars()
        return set(rows)

    def usernames_for_domain(self, org_id, domain):
        from voteintegrity.database.models import AdmissionActivity as A
        rows = db.session.execute(
            db.select(A.username).distinct()
            .where(A.org_id == org_id, A.email_domain == domain, A.username.is_not(None))
        ).scalars()
        return set(rows)

    def record_attempt(self, org_id, voter_id, election_id, fingerprint_hash,
                       ip_address=None, email_domain=None, username=None, at=None):
        from voteintegrity.database.models import AdmissionActivity, DeviceFingerprintRecord
        extra = {'created_at': at} if at is not None else {}
        db.session.add(DeviceFingerprintRecord(
            org_id=org_id, voter_id=voter_id, fingerprint_hash=fingerprint_hash, **extra))
        db.session.add(AdmissionActivity(
            org_id=org_id, voter_id=voter_id, election_id=election_id, ip_address=ip_address,
            email_domain=email_domain, username=username, **extra))
        db.session.commit()

    def record_assessment(self, voter_id, election_id, org_id, assessment):
        from voteintegrity.database.models import RiskAssessmentRecord
        db.session.add(RiskAssessmentRecord(
            voter_id=voter_id,
            election_id=election_id,
            org_id=org_id,
            fingerprint_hash=assessment.fingerprint_hash,
            risk_score=assessment.risk_score,
            risk_level=assessment.risk_level.value,
            flags=json.dumps(sorted(assessment.flags)),
            decision=assessment.decision.value,
            detection_failed=assessment.detection_failed,
        ))
        db.session.commit()

    def prune(self, before):
        from voteintegrity.database.models import AdmissionActivity, DeviceFingerprintRecord
        removed = 0
        for model in (DeviceFingerprintRecord, AdmissionActivity):
            result = db.session.execute(db.delete(model).where(model.created_at < before))
            removed += result.rowcount or 0
        db.session.commit()
        return removed


class InMemoryRiskHistory(RiskHistory):
    """Process-local history for tooling and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.fingerprints = []  # (org_id, voter_id, fingerprint_hash, at)
        self.activity = []  # dicts
        self.assessments = []
        self.votes = []  # (voter_id, election_id, at)
        self._by_hash = defaultdict(list)

    def voters_for_fingerprint(self, org_id, fingerprint_hash, since):
        with self._lock:
            return {voter for org, voter, at in self._by_hash[fingerprint_hash] if org == org_id and at >= since}

    def votes_by_voter(self, voter_id, since):
        with self._lock:
            return sum(1 for voter, _, at in self.votes if voter == voter_id and at >= since)

    def voters_from_ip(self, org_id, ip_address, since):
        with self._lock:
            return {a['voter_id'] for a in self.activity
                    if a['org_id'] == org_id and a['ip_address'] == ip_address and a['at'] >= since}

    def attempts_from_ip(self, ip_address, since):
        with self._lock:
            return sum(1 for a in self.activity if a['ip_address'] == ip_address and a['at'] >= since)

    def voters_with_email_domain(self, org_id, domain, since):
        with self._lock:
            return {a['voter_id'] for a in self.activity
                    if a['org_id'] == org_id and a['email_domain'] == domain and a['at'] >= since}

    def usernames_for_domain(self, org_id, domain):
        with self._lock:
            return {a['username'] for a in self.activity
                    if a['org_id'] == org_id and a['email_domain'] == domain and a['username']}

    def record_attempt(self, org_id, voter_id, election_id, fingerprint_hash,
                       ip_address=None, email_domain=None, username=None, at=None):
        from voteintegrity.clock import utcnow
        at = at or utcnow()
        with self._lock:
            self.fingerprints.append((org_id, voter_id, fingerprint_hash, at))
            self._by_hash[fingerprint_hash].append((org_id, voter_id, at))
            self.activity.append({
                'org_id': org_id, 'voter_id': voter_id, 'election_id': election_id,
                'ip_address': ip_address, 'email_domain': email_domain, 'username': username, 'at': at,
            })

    def record_assessment(self, voter_id, election_id, org_id, assessment):
        with self._lock:
            self.assessments.append((voter_id, election_id, org_id, assessment))

    def record_vote(self, voter_id, election_id, at=None):
        from voteintegrity.clock import utcnow
        with self._lock:
            self.votes.append((voter_id, election_id, at or utcnow()))

    def prune(self, before):
        with self._lock:
            kept_fp = [f for f in self.fingerprints if f[3] >= before]
            kept_activity = [a for a in self.activity if a['at'] >= before]
            removed = (len(self.fingerprints) - len(kept_fp)) + (len(self.activity) - len(kept_activity))
            self.fingerprints = kept_fp
            self.activity = kept_activity
            self._by_hash = defaultdict(list)
            for org, voter, fp_hash, at in kept_fp:
                self._by_hash[fp_hash].append((org, voter, at))
            return removed
