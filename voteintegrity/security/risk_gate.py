# voteintegrity/security/risk_gate.py

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from voteintegrity.clock import utcnow
from voteintegrity.security.email_screening import screen_email, split_email
from voteintegrity.security.fingerprint import FingerprintSource
from voteintegrity.security.risk_history import RiskHistory

logger = logging.getLogger(__name__)

# Pre-admission fraud scoring. Heuristic points add up to a 0-100 score,
# the score maps to a tier, and only the critical tier blocks by default.
# Detection failures fail open: the request is admitted at low risk and the
# failure is audited.

DUPLICATE_DEVICE_POINTS = 40
SUSPICIOUS_TYPING_POINTS = 20
MULTIPLE_VOTES_POINTS = 50
SHARED_IP_POINTS = 25
RAPID_IP_POINTS = 30
SAME_DOMAIN_POINTS = 25

TYPING_INTERVAL_FLOOR_MS = 50
SHARED_IP_VOTERS = 3
RAPID_IP_ATTEMPTS = 10
SAME_DOMAIN_VOTERS = 5
PRIOR_VOTES_LIMIT = 1

CRITICAL_THRESHOLD = 80
HIGH_THRESHOLD = 60
MEDIUM_THRESHOLD = 30


class RiskLevel(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


class Decision(Enum):
    ADMIT = 'admit'
    BLOCK = 'block'


@dataclass(frozen=True)
class BehaviorSample:
    keystroke_intervals_ms: Tuple[float, ...] = field(default_factory=tuple)
    pointer_intervals_ms: Tuple[float, ...] = field(default_factory=tuple)
    session_duration_s: Optional[float] = None

    @property
    def mean_keystroke_interval_ms(self):
        if not self.keystroke_intervals_ms:
            return None
        return sum(self.keystroke_intervals_ms) / len(self.keystroke_intervals_ms)

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            keystroke_intervals_ms=tuple(float(v) for v in data.get('keystroke_intervals_ms') or ()),
            pointer_intervals_ms=tuple(float(v) for v in data.get('pointer_intervals_ms') or ()),
            session_duration_s=(float(data['session_duration_s'])
                                if data.get('session_duration_s') is not None else None),
        )


@dataclass(frozen=True)
class RiskAssessment:
    fingerprint_hash: Optional[str]
    risk_score: int
    flags: FrozenSet[str]
    risk_level: RiskLevel
    decision: Decision
    detection_failed: bool = False

    @property
    def blocked(self):
        return self.decision is Decision.BLOCK

    def to_dict(self):
        return {
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value,
            'flags': sorted(self.flags),
            'decision': self.decision.value,
            'detection_failed': self.detection_failed,
        }


def level_for_score(score):
    if score >= CRITICAL_THRESHOLD:
        return RiskLevel.CRITICAL
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class RiskGate:
    def __init__(self, history: RiskHistory, audit_logger=None, block_high_risk=False,
                 device_window_hours=24, ip_window_minutes=60):
        """
        history: organizational history the heuristics query
        audit_logger: receives 'risk_detection_failure' and 'risk_blocked' events
        block_high_risk: also block the high tier (60-79), not only critical
        """
        self.history = history
        self.audit_logger = audit_logger
        self.block_high_risk = block_high_risk
        self.device_window = timedelta(hours=device_window_hours)
        self.ip_window = timedelta(minutes=ip_window_minutes)

    def _now(self):
        # extracted for easier monkeypatching in tests
        return utcnow()

    def _decide(self, level):
        if level is RiskLevel.CRITICAL:
            return Decision.BLOCK
        if level is RiskLevel.HIGH and self.block_high_risk:
            return Decision.BLOCK
        return Decision.ADMIT

    def assess(self, voter_id, election_id, fingerprint: FingerprintSource,
               behavior: Optional[BehaviorSample] = None, org_id=None,
               ip_address=None, email=None) -> RiskAssessment:
        """Score an admission request. Never raises on lookup failures."""
        behavior = behavior or BehaviorSample()
        fingerprint_hash = None
        try:
            fingerprint_hash = fingerprint.fingerprint_hash()
            score, flags = self._score(voter_id, org_id, fingerprint_hash, behavior, ip_address, email)
            username, domain = split_email(email)
            self.history.record_attempt(org_id, voter_id, election_id, fingerprint_hash,
                                        ip_address=ip_address, email_domain=domain,
                                        username=username, at=self._now())
        except Exception as e:
            logger.warning("Risk detection failed for voter %s: %s", voter_id, e)
            self.history.reset()
            self._audit('risk_detection_failure', {'election_id': election_id, 'error': str(e)}, voter_id)
            assessment = RiskAssessment(
                fingerprint_hash=fingerprint_hash,
                risk_score=0,
                flags=frozenset({'detection_failed'}),
                risk_level=RiskLevel.LOW,
                decision=Decision.ADMIT,
                detection_failed=True,
            )
            self._record(voter_id, election_id, org_id, assessment)
            return assessment

        score = min(score, 100)
        level = level_for_score(score)
        assessment = RiskAssessment(
            fingerprint_hash=fingerprint_hash,
            risk_score=score,
            flags=frozenset(flags),
            risk_level=level,
            decision=self._decide(level),
        )
        if assessment.blocked:
            logger.info("Blocked voter %s in election %s at score %d (%s)",
                        voter_id, election_id, score, ', '.join(sorted(flags)))
            self._audit('risk_blocked', {'election_id': election_id, **assessment.to_dict()}, voter_id)
        self._record(voter_id, election_id, org_id, assessment)
        return assessment

    def _score(self, voter_id, org_id, fingerprint_hash, behavior, ip_address, email):
        now = self._now()
        device_since = now - self.device_window
        score = 0
        flags = set()

        other_voters = self.history.voters_for_fingerprint(org_id, fingerprint_hash, device_since) - {voter_id}
        if other_voters:
            score += DUPLICATE_DEVICE_POINTS
            flags.add('duplicate_device')

        mean_interval = behavior.mean_keystroke_interval_ms
        if mean_interval is not None and mean_interval < TYPING_INTERVAL_FLOOR_MS:
            score += SUSPICIOUS_TYPING_POINTS
            flags.add('suspicious_typing_speed')

        # Committed ballots only; blocked or failed attempts never count
        if self.history.votes_by_voter(voter_id, device_since) > PRIOR_VOTES_LIMIT:
            score += MULTIPLE_VOTES_POINTS
            flags.add('multiple_votes')

        if ip_address:
            ip_voters = self.history.voters_from_ip(org_id, ip_address, device_since) | {voter_id}
            if len(ip_voters) > SHARED_IP_VOTERS:
                score += SHARED_IP_POINTS
                flags.add('multiple_accounts_same_ip')
            if self.history.attempts_from_ip(ip_address, now - self.ip_window) >= RAPID_IP_ATTEMPTS:
                score += RAPID_IP_POINTS
                flags.add('rapid_ip_activity')

        username, domain = split_email(email)
        if domain:
            domain_voters = self.history.voters_with_email_domain(org_id, domain, device_since) | {voter_id}
            if len(domain_voters) > SAME_DOMAIN_VOTERS:
                score += SAME_DOMAIN_POINTS
                flags.add('multiple_same_domain')
            screening = screen_email(email, self.history.usernames_for_domain(org_id, domain))
            score += screening.score
            flags |= screening.flags

        return score, flags

    def record_vote(self, voter_id, election_id):
        """Feed a committed ballot back into the history the heuristics read."""
        try:
            self.history.record_vote(voter_id, election_id, at=self._now())
        except Exception as e:
            logger.warning("Could not record vote for voter %s: %s", voter_id, e)
            self.history.reset()

    def _record(self, voter_id, election_id, org_id, assessment):
        try:
            self.history.record_assessment(voter_id, election_id, org_id, assessment)
        except Exception as e:
            logger.warning("Could not persist risk assessment for voter %s: %s", voter_id, e)
            self.history.reset()

    def _audit(self, event_type, data, voter_id):
        if self.audit_logger is not None:
            self.audit_logger.log_security_event(event_type, data, user_id=voter_id)
