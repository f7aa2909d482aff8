# voteintegrity/security/input_validator.py

import re
from datetime import datetime, timezone

import bleach

from voteintegrity.errors import InvalidVoteRequest

# Validation and sanitisation of everything that arrives over HTTP


class InputValidator:
    def __init__(self):
        self.allowed_html_tags = []
        self.allowed_html_attributes = {}

        self.patterns = {
            'email': re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
            # pseudonymous voter identifiers: opaque tokens, no PII
            'voter_id': re.compile(r'^[A-Za-z0-9_-]{4,128}$'),
            'election_id': re.compile(r'^[A-Za-z0-9_-]{1,32}$'),
            'org_id': re.compile(r'^[A-Za-z0-9_.-]{1,64}$'),
            'sql_injection': re.compile(r'\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\b', re.IGNORECASE),
            'xss_script': re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL),
            'xss_event': re.compile(r'\bon\w+\s*=', re.IGNORECASE)
        }

    def sanitize_string(self, input_str, max_length=255):
        if not isinstance(input_str, str):
            raise InvalidVoteRequest("Input must be a string")
        if len(input_str) > max_length:
            input_str = input_str[:max_length]

        sanitized = re.sub(self.patterns['xss_script'], '', input_str)
        sanitized = re.sub(self.patterns['xss_event'], '', sanitized)
        sanitized = bleach.clean(sanitized, tags=self.allowed_html_tags,
                                 attributes=self.allowed_html_attributes, strip=True)
        return sanitized.strip()

    def validate_email(self, email):
        return isinstance(email, str) and len(email) <= 254 and bool(self.patterns['email'].match(email))

    def validate_voter_id(self, voter_id):
        return isinstance(voter_id, str) and bool(self.patterns['voter_id'].match(voter_id))

    def validate_election_id(self, election_id):
        return isinstance(election_id, str) and bool(self.patterns['election_id'].match(election_id))

    def check_sql_injection(self, input_str):
        if not isinstance(input_str, str):
            return False
        return bool(self.patterns['sql_injection'].search(input_str))

    def validate_candidate_id(self, candidate_id):
        if isinstance(candidate_id, bool):
            return None
        if isinstance(candidate_id, int):
            return candidate_id if candidate_id > 0 else None
        if isinstance(candidate_id, str) and candidate_id.isdigit():
            return int(candidate_id) if int(candidate_id) > 0 else None
        return None

    def validate_vote_request(self, data):
        """Check a submission body and return a normalised copy."""
        if not isinstance(data, dict):
            raise InvalidVoteRequest("Vote request must be a JSON object")

        for field in ('election_id', 'candidate_id', 'device_fingerprint'):
            if data.get(field) in (None, ''):
                raise InvalidVoteRequest(f"Missing required vote field: {field}", field=field)

        # Optional: the access token names the voter, a body voter_id must agree with it
        voter_id = data.get('voter_id')
        if voter_id is not None:
            self._check_voter_id(voter_id)

        election_id = data['election_id']
        if not self.validate_election_id(election_id):
            raise InvalidVoteRequest("Invalid election_id", field='election_id')

        candidate_id = self.validate_candidate_id(data['candidate_id'])
        if candidate_id is None:
            raise InvalidVoteRequest("Invalid candidate_id", field='candidate_id')

        fingerprint = data['device_fingerprint']
        if not isinstance(fingerprint, (str, dict)):
            raise InvalidVoteRequest("device_fingerprint must be a string or an object", field='device_fingerprint')
        if isinstance(fingerprint, str) and len(fingerprint) > 512:
            raise InvalidVoteRequest("device_fingerprint is too long", field='device_fingerprint')

        behavior = data.get('behavior') or {}
        if not isinstance(behavior, dict):
            raise InvalidVoteRequest("behavior must be an object", field='behavior')
        for key in ('keystroke_intervals_ms', 'pointer_intervals_ms'):
            values = behavior.get(key)
            if values is None:
                continue
            if (not isinstance(values, list) or len(values) > 1000
                    or not all(isinstance(v, (int, float)) and not isinstance(v, bool) and v >= 0 for v in values)):
                raise InvalidVoteRequest(f"Invalid behavior.{key}", field=key)

        return {
            'voter_id': voter_id,
            'election_id': election_id,
            'candidate_id': candidate_id,
            'device_fingerprint': fingerprint,
            'behavior': behavior,
        }

    def validate_voter_identity(self, voter_id, email=None):
        """Check the voter identity and email claim carried by an access token."""
        voter_id = str(voter_id) if voter_id is not None else None
        self._check_voter_id(voter_id)
        if email is not None and not self.validate_email(email):
            raise InvalidVoteRequest("Invalid email claim", field='email')
        return voter_id, email.lower() if email else None

    def _check_voter_id(self, voter_id):
        if not self.validate_voter_id(voter_id) or self.check_sql_injection(voter_id):
            raise InvalidVoteRequest("Invalid or potentially dangerous voter_id", field='voter_id')

    def validate_election_request(self, data):
        if not isinstance(data, dict):
            raise InvalidVoteRequest("Election request must be a JSON object")
        name = data.get('name')
        if not isinstance(name, str) or not name.strip():
            raise InvalidVoteRequest("Election name is required", field='name')

        candidates = data.get('candidates')
        if not isinstance(candidates, list) or not candidates or len(candidates) > 100:
            raise InvalidVoteRequest("candidates must be a non-empty list", field='candidates')
        cleaned = []
        for entry in candidates:
            if isinstance(entry, str):
                entry = {'name': entry}
            if not isinstance(entry, dict) or not isinstance(entry.get('name'), str) or not entry['name'].strip():
                raise InvalidVoteRequest("Each candidate needs a name", field='candidates')
            party = entry.get('party')
            cleaned.append({
                'name': self.sanitize_string(entry['name'], max_length=100),
                'party': self.sanitize_string(party, max_length=50) if isinstance(party, str) else None,
            })

        org_id = data.get('org_id')
        if org_id is not None and not (isinstance(org_id, str) and self.patterns['org_id'].match(org_id)):
            raise InvalidVoteRequest("Invalid org_id", field='org_id')

        result = {
            'name': self.sanitize_string(name, max_length=200),
            'candidates': cleaned,
            'org_id': org_id,
            'starts_at': self._parse_time(data.get('starts_at'), 'starts_at'),
            'ends_at': self._parse_time(data.get('ends_at'), 'ends_at'),
        }
        if result['starts_at'] and result['ends_at'] and result['ends_at'] <= result['starts_at']:
            raise InvalidVoteRequest("ends_at must be after starts_at", field='ends_at')
        return result

    def _parse_time(self, value, field):
        if value in (None, ''):
            return None
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            raise InvalidVoteRequest(f"Invalid timestamp format for {field}", field=field)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
