# voteintegrity/security/email_screening.py

import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

# Short-lived inbox providers: strongest signal
TEMPORARY_EMAIL_DOMAINS = frozenset({
    'mailinator.com', 'guerrillamail.com', '10minutemail.com', 'temp-mail.org',
    'tempmail.com', 'getnada.com', 'emailondeck.com', 'moakt.com',
})

DISPOSABLE_EMAIL_DOMAINS = frozenset({
    'tempmail.org', 'throwaway.email', 'maildrop.cc', 'guerrillamailblock.com',
    'sharklasers.com', 'grr.la', 'pokemail.net', 'spam4.me', 'bccto.me',
    'chacuo.net', 'dispostable.com', 'fakeinbox.com', 'mailnesia.com',
    'mintemail.com', 'mytrashmail.com', 'nwldx.com', 'spamspot.com',
    'trashmail.net', 'wegwerfemail.de', 'wemel.org', 'yopmail.net', 'zoemail.net',
})

SUSPICIOUS_USERNAME_PATTERNS = (
    re.compile(r'^test\d*$', re.IGNORECASE),
    re.compile(r'^admin\d*$', re.IGNORECASE),
    re.compile(r'^user\d*$', re.IGNORECASE),
    re.compile(r'^demo\d*$', re.IGNORECASE),
    re.compile(r'^temp\d*$', re.IGNORECASE),
    re.compile(r'^fake\d*$', re.IGNORECASE),
    re.compile(r'^spam\d*$', re.IGNORECASE),
)

_EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
_TRAILING_DIGITS = re.compile(r'\d+$')

TEMPORARY_POINTS = 50
DISPOSABLE_POINTS = 30
SEQUENTIAL_POINTS = 40
SIMILAR_POINTS = 30
SUSPICIOUS_NAME_POINTS = 25

SEQUENTIAL_SIBLINGS = 2
SIMILAR_SIBLINGS = 3
SIMILARITY_THRESHOLD = 0.7


@dataclass(frozen=True)
class EmailScreening:
    score: int = 0
    flags: FrozenSet[str] = field(default_factory=frozenset)


def split_email(email):
    if not isinstance(email, str) or not _EMAIL_RE.match(email):
        return None, None
    username, domain = email.rsplit('@', 1)
    return username.lower(), domain.lower()


def sequential_base(username):
    """'voter17' -> 'voter'; None when the name does not end in digits."""
    if not username or not _TRAILING_DIGITS.search(username):
        return None
    return _TRAILING_DIGITS.sub('', username)


def is_suspicious_username(username):
    return any(p.match(username) for p in SUSPICIOUS_USERNAME_PATTERNS)


def levenshtein_distance(a, b):
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            cost = 0 if char_a == char_b else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a, b):
    longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
    if not longer:
        return 1.0
    return (len(longer) - levenshtein_distance(longer, shorter)) / len(longer)


def screen_email(email, known_usernames: Iterable[str] = ()) -> EmailScreening:
    """Score an email address against provider lists and username patterns.

    ``known_usernames`` are the local parts already seen for the same domain
    in the organization; they drive the sequential and similarity checks.
    """
    username, domain = split_email(email)
    if username is None:
        return EmailScreening()

    score = 0
    flags = set()
    if domain in TEMPORARY_EMAIL_DOMAINS:
        score += TEMPORARY_POINTS
        flags.add('temporary_email')
    elif domain in DISPOSABLE_EMAIL_DOMAINS:
        score += DISPOSABLE_POINTS
        flags.add('disposable_email')

    others = {u.lower() for u in known_usernames if u and u.lower() != username}

    base = sequential_base(username)
    if base is not None:
        siblings = [u for u in others if sequential_base(u) == base]
        if len(siblings) > SEQUENTIAL_SIBLINGS:
            score += SEQUENTIAL_POINTS
            flags.add('sequential_username')

    if 'sequential_username' not in flags:
        similar = [u for u in others if similarity(username, u) > SIMILARITY_THRESHOLD]
        if len(similar) > SIMILAR_SIBLINGS:
            score += SIMILAR_POINTS
            flags.add('similar_usernames')

    if is_suspicious_username(username):
        score += SUSPICIOUS_NAME_POINTS
        flags.add('suspicious_username')

    return EmailScreening(score=score, flags=frozenset(flags))
