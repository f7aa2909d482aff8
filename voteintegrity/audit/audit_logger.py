# voteintegrity/audit/audit_logger.py

import base64
import hashlib
import json
import logging
import os
import threading

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from voteintegrity.clock import utc_isoformat

logger = logging.getLogger(__name__)

# Append-only audit trail: every entry carries the hash of the previous one
# and an Ed25519 signature over its own body. Admission, rejection, risk and
# tally events land here.


class AuditLogger:
    def __init__(self, log_dir='logs', signing_key: Ed25519PrivateKey = None):
        self.log_dir = log_dir
        self.log_file = os.path.join(log_dir, 'audit.log')
        self.previous_hash = None
        self._lock = threading.Lock()

        os.makedirs(log_dir, exist_ok=True)

        self.signing_key = signing_key or Ed25519PrivateKey.generate()
        self._load_previous_hash()

    def _load_previous_hash(self):
        if os.path.exists(self.log_file):
            with open(self.log_file, 'r') as f:
                lines = [line for line in f.readlines() if line.strip()]
                if lines:
                    try:
                        last_entry = json.loads(lines[-1])
                        self.previous_hash = last_entry.get('hash')
                    except ValueError:
                        logger.warning("Last audit entry in %s is unreadable; starting a new chain", self.log_file)
                        self.previous_hash = None

    def log_security_event(self, event_type, data, user_id=None):
        with self._lock:
            try:
                log_entry = {
                    "timestamp": utc_isoformat(),
                    "event_type": event_type,
                    "data": data,
                    "user_id": user_id,
                    "previous_hash": self.previous_hash,
                }
                entry_json = json.dumps(log_entry, sort_keys=True, default=str)
                entry_hash = hashlib.sha256(entry_json.encode()).hexdigest()

                signature = self.signing_key.sign(entry_json.encode())
                log_entry['hash'] = entry_hash
                log_entry['signature'] = base64.b64encode(signature).decode()

                with open(self.log_file, 'a') as f:
                    f.write(json.dumps(log_entry, default=str) + "\n")

                self.previous_hash = entry_hash
            except (OSError, TypeError, ValueError) as e:
                # The audit trail must never take the pipeline down with it
                logger.error("Audit log error for %s: %s", event_type, e)

    def read_entries(self):
        if not os.path.exists(self.log_file):
            return []
        with open(self.log_file, 'r') as f:
            return [json.loads(line) for line in f if line.strip()]

    def verify_log_integrity(self):
        try:
            previous_hash = None
            public_key = self.signing_key.public_key()
            for log_entry in self.read_entries():
                if log_entry.get('previous_hash') != previous_hash:
                    return False
                body = {k: v for k, v in log_entry.items() if k not in ('hash', 'signature')}
                entry_json = json.dumps(body, sort_keys=True, default=str).encode()
                if hashlib.sha256(entry_json).hexdigest() != log_entry['hash']:
                    return False
                public_key.verify(base64.b64decode(log_entry['signature']), entry_json)
                previous_hash = log_entry['hash']
            return True
        except (InvalidSignature, KeyError, ValueError, OSError):
            return False
