# voteintegrity/ledger/receipt.py

import base64
import hashlib
from io import BytesIO

import qrcode

from voteintegrity.clock import utc_isoformat


def _qr_png_base64(data):
    img = qrcode.make(data)
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode()


def build_vote_receipt(vote_id, election_id, leaf_hash, merkle_root, leaf_index, verify_url_template):
    """Receipt handed to the voter after commit.

    Contains no candidate information; the QR code encodes the public
    verification URL so the voter can check inclusion later.
    """
    verify_url = verify_url_template.format(vote_id=vote_id)
    receipt_id = hashlib.sha256(f"{vote_id}:{leaf_hash}".encode()).hexdigest()[:20].upper()
    return {
        "receipt_id": receipt_id,
        "vote_id": vote_id,
        "election_id": election_id,
        "leaf_hash": leaf_hash,
        "leaf_index": leaf_index,
        "merkle_root": merkle_root,
        "verify_url": verify_url,
        "qr_code_png": _qr_png_base64(verify_url),
        "issued_at": utc_isoformat(),
    }
