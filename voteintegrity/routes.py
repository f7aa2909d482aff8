# voteintegrity/routes.py

# HTTP surface of the admission pipeline. Voters submit and verify ballots;
# election admins set elections up; the tally authority closes and reads
# results. Every VoteIntegrityError becomes a JSON {error, reason} body.

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt, get_jwt_identity, jwt_required

from voteintegrity import db, limiter
from voteintegrity.authentication.rbac import AccessDenied, Permission, require_permission
from voteintegrity.errors import InvalidVoteRequest, VoteIntegrityError
from voteintegrity.ledger.receipt import build_vote_receipt
from voteintegrity.ledger.verification import NOT_FOUND, VALID
from voteintegrity.operations.health_monitor import check_health
from voteintegrity.pipeline.admission import VoteRequest
from voteintegrity.security.fingerprint import fingerprint_from_payload
from voteintegrity.security.risk_gate import BehaviorSample
from voteintegrity.services import get_services

logger = logging.getLogger(__name__)

bp = Blueprint('vote_integrity', __name__)


@bp.app_errorhandler(VoteIntegrityError)
def handle_vote_integrity_error(error):
    return jsonify(error.to_dict()), error.http_status


@bp.app_errorhandler(429)
def handle_rate_limited(error):
    return jsonify({"error": "Too many requests", "reason": "rate_limited"}), 429


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise InvalidVoteRequest("Request body must be JSON")
    return data


def _vote_rate_limit():
    return current_app.config.get('VOTE_RATE_LIMIT', '30/minute')


@bp.route('/api/votes', methods=['POST'])
@limiter.limit(_vote_rate_limit)
@require_permission(Permission.CAST_VOTE)
def submit_vote():
    services = get_services()
    data = services.validator.validate_vote_request(_json_body())
    voter_id, email = services.validator.validate_voter_identity(get_jwt_identity(), get_jwt().get('email'))

    # A voter may only vote as themselves
    if data['voter_id'] is not None and data['voter_id'] != voter_id:
        raise AccessDenied("Token identity does not match voter_id")

    try:
        fingerprint = fingerprint_from_payload(data['device_fingerprint'])
        behavior = BehaviorSample.from_dict(data['behavior'])
    except (TypeError, ValueError) as e:
        raise InvalidVoteRequest(str(e))

    result = services.pipeline.submit(VoteRequest(
        voter_id=voter_id,
        election_id=data['election_id'],
        candidate_id=data['candidate_id'],
        fingerprint=fingerprint,
        behavior=behavior,
        ip_address=request.remote_addr,
        email=email,
    ))
    receipt = build_vote_receipt(
        result.vote_id, result.election_id, result.leaf_hash, result.merkle_root, result.leaf_index,
        current_app.config['VERIFY_URL_TEMPLATE'],
    )
    return jsonify({
        "vote_id": result.vote_id,
        "election_id": result.election_id,
        "merkle_proof": result.merkle_proof.to_dict(),
        "merkle_root": result.merkle_root,
        "risk_level": result.risk.risk_level.value,
        "receipt": receipt,
    }), 201


@bp.route('/api/votes/<vote_id>/verify', methods=['GET'])
def verify_vote(vote_id):
    outcome = get_services().verifier.verify_vote(vote_id)
    return jsonify(outcome), 404 if outcome['status'] == NOT_FOUND else 200


@bp.route('/api/votes/<vote_id>/receipt', methods=['GET'])
def vote_receipt(vote_id):
    from voteintegrity.database.models import VoteRecord
    services = get_services()
    outcome = services.verifier.verify_vote(vote_id)
    if outcome['status'] == NOT_FOUND:
        return jsonify(outcome), 404
    if outcome['status'] != VALID:
        return jsonify(outcome), 409
    record = db.session.get(VoteRecord, vote_id)
    receipt = build_vote_receipt(
        record.vote_id, record.election_id, record.leaf_hash, outcome['merkle_root'],
        record.merkle_leaf_index, current_app.config['VERIFY_URL_TEMPLATE'],
    )
    return jsonify(receipt), 200


@bp.route('/api/elections', methods=['POST'])
@require_permission(Permission.MANAGE_ELECTIONS)
def create_election():
    services = get_services()
    data = services.validator.validate_election_request(_json_body())
    election = services.elections.create_election(
        data['name'], data['candidates'], org_id=data['org_id'],
        starts_at=data['starts_at'], ends_at=data['ends_at'],
    )
    return jsonify({
        "election_id": election.id,
        "name": election.name,
        "status": election.status,
        "candidates": [{"id": c.id, "name": c.name, "party": c.party} for c in election.candidates],
        "key_id": election.key.key_id,
        "public_key_n": election.key.modulus,
    }), 201


@bp.route('/api/elections/<election_id>/close', methods=['POST'])
@require_permission(Permission.CLOSE_ELECTION)
def close_election(election_id):
    counts = get_services().elections.close_election(election_id)
    return jsonify({
        "election_id": election_id,
        "status": "closed",
        "tally": {str(k): v for k, v in sorted(counts.items())},
    }), 200


@bp.route('/api/elections/<election_id>/tally', methods=['GET'])
@require_permission(Permission.VIEW_TALLY)
def election_tally(election_id):
    counts = get_services().elections.tally(election_id)
    return jsonify({str(k): v for k, v in sorted(counts.items())}), 200


@bp.route('/api/elections/<election_id>/ledger', methods=['GET'])
def election_ledger(election_id):
    services = get_services()
    election = services.elections.get_election(election_id)
    snapshot = services.ledgers.get(election_id).snapshot()
    return jsonify({
        "election_id": election_id,
        "status": election.status,
        "merkle_root": snapshot.root,
        "size": snapshot.size,
    }), 200


@bp.route('/api/voters/<voter_id>/elections/<election_id>/status', methods=['GET'])
@jwt_required(optional=True)
def voter_status(voter_id, election_id):
    identity = get_jwt_identity()
    if identity is not None and str(identity) != voter_id:
        raise AccessDenied("Token identity does not match voter_id")
    services = get_services()
    services.elections.get_election(election_id)
    return jsonify({
        "voter_id": voter_id,
        "election_id": election_id,
        "has_voted": services.elections.has_voted(voter_id, election_id),
    }), 200


@bp.route('/health', methods=['GET'])
def health():
    res = check_health(get_services().ledgers)
    code = 200 if res["overall_ok"] else 503
    return jsonify(res), code
