# tests/conftest.py

import types

import pytest
from flask_jwt_extended import create_access_token

from voteintegrity import create_app, db
from voteintegrity.config import TestingConfig
from voteintegrity.encryption.ballot_cipher import BallotCipher
from voteintegrity.pipeline.admission import VoteRequest
from voteintegrity.security.fingerprint import SyntheticFingerprint
from voteintegrity.services import get_services

TEST_KEY_BITS = 512


@pytest.fixture(scope="session")
def cipher():
    return BallotCipher(key_bits=TEST_KEY_BITS)


@pytest.fixture(scope="session")
def keypair(cipher):
    return cipher.generate_keypair("election-1", candidates=[1, 2, 3])


@pytest.fixture(scope="session")
def other_keypair(cipher):
    return cipher.generate_keypair("election-2", candidates=[1, 2, 3])


@pytest.fixture
def app(tmp_path):
    """App backed by a temp-file SQLite database so worker threads share it."""
    app = create_app(
        TestingConfig,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'votes.db'}",
        AUDIT_LOG_DIR=str(tmp_path / "logs"),
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions["vote_integrity"].shutdown()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def services(app):
    return get_services()


@pytest.fixture
def election(services):
    """An open election with three candidates, as plain values."""
    created = services.elections.create_election("Board election", ["Alice", "Bob", "Carol"])
    info = types.SimpleNamespace(
        id=created.id,
        candidate_ids=[c.id for c in created.candidates],
    )
    db.session.remove()
    return info


def vote_request(election, voter_id, choice=0, **kwargs):
    kwargs.setdefault("fingerprint", SyntheticFingerprint(f"device-of-{voter_id}"))
    return VoteRequest(
        voter_id=voter_id,
        election_id=election.id,
        candidate_id=election.candidate_ids[choice],
        **kwargs,
    )


def auth_header(identity, role, **claims):
    token = create_access_token(identity=identity, additional_claims={"role": role, **claims})
    return {"Authorization": f"Bearer {token}"}
