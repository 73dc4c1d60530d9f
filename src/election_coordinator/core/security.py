"""Request fingerprinting and voter key derivation.

Fingerprints are the deduplication keys of the idempotency guard. Voter keys
are one-way hashes so the registry never holds a raw voter identity.
"""

import hashlib

from election_coordinator.core.config import settings

START_ELECTION_TAG = "start"
VOTE_TAG = "vote"


def derive_voter_key(session_identity: str, election_id: int) -> str:
    """
    Generate a deterministic voter key for an election.

    The same identity voting in the same election always yields the same key,
    keys cannot be reversed to the identity, and keys for one identity cannot
    be linked across elections.

    Args:
        session_identity: Signer address or other stable session identifier
        election_id: The election being voted in

    Returns:
        A SHA-256 hex digest
    """
    data = f"{session_identity.lower()}:{election_id}:{settings.VOTER_KEY_SALT}"
    return hashlib.sha256(data.encode()).hexdigest()


def start_election_fingerprint(election_id: int) -> str:
    return f"{START_ELECTION_TAG}:{election_id}"


def vote_fingerprint(election_id: int, voter_key: str) -> str:
    return f"{VOTE_TAG}:{election_id}:{voter_key}"
