"""
Tests for vote aggregation: one stance per voter, idempotent repeats, counter consistency.
"""

import pytest
from datetime import datetime, timezone

from plan_acceptance.core.errors import NotFoundError, ValidationError
from plan_acceptance.core.schema import VoteDirection
from plan_acceptance.core.votes import parse_direction


CLOCK_START = datetime(2025, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def entry(ledger):
    return ledger.submit({
        "provider_key": "npi-555",
        "plan_key": "plan-bronze",
        "accepts_insurance": True,
        "origin_fingerprint": "fp-submitter",
    })


class TestCastVote:
    """Test vote creation, repeats and changes."""

    def test_first_vote_increments_counter(self, votes, entry):
        result = votes.cast_vote(entry.id, "fp-voter-1", "up")

        assert result.vote_created is True
        assert result.vote_changed is False
        assert result.previous_direction is None
        assert result.verification.upvotes == 1
        assert result.verification.downvotes == 0
        assert result.key == entry.key

    def test_same_vote_twice_is_noop(self, votes, ledger, entry):
        votes.cast_vote(entry.id, "fp-voter-1", VoteDirection.UP)
        result = votes.cast_vote(entry.id, "fp-voter-1", VoteDirection.UP)

        assert result.vote_created is False
        assert result.vote_changed is False
        assert result.previous_direction == VoteDirection.UP
        stored = ledger.get(entry.id)
        assert (stored.upvotes, stored.downvotes) == (1, 0)

    def test_switching_direction_moves_one_count(self, votes, ledger, entry):
        votes.cast_vote(entry.id, "fp-voter-1", "up")
        votes.cast_vote(entry.id, "fp-voter-2", "up")
        votes.cast_vote(entry.id, "fp-voter-3", "down")

        result = votes.cast_vote(entry.id, "fp-voter-1", "down")

        assert result.vote_changed is True
        assert result.previous_direction == VoteDirection.UP
        assert (result.verification.upvotes, result.verification.downvotes) == (1, 2)
        assert votes.get_vote(entry.id, "fp-voter-1") == VoteDirection.DOWN

    def test_counters_match_vote_rows(self, votes, ledger, entry):
        for i in range(5):
            votes.cast_vote(entry.id, f"fp-{i}", "up" if i % 2 == 0 else "down")
        votes.cast_vote(entry.id, "fp-0", "down")
        votes.cast_vote(entry.id, "fp-1", "down")

        stored = ledger.get(entry.id)
        tally = votes.tally(entry.id)
        assert tally == {"up": stored.upvotes, "down": stored.downvotes, "net": stored.upvotes - stored.downvotes}
        assert tally == {"up": 2, "down": 3, "net": -1}

    def test_voter_fingerprint_is_trimmed(self, votes, entry):
        votes.cast_vote(entry.id, "  fp-voter  ", "up")
        result = votes.cast_vote(entry.id, "fp-voter", "up")

        assert result.vote_created is False


class TestVoteRejections:
    """Test votes that must not be recorded."""

    def test_unknown_verification(self, votes):
        with pytest.raises(NotFoundError):
            votes.cast_vote("does-not-exist", "fp-voter", "up")

    def test_expired_verification(self, votes, entry, clock):
        clock.advance(days=181)

        with pytest.raises(NotFoundError):
            votes.cast_vote(entry.id, "fp-voter", "up")

    def test_superseded_verification(self, votes, ledger, entry, clock):
        clock.advance(days=1)
        ledger.submit({
            "provider_key": "npi-555",
            "plan_key": "plan-bronze",
            "accepts_insurance": False,
            "origin_fingerprint": "fp-submitter",
        })

        with pytest.raises(NotFoundError):
            votes.cast_vote(entry.id, "fp-voter", "up")

    @pytest.mark.parametrize("direction", ["sideways", "", None])
    def test_invalid_direction(self, votes, entry, direction):
        with pytest.raises(ValidationError):
            votes.cast_vote(entry.id, "fp-voter", direction)

    def test_blank_fingerprint(self, votes, entry):
        with pytest.raises(ValidationError):
            votes.cast_vote(entry.id, "   ", "up")


def test_parse_direction():
    assert parse_direction("UP") == VoteDirection.UP
    assert parse_direction(" down ") == VoteDirection.DOWN
    assert parse_direction(VoteDirection.DOWN) == VoteDirection.DOWN
