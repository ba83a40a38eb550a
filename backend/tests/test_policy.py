"""Tests for room code classification and normalization."""
import pytest

from fileshare.config import RoomSettings
from fileshare.errors import InvalidRoomCode, Unauthorized
from fileshare.rooms.policy import RoomClass, RoomPolicy


@pytest.fixture
def policy():
    return RoomPolicy(RoomSettings())


class TestClassify:
    def test_normal_room(self, policy):
        assert policy.classify("AB12CD") is RoomClass.NORMAL

    def test_permanent_vault(self, policy):
        assert policy.classify("RAM123") is RoomClass.PERMANENT_VAULT

    def test_admin_aggregator(self, policy):
        assert policy.classify("RAMRAM") is RoomClass.ADMIN_AGGREGATOR

    def test_classify_is_case_insensitive(self, policy):
        assert policy.classify("ramram") is RoomClass.ADMIN_AGGREGATOR
        assert policy.classify(" ram123 ") is RoomClass.PERMANENT_VAULT

    def test_reserved_codes_are_configurable(self):
        policy = RoomPolicy(RoomSettings(permanent_vault_code="vault1", admin_code="boss99"))
        assert policy.classify("VAULT1") is RoomClass.PERMANENT_VAULT
        assert policy.classify("BOSS99") is RoomClass.ADMIN_AGGREGATOR
        assert policy.classify("RAMRAM") is RoomClass.NORMAL


class TestPolicyQuestions:
    def test_only_normal_rooms_expire(self, policy):
        assert not policy.is_exempt_from_cleanup("AB12CD")
        assert policy.is_exempt_from_cleanup("RAM123")
        assert policy.is_exempt_from_cleanup("RAMRAM")

    def test_only_admin_aggregates(self, policy):
        assert policy.aggregates_all_rooms("RAMRAM")
        assert not policy.aggregates_all_rooms("RAM123")
        assert not policy.aggregates_all_rooms("AB12CD")

    def test_bulk_clear_allowed_for_admin(self, policy):
        policy.authorize_bulk_clear("RAMRAM")

    @pytest.mark.parametrize("code", ["AB12CD", "RAM123", ""])
    def test_bulk_clear_rejected_for_others(self, policy, code):
        with pytest.raises(Unauthorized):
            policy.authorize_bulk_clear(code)


class TestNormalize:
    def test_uppercases(self, policy):
        assert policy.normalize("ab12cd") == "AB12CD"

    def test_strips_whitespace(self, policy):
        assert policy.normalize("  xy99zz ") == "XY99ZZ"

    def test_reserved_codes_pass(self, policy):
        assert policy.normalize("ramram") == "RAMRAM"

    @pytest.mark.parametrize("code", ["", "ABC", "ABCDEFG", None])
    def test_wrong_length_rejected(self, policy, code):
        with pytest.raises(InvalidRoomCode):
            policy.normalize(code)

    def test_invalid_code_maps_to_400(self, policy):
        with pytest.raises(InvalidRoomCode) as exc_info:
            policy.normalize("A")
        assert exc_info.value.status_code == 400
