"""Unit tests for verification UIDs, login codes and phone codes."""

from datetime import timedelta

import pytest

from authcore.service.errors import ResponseCode
from authcore.service.verification import (
    LoginCodeStore,
    PhoneCodeStore,
    VerificationPair,
    VerificationStore,
)
from authcore.storage.models import AuthType, VerificationType


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("a@x.com", AuthType.PASSWORD, "hash")


@pytest.fixture
def uids(memory_store, hasher, clock):
    return VerificationStore(memory_store, hasher, ttl=timedelta(hours=24), clock=clock)


@pytest.fixture
def login_codes(memory_store, clock):
    return LoginCodeStore(memory_store, ttl=timedelta(minutes=10), clock=clock)


@pytest.fixture
def phone_codes(memory_store, clock):
    return PhoneCodeStore(memory_store, ttl=timedelta(minutes=10), clock=clock)


class TestVerificationPair:
    def test_link_token_round_trip(self):
        pair = VerificationPair(uid="abc", hash_uid="def")

        assert VerificationPair.parse(pair.link_token) == pair

    @pytest.mark.parametrize("raw", ["", "abc", "abc/", "/def", "a/b/c"])
    def test_parse_rejects_bad_shapes(self, raw):
        assert VerificationPair.parse(raw) is None


class TestVerificationUids:
    def test_issue_and_verify(self, uids, user, memory_store):
        issued = uids.set_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION)
        assert issued.ok

        entry = memory_store.get_verification_entry(issued.value.uid, VerificationType.EMAIL_VERIFICATION)
        # Only the hash of the secret half is stored
        assert entry.hash != issued.value.hash_uid

        verified = uids.verify_uid(
            issued.value.uid, issued.value.hash_uid, VerificationType.EMAIL_VERIFICATION
        )
        assert verified.ok
        assert verified.value.user_id == user.id

    def test_new_uid_supersedes_previous(self, uids, user, memory_store):
        first = uids.set_verification_uid(user.id, VerificationType.RESET_PASSWORD).value
        second = uids.set_verification_uid(user.id, VerificationType.RESET_PASSWORD).value

        stale = uids.verify_uid(first.uid, first.hash_uid, VerificationType.RESET_PASSWORD)
        assert stale.code == ResponseCode.VERIFICATION_UID_NOT_FOUND
        assert uids.verify_uid(second.uid, second.hash_uid, VerificationType.RESET_PASSWORD).ok
        assert len(memory_store.list_verification_entries(user.id)) == 1

    def test_purposes_are_independent(self, uids, user, memory_store):
        uids.set_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION)
        reset = uids.set_verification_uid(user.id, VerificationType.RESET_PASSWORD).value

        assert len(memory_store.list_verification_entries(user.id)) == 2
        wrong_purpose = uids.verify_uid(reset.uid, reset.hash_uid, VerificationType.EMAIL_VERIFICATION)
        assert wrong_purpose.code == ResponseCode.VERIFICATION_UID_NOT_FOUND

    def test_wrong_hash_keeps_entry(self, uids, user):
        pair = uids.set_verification_uid(user.id, VerificationType.RESET_PASSWORD).value

        mismatch = uids.verify_uid(pair.uid, "not-the-secret", VerificationType.RESET_PASSWORD)
        assert mismatch.code == ResponseCode.INVALID_UID
        assert uids.verify_uid(pair.uid, pair.hash_uid, VerificationType.RESET_PASSWORD).ok

    def test_expired_uid_is_invalid(self, uids, user, clock):
        pair = uids.set_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION).value
        clock.advance(hours=24, seconds=1)

        expired = uids.verify_uid(pair.uid, pair.hash_uid, VerificationType.EMAIL_VERIFICATION)
        assert expired.code == ResponseCode.INVALID_UID

    def test_consume_is_single_use(self, uids, user):
        pair = uids.set_verification_uid(user.id, VerificationType.RESET_PASSWORD).value
        entry = uids.verify_uid(pair.uid, pair.hash_uid, VerificationType.RESET_PASSWORD).value

        assert uids.consume(entry).ok
        assert uids.consume(entry).code == ResponseCode.VERIFICATION_UID_NOT_FOUND

    def test_unknown_user(self, uids):
        issued = uids.set_verification_uid("missing", VerificationType.EMAIL_VERIFICATION)

        assert issued.code == ResponseCode.USER_NOT_FOUND

    def test_uid_collision_is_a_conflict(self, uids, user, monkeypatch):
        monkeypatch.setattr(
            "authcore.service.verification.secrets.token_urlsafe", lambda n: "fixed-token"
        )
        assert uids.set_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION).ok

        clash = uids.set_verification_uid(user.id, VerificationType.RESET_PASSWORD)
        assert clash.code == ResponseCode.CONFLICT

    def test_clear(self, uids, user):
        uids.set_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION)

        assert uids.clear_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION).ok
        missing = uids.clear_verification_uid(user.id, VerificationType.EMAIL_VERIFICATION)
        assert missing.code == ResponseCode.VERIFICATION_UID_NOT_FOUND


class TestLoginCodes:
    def test_code_shape(self, login_codes):
        for _ in range(50):
            code = login_codes.generate_code()
            assert len(code) == 4 and code.isdigit() and code[0] != "0"

    def test_reissue_supersedes(self, login_codes, memory_store):
        first = login_codes.issue("a@x.com").value
        second = login_codes.issue("a@x.com").value

        assert len(memory_store.list_login_codes("a@x.com")) == 1
        if first.code != second.code:
            assert login_codes.redeem("a@x.com", first.code).code == ResponseCode.INVALID_INPUT
        assert login_codes.redeem("a@x.com", second.code).ok

    def test_redeem_consumes(self, login_codes):
        issued = login_codes.issue("a@x.com").value

        assert login_codes.redeem("a@x.com", issued.code).ok
        assert login_codes.redeem("a@x.com", issued.code).code == ResponseCode.INVALID_INPUT

    def test_expired_code_stays_until_superseded(self, login_codes, clock, memory_store):
        issued = login_codes.issue("a@x.com").value
        clock.advance(minutes=10)

        assert login_codes.redeem("a@x.com", issued.code).code == ResponseCode.SESSION_EXPIRED
        assert len(memory_store.list_login_codes("a@x.com")) == 1

    def test_code_bound_to_email(self, login_codes):
        issued = login_codes.issue("a@x.com").value

        assert login_codes.redeem("b@x.com", issued.code).code == ResponseCode.INVALID_INPUT


class TestPhoneCodes:
    def test_code_shape(self, phone_codes):
        for _ in range(50):
            code = phone_codes.generate_code()
            assert len(code) == 6 and code.isdigit()

    def test_redeem(self, phone_codes, user, memory_store):
        issued = phone_codes.issue(user.id, "+15555550100").value

        redeemed = phone_codes.redeem(user.id, issued.code)
        assert redeemed.ok
        assert redeemed.value.phone_number == "+15555550100"
        assert memory_store.get_phone_code(user.id) is None

    def test_wrong_code_keeps_record(self, phone_codes, user):
        issued = phone_codes.issue(user.id, "+15555550100").value
        wrong = "000000" if issued.code != "000000" else "111111"

        assert phone_codes.redeem(user.id, wrong).code == ResponseCode.INVALID_INPUT
        assert phone_codes.redeem(user.id, issued.code).ok

    def test_expired_code_is_deleted(self, phone_codes, user, clock, memory_store):
        issued = phone_codes.issue(user.id, "+15555550100").value
        clock.advance(minutes=11)

        assert phone_codes.redeem(user.id, issued.code).code == ResponseCode.SESSION_EXPIRED
        assert memory_store.get_phone_code(user.id) is None

    def test_reissue_supersedes(self, phone_codes, user, memory_store):
        phone_codes.issue(user.id, "+15555550100")
        latest = phone_codes.issue(user.id, "+15555550101").value

        assert memory_store.get_phone_code(user.id).id == latest.id

    def test_unknown_user(self, phone_codes):
        assert phone_codes.issue("missing", "+15555550100").code == ResponseCode.USER_NOT_FOUND
