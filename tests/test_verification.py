"""
Tests for code generation, input rules and the verification flow.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core import verification as verification_module
from app.core.errors import (
    AuthInvalid,
    CodeExpired,
    RecordExists,
    RecordNotFound,
    Unauthorized,
    UpstreamError,
    ValidationFailed,
    VerificationPending,
)
from app.core.security import get_password_hash
from app.core.verification import (
    create_unique_verification,
    extract_verification_code,
    generate_verification_code,
    validate_name,
    validate_password,
    validate_phone,
)
from app.crud import verification as verification_crud
from app.models.user import User
from app.schemas.session import AuthMethod
from app.services.verification_flow import VerificationFlow
from app.tasks import verification_tasks

PHONE = "15551234567"


@pytest.fixture
def flow(db_session, recording_sender, signer):
    return VerificationFlow(db_session, recording_sender, signer)


def confirm(flow, record):
    """Simulate the user sending the code over WhatsApp."""
    return flow.handle_inbound_message(record.phone, f"code {record.code}")


class TestCodes:
    def test_generated_codes_mix_letters_and_digits(self):
        for _ in range(200):
            code = generate_verification_code()
            assert len(code) == 6
            assert any(c.isalpha() for c in code)
            assert any(c.isdigit() for c in code)
            assert code.isalnum()

    @pytest.mark.parametrize("message,expected", [
        ("AB12CD", "AB12CD"),
        ("my code is ab12cd", "AB12CD"),
        ("PLEASE use X9Y8Z7 now", "X9Y8Z7"),
        ("first 1A2B3C then 4D5E6F", "1A2B3C"),
        ("VERIFY", None),
        ("123456", None),
        ("AB12CDE", None),
        ("", None),
        ("code:AB12CD.", "AB12CD"),
    ])
    def test_extraction(self, message, expected):
        assert extract_verification_code(message) == expected


class TestInputRules:
    def test_name_is_sanitized(self):
        assert validate_name("  <b>Mary-Jane</b> ") == "Mary-Jane"

    def test_apostrophes_are_stripped(self):
        assert validate_name("O'Brien") == "OBrien"

    @pytest.mark.parametrize("name", ["", "A", "<script>alert(1)</script>", "Robert1", "x" * 101])
    def test_bad_names(self, name):
        with pytest.raises(ValidationFailed):
            validate_name(name)

    def test_phone_is_reduced_to_digits(self):
        assert validate_phone("+1 (555) 123-4567") == PHONE

    @pytest.mark.parametrize("phone", ["", "123456789", "1" * 16, "015551234567"])
    def test_bad_phones(self, phone):
        with pytest.raises(ValidationFailed):
            validate_phone(phone)

    def test_ten_digit_phone_may_start_with_zero(self):
        assert validate_phone("0123456789") == "0123456789"

    @pytest.mark.parametrize("password", [
        "abc12",            # too short
        "12345678",         # no letter
        "myPassword1",      # contains "password"
        "abc123456",        # contains "123456"
        "aaaab1",           # four in a row
        "x" * 129,
    ])
    def test_bad_passwords(self, password):
        with pytest.raises(ValidationFailed):
            validate_password(password)

    def test_good_password(self):
        assert validate_password("tulip7") == "tulip7"


class TestCreateUniqueVerification:
    def test_creates_unverified_record_with_ten_minute_expiry(self, db_session):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        record = create_unique_verification(db_session, "Ada", PHONE, now=now)

        assert record.id is not None
        assert record.verified is False
        assert record.expires_at.replace(tzinfo=timezone.utc) == now + timedelta(minutes=10)

    def test_retries_on_collision(self, db_session, monkeypatch):
        existing = create_unique_verification(db_session, "Ada", PHONE)
        codes = iter([existing.code, existing.code, "ZZ99ZZ"])
        monkeypatch.setattr(verification_module, "generate_verification_code", lambda: next(codes))

        record = create_unique_verification(db_session, "Bob", "15557654321")
        assert record.code == "ZZ99ZZ"

    def test_insert_collision_with_expired_record_is_retried(self, db_session, monkeypatch):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        expired = create_unique_verification(db_session, "Ada", PHONE, now=past)
        codes = iter([expired.code, "YY88YY"])
        monkeypatch.setattr(verification_module, "generate_verification_code", lambda: next(codes))

        record = create_unique_verification(db_session, "Bob", "15557654321")
        assert record.code == "YY88YY"

    def test_exhaustion_raises(self, db_session, monkeypatch):
        existing = create_unique_verification(db_session, "Ada", PHONE)
        monkeypatch.setattr(verification_module, "generate_verification_code", lambda: existing.code)

        with pytest.raises(UpstreamError):
            create_unique_verification(db_session, "Bob", "15557654321", max_attempts=3)


class TestSignup:
    def test_start_signup_issues_unverified_token(self, flow, signer):
        record, token = flow.start_signup("Ada Lovelace", "+1 555 123 4567")

        claims = signer.verify(token)
        assert claims.subject == record.code
        assert claims.method == AuthMethod.VERIFICATION
        assert claims.verified is False
        assert claims.phone == PHONE
        assert claims.expires_at - claims.issued_at == 24 * 60 * 60

    def test_start_signup_rejects_registered_phone(self, flow, db_session):
        verification_crud.upsert_user(db_session, PHONE, "Ada", "hash")
        with pytest.raises(RecordExists):
            flow.start_signup("Ada", PHONE)

    def test_start_signup_validates_input(self, flow):
        with pytest.raises(ValidationFailed):
            flow.start_signup("A", PHONE)


class TestInboundMessages:
    def test_flip_happens_once(self, flow, db_session, sent_messages):
        record, _ = flow.start_signup("Ada", PHONE)

        assert confirm(flow, record).status == "verified"
        assert confirm(flow, record).status == "already_verified"

        db_session.refresh(record)
        assert record.verified
        assert "Welcome, Ada" in sent_messages[0][1]
        assert "already verified" in sent_messages[1][1]

    def test_expired_code_is_invalid(self, db_session, recording_sender, signer, sent_messages):
        now = datetime.now(timezone.utc)
        flow = VerificationFlow(db_session, recording_sender, signer, now=lambda: now)
        record, _ = flow.start_signup("Ada", PHONE)

        later = VerificationFlow(db_session, recording_sender, signer, now=lambda: now + timedelta(minutes=11))
        assert confirm(later, record).status == "invalid"
        assert "Invalid verification code" in sent_messages[-1][1]

    def test_store_failure_sends_error_reply(self, flow, monkeypatch, sent_messages):
        record, _ = flow.start_signup("Ada", PHONE)

        def broken(*args, **kwargs):
            raise UpstreamError(operation="update_verification_verified")

        monkeypatch.setattr(verification_crud, "update_verification_verified", broken)
        assert confirm(flow, record).status == "error"
        assert "Error verifying" in sent_messages[-1][1]

    def test_failed_reply_does_not_undo_verification(self, db_session, signer):
        flow = VerificationFlow(db_session, lambda to, text: False, signer)
        record, _ = flow.start_signup("Ada", PHONE)

        outcome = confirm(flow, record)
        assert outcome.status == "verified"
        assert outcome.reply_queued is False


class TestExchangeCode:
    def test_unverified_code_is_pending(self, flow):
        record, _ = flow.start_signup("Ada", PHONE)
        with pytest.raises(VerificationPending):
            flow.exchange_code(record.code)

    def test_unknown_code(self, flow):
        with pytest.raises(RecordNotFound):
            flow.exchange_code("QQ11QQ")

    def test_expired_verified_code_looks_unknown(self, flow, db_session):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        record = create_unique_verification(db_session, "Ada", PHONE, now=past)
        assert verification_crud.update_verification_verified(db_session, record.code, now=past)

        with pytest.raises(RecordNotFound) as expired:
            flow.exchange_code(record.code)
        with pytest.raises(RecordNotFound) as unknown:
            flow.exchange_code("QQ11QQ")

        assert expired.value.code == unknown.value.code == "RECORD_NOT_FOUND"
        assert expired.value.message == unknown.value.message

    @pytest.mark.parametrize("code", ["", "   ", "AB12", "ABCDEF", "AB12CD7"])
    def test_malformed_code(self, flow, code):
        with pytest.raises(ValidationFailed):
            flow.exchange_code(code)

    def test_verified_code_mints_one_hour_session(self, flow, signer):
        record, _ = flow.start_signup("Ada", PHONE)
        confirm(flow, record)

        _, token = flow.exchange_code(record.code.lower())
        claims = signer.verify(token)
        assert claims.verified is True
        assert claims.expires_at - claims.issued_at == 60 * 60


class TestSetPassword:
    def _verified_session(self, flow, signer):
        record, _ = flow.start_signup("Ada", PHONE)
        confirm(flow, record)
        _, token = flow.exchange_code(record.code)
        return record, signer.verify(token)

    def test_creates_account_and_password_session(self, flow, signer, db_session):
        record, claims = self._verified_session(flow, signer)

        user, token = flow.set_password(claims, record.code, "tulip7")

        session = signer.verify(token)
        assert session.method == AuthMethod.PASSWORD
        assert len(session.subject) == 128
        assert user.phone == PHONE
        assert db_session.query(User).count() == 1

    def test_reset_updates_account_in_place(self, flow, signer, db_session):
        record, claims = self._verified_session(flow, signer)
        first, _ = flow.set_password(claims, record.code, "tulip7")

        reset, _ = flow.start_password_reset(PHONE)
        confirm(flow, reset)
        _, token = flow.exchange_code(reset.code)
        second, _ = flow.set_password(signer.verify(token), reset.code, "orchid8")

        assert second.id == first.id
        assert db_session.query(User).count() == 1
        flow.authenticate_password(PHONE, "orchid8")
        with pytest.raises(AuthInvalid):
            flow.authenticate_password(PHONE, "tulip7")

    def test_session_for_another_code_is_unauthorized(self, flow, signer):
        record, claims = self._verified_session(flow, signer)
        with pytest.raises(Unauthorized):
            flow.set_password(claims, "ZZ99ZZ", "tulip7")

    def test_password_session_cannot_set_password(self, flow, signer):
        record, claims = self._verified_session(flow, signer)
        _, token = flow.set_password(claims, record.code, "tulip7")
        with pytest.raises(Unauthorized):
            flow.set_password(signer.verify(token), record.code, "orchid8")

    def test_weak_password(self, flow, signer):
        record, claims = self._verified_session(flow, signer)
        with pytest.raises(ValidationFailed):
            flow.set_password(claims, record.code, "password1")

    def test_unverified_record(self, flow, signer):
        record, token = flow.start_signup("Ada", PHONE)
        with pytest.raises(RecordNotFound):
            flow.set_password(signer.verify(token), record.code, "tulip7")

    def test_expired_record(self, db_session, recording_sender, signer):
        now = datetime.now(timezone.utc)
        flow = VerificationFlow(db_session, recording_sender, signer, now=lambda: now)
        record, claims = self._verified_session(flow, signer)

        later = VerificationFlow(db_session, recording_sender, signer, now=lambda: now + timedelta(minutes=11))
        with pytest.raises(CodeExpired):
            later.set_password(claims, record.code, "tulip7")


class TestPasswordLogin:
    def test_unknown_phone(self, flow):
        with pytest.raises(AuthInvalid):
            flow.authenticate_password(PHONE, "tulip7")

    def test_success(self, flow, signer, db_session):
        verification_crud.upsert_user(db_session, PHONE, "Ada", get_password_hash("tulip7"))

        user, token = flow.authenticate_password(PHONE, "tulip7")
        assert signer.verify(token).display_name == "Ada"
        with pytest.raises(AuthInvalid):
            flow.authenticate_password(PHONE, "tulip8")

    def test_password_reset_requires_account(self, flow):
        with pytest.raises(RecordNotFound) as exc_info:
            flow.start_password_reset(PHONE)
        assert exc_info.value.code == "ACCOUNT_NOT_FOUND"


class TestDescribeSession:
    def test_reissues_token_when_verified_flag_changes(self, flow, signer):
        record, token = flow.start_signup("Ada", PHONE)
        claims = signer.verify(token)

        view, refreshed = flow.describe_session(claims)
        assert view.verified is False
        assert refreshed is None

        confirm(flow, record)
        view, refreshed = flow.describe_session(claims)
        assert view.verified is True
        assert signer.verify(refreshed).verified is True

    def test_missing_record(self, flow, signer, db_session):
        record, token = flow.start_signup("Ada", PHONE)
        db_session.delete(record)
        db_session.commit()
        with pytest.raises(RecordNotFound):
            flow.describe_session(signer.verify(token))

    def test_password_session_skips_record_lookup(self, flow, signer, db_session):
        verification_crud.upsert_user(db_session, PHONE, "Ada", get_password_hash("tulip7"))
        _, token = flow.authenticate_password(PHONE, "tulip7")

        view, refreshed = flow.describe_session(signer.verify(token))
        assert view.verified is True
        assert view.name == "Ada"
        assert refreshed is None


class TestCleanupTask:
    def test_purges_records_expired_over_a_day_ago(self, db_session, monkeypatch):
        create_unique_verification(db_session, "Ada", PHONE, now=datetime.now(timezone.utc) - timedelta(days=2))
        fresh = create_unique_verification(db_session, "Bob", "15557654321")
        monkeypatch.setattr(verification_tasks, "SessionLocal", lambda: db_session)

        result = verification_tasks.cleanup_expired_verification_codes_task.run()

        assert result == {"status": "success", "deleted_count": 1}
        assert verification_crud.find_verification_by_code(db_session, fresh.code) is not None
