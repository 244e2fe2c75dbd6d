"""
ClinicSession - Two-Factor Authentication Tests

Tests for:
- TOTP enrolment state machine
- Two-step login with TOTP and backup codes
- Disabling 2FA
- 2FA HTTP endpoints
"""

import pytest

from clinicsession.audit import SecurityEventType
from clinicsession.auth.two_factor import (
    TwoFactorState,
    generate_backup_codes,
    hash_backup_code,
    is_backup_code,
)
from clinicsession.errors import (
    InvalidTempToken,
    InvalidTwoFactorCode,
    TwoFactorAlreadyEnabled,
    TwoFactorNotInitiated,
)
from tests.conftest import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    ADMIN_TOTP_SECRET,
    DOCTOR_EMAIL,
    DOCTOR_PASSWORD,
    auth_headers,
    load_account,
    login,
    totp_code,
)


async def enable_two_factor(services, account, clock):
    """Run enrolment to completion and return (secret, backup_codes)."""
    setup = await services.two_factor.initiate_setup(account.id)
    codes = await services.two_factor.confirm_setup(account.id, totp_code(setup.secret, clock))
    return setup.secret, codes


class TestBackupCodes:

    def test_generated_codes_shape(self):
        codes = generate_backup_codes(10)

        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(is_backup_code(c) for c in codes)

    def test_totp_code_is_not_backup_code(self):
        assert not is_backup_code("123456")

    def test_hash_ignores_case_and_whitespace(self):
        assert hash_backup_code(" ABCDE-12345 ") == hash_backup_code("abcde-12345")


class TestEnrolment:

    @pytest.mark.asyncio
    async def test_initiate_setup(self, services, doctor, test_engine):
        """Setup returns a secret and URI but leaves the account unchanged."""
        result = await services.two_factor.initiate_setup(doctor.id)

        assert result.provisioning_uri.startswith("otpauth://totp/")
        assert "secret=" + result.secret in result.provisioning_uri
        assert len(result.backup_codes) == 10
        assert await services.two_factor.state(doctor.id) == TwoFactorState.PENDING_SETUP
        assert load_account(test_engine, doctor.id).two_factor_enabled is False

    @pytest.mark.asyncio
    async def test_confirm_without_setup(self, services, doctor):
        with pytest.raises(TwoFactorNotInitiated):
            await services.two_factor.confirm_setup(doctor.id, "123456")

    @pytest.mark.asyncio
    async def test_confirm_with_wrong_code(self, services, doctor, clock):
        setup = await services.two_factor.initiate_setup(doctor.id)
        wrong = totp_code(setup.secret, clock, steps=5)

        with pytest.raises(InvalidTwoFactorCode):
            await services.two_factor.confirm_setup(doctor.id, wrong)

        assert await services.two_factor.state(doctor.id) == TwoFactorState.PENDING_SETUP

    @pytest.mark.asyncio
    async def test_confirm_enables(self, services, doctor, clock, test_engine):
        secret, codes = await enable_two_factor(services, doctor, clock)

        account = load_account(test_engine, doctor.id)
        assert account.two_factor_enabled is True
        assert account.two_factor_secret == secret
        assert account.backup_codes == [hash_backup_code(c) for c in codes]
        assert await services.two_factor.state(doctor.id) == TwoFactorState.ENABLED

    @pytest.mark.asyncio
    async def test_confirm_accepts_one_step_drift(self, services, doctor, clock):
        setup = await services.two_factor.initiate_setup(doctor.id)

        await services.two_factor.confirm_setup(doctor.id, totp_code(setup.secret, clock, steps=-1))

        assert await services.two_factor.state(doctor.id) == TwoFactorState.ENABLED

    @pytest.mark.asyncio
    async def test_confirm_twice_rejected(self, services, doctor, clock):
        secret, _ = await enable_two_factor(services, doctor, clock)

        with pytest.raises(TwoFactorNotInitiated):
            await services.two_factor.confirm_setup(doctor.id, totp_code(secret, clock))

    @pytest.mark.asyncio
    async def test_setup_when_enabled_rejected(self, services, doctor, clock):
        await enable_two_factor(services, doctor, clock)

        with pytest.raises(TwoFactorAlreadyEnabled):
            await services.two_factor.initiate_setup(doctor.id)


class TestTwoFactorLogin:

    @pytest.mark.asyncio
    async def test_login_scenario(self, services, doctor, clock):
        """Password login withholds tokens until the TOTP challenge passes."""
        secret, _ = await enable_two_factor(services, doctor, clock)

        first = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD, "dev-1")

        assert first.requires_two_factor is True
        assert first.tokens is None
        assert first.temp_token

        clock.advance(seconds=20)
        result = await services.two_factor.challenge_verify(
            first.temp_token, totp_code(secret, clock), "dev-1"
        )

        assert result.tokens.access_token
        context = await services.tokens.authenticate(result.tokens.access_token)
        assert context.account_id == doctor.id
        events = services.audit.list_events(event_type=SecurityEventType.TWO_FACTOR_LOGIN_SUCCESS)
        assert len(events) == 1
        assert events[0].details["method"] == "TOTP"

    @pytest.mark.asyncio
    async def test_wrong_totp_rejected(self, services, doctor, clock):
        secret, _ = await enable_two_factor(services, doctor, clock)
        first = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD)

        with pytest.raises(InvalidTwoFactorCode):
            await services.two_factor.challenge_verify(first.temp_token, totp_code(secret, clock, steps=10))

        failed = services.audit.list_events(event_type=SecurityEventType.TWO_FACTOR_VERIFICATION_FAILED)
        assert failed[0].details["stage"] == "login"

    @pytest.mark.asyncio
    async def test_backup_code_single_use(self, services, doctor, clock, test_engine):
        """A backup code works exactly once."""
        _, codes = await enable_two_factor(services, doctor, clock)

        first = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD)
        result = await services.two_factor.challenge_verify(first.temp_token, codes[0].upper())
        assert result.tokens is not None
        assert len(load_account(test_engine, doctor.id).backup_codes) == 9

        second = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD)
        with pytest.raises(InvalidTwoFactorCode):
            await services.two_factor.challenge_verify(second.temp_token, codes[0])

        success = services.audit.list_events(event_type=SecurityEventType.TWO_FACTOR_LOGIN_SUCCESS)
        assert success[0].details["backup_codes_remaining"] == 9

    @pytest.mark.asyncio
    async def test_temp_token_expires(self, services, doctor, clock):
        secret, _ = await enable_two_factor(services, doctor, clock)
        first = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD)

        clock.advance(minutes=11)

        with pytest.raises(InvalidTempToken):
            await services.two_factor.challenge_verify(first.temp_token, totp_code(secret, clock))

    @pytest.mark.asyncio
    async def test_access_token_is_not_temp_token(self, services, doctor, clock):
        """A session token cannot stand in for a 2FA temp token."""
        result = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD)
        secret, _ = await enable_two_factor(services, doctor, clock)

        with pytest.raises(InvalidTempToken):
            await services.two_factor.challenge_verify(result.tokens.access_token, totp_code(secret, clock))

    @pytest.mark.asyncio
    async def test_garbage_temp_token(self, services):
        with pytest.raises(InvalidTempToken):
            await services.two_factor.challenge_verify("not-a-jwt", "123456")


class TestDisable:

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled(self, services, doctor):
        assert await services.two_factor.disable(doctor.id, "123456") is False

    @pytest.mark.asyncio
    async def test_disable_refuses_backup_code(self, services, doctor, clock):
        _, codes = await enable_two_factor(services, doctor, clock)

        with pytest.raises(InvalidTwoFactorCode):
            await services.two_factor.disable(doctor.id, codes[0])

        assert await services.two_factor.state(doctor.id) == TwoFactorState.ENABLED

    @pytest.mark.asyncio
    async def test_disable_with_totp(self, services, doctor, clock, test_engine):
        secret, _ = await enable_two_factor(services, doctor, clock)

        assert await services.two_factor.disable(doctor.id, totp_code(secret, clock)) is True

        account = load_account(test_engine, doctor.id)
        assert account.two_factor_enabled is False
        assert account.two_factor_secret is None
        assert account.backup_codes == []
        result = await services.credentials.login(DOCTOR_EMAIL, DOCTOR_PASSWORD)
        assert result.requires_two_factor is False


class TestTwoFactorEndpoints:

    def test_full_enrolment_and_login(self, client, doctor, clock):
        tokens = login(client, DOCTOR_EMAIL, DOCTOR_PASSWORD).json()["tokens"]
        headers = auth_headers(tokens["access_token"])

        setup = client.post("/api/auth/2fa/setup", headers=headers)
        assert setup.status_code == 200
        secret = setup.json()["secret"]

        enable = client.post(
            "/api/auth/2fa/enable", json={"code": totp_code(secret, clock)}, headers=headers
        )
        assert enable.status_code == 200
        assert len(enable.json()["backup_codes"]) == 10

        status = client.get("/api/auth/2fa/status", headers=headers).json()
        assert status["state"] == "ENABLED"
        assert status["backup_codes_remaining"] == 10

        first = login(client, DOCTOR_EMAIL, DOCTOR_PASSWORD).json()
        assert first["requires_two_factor"] is True
        assert first["tokens"] is None

        verify = client.post(
            "/api/auth/2fa/verify",
            json={"temp_token": first["temp_token"], "code": totp_code(secret, clock)},
        )
        assert verify.status_code == 200
        assert verify.json()["tokens"]["access_token"]

    def test_verify_with_bad_temp_token(self, client):
        response = client.post(
            "/api/auth/2fa/verify", json={"temp_token": "bogus", "code": "123456"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid verification code"

    def test_disable_when_not_enabled_400(self, client, doctor):
        tokens = login(client, DOCTOR_EMAIL, DOCTOR_PASSWORD).json()["tokens"]

        response = client.post(
            "/api/auth/2fa/disable",
            json={"code": "123456"},
            headers=auth_headers(tokens["access_token"]),
        )

        assert response.status_code == 400

    def test_challenge_guessing_is_rate_limited(self, client, enrolled_admin, clock):
        """Wrong codes against one temp token stop at the per-IP limit."""
        temp_token = login(client, ADMIN_EMAIL, ADMIN_PASSWORD).json()["temp_token"]
        valid = {totp_code(ADMIN_TOTP_SECRET, clock, steps) for steps in (-1, 0, 1)}
        wrong_code = next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)

        for _ in range(5):
            wrong = client.post(
                "/api/auth/2fa/verify", json={"temp_token": temp_token, "code": wrong_code}
            )
            assert wrong.status_code == 401

        response = client.post(
            "/api/auth/2fa/verify",
            json={"temp_token": temp_token, "code": totp_code(ADMIN_TOTP_SECRET, clock)},
        )

        assert response.status_code == 429
