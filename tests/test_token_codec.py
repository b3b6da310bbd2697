"""Tests for the signed token codec and its tagged access/setup/pending variant."""

import base64
import hashlib
import hmac
import json

import pytest

from archivum.service.errors import InvalidOrExpiredTokenError
from archivum.service.tokens import TokenClaims, TokenCodec, TokenKind
from archivum.storage.models import Role


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _forge(secret: str, payload: dict, header: dict | None = None) -> str:
    header_enc = _b64(json.dumps(header or {"alg": "HS256", "typ": "JWT"}).encode())
    payload_enc = _b64(json.dumps(payload).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    sig = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{_b64(sig)}"


def _base_payload(settings, clock, **extra) -> dict:
    payload = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "sub": "user-1",
        "iat": int(clock.now),
        "exp": int(clock.now) + 600,
    }
    payload.update(extra)
    return payload


class TestRoundTrip:
    def test_access_token_carries_role(self, codec):
        claims = codec.decode(codec.issue_access("user-1", Role.RESEARCHER))
        assert claims.kind is TokenKind.ACCESS
        assert claims.user_id == "user-1"
        assert claims.role is Role.RESEARCHER

    def test_setup_token_has_no_role(self, codec):
        claims = codec.decode(codec.issue_setup("user-2"))
        assert claims.kind is TokenKind.SETUP
        assert claims.role is None

    def test_pending_token_has_no_role(self, codec):
        claims = codec.decode(codec.issue_pending("user-3"))
        assert claims.kind is TokenKind.PENDING
        assert claims.role is None

    def test_ttl_follows_settings(self, codec, settings, clock):
        access = codec.decode(codec.issue_access("u", Role.VISITOR))
        setup = codec.decode(codec.issue_setup("u"))
        pending = codec.decode(codec.issue_pending("u"))
        assert access.expires_at - clock.now == settings.access_token_ttl_minutes * 60
        assert setup.expires_at - clock.now == settings.setup_token_ttl_minutes * 60
        assert pending.expires_at - clock.now == settings.pending_token_ttl_minutes * 60

    def test_payload_flags_are_exclusive(self, settings):
        setup = TokenClaims(kind=TokenKind.SETUP, user_id="u", expires_at=1)
        payload = setup.to_payload(issuer="i", audience="a")
        assert payload["setup_mode"] is True
        assert "role" not in payload
        assert "pending_2fa" not in payload


class TestRejection:
    def test_expired_token_rejected(self, codec, clock, settings):
        token = codec.issue_access("user-1", Role.VISITOR)
        clock.now += settings.access_token_ttl_minutes * 60 + settings.token_leeway_seconds + 1
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(token)

    def test_tampered_signature_rejected(self, codec):
        token = codec.issue_access("user-1", Role.VISITOR)
        head, payload, sig = token.split(".")
        tampered = f"{head}.{payload}.{sig[:-2]}{'AA' if sig[-2:] != 'AA' else 'BB'}"
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(tampered)

    def test_other_secret_rejected(self, codec, settings, clock):
        token = _forge("some-other-secret", _base_payload(settings, clock, role=4))
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###", "é.é.é"])
    def test_malformed_tokens_rejected(self, codec, garbage):
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(garbage)

    def test_non_ascii_signature_rejected(self, codec, settings, clock):
        token = _forge(settings.jwt_secret, _base_payload(settings, clock, role=4))
        head, payload, _ = token.split(".")
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(f"{head}.{payload}.\xe9")

    def test_non_hs256_header_rejected(self, codec, settings, clock):
        token = _forge(
            settings.jwt_secret,
            _base_payload(settings, clock, role=4),
            header={"alg": "none", "typ": "JWT"},
        )
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(token)

    def test_wrong_audience_rejected(self, codec, settings, clock):
        payload = _base_payload(settings, clock, role=4, aud="someone-else")
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(_forge(settings.jwt_secret, payload))

    def test_audience_list_accepted(self, codec, settings, clock):
        payload = _base_payload(settings, clock, role=4, aud=["x", settings.jwt_audience])
        assert codec.decode(_forge(settings.jwt_secret, payload)).role is Role.VISITOR

    def test_wrong_issuer_rejected(self, codec, settings, clock):
        payload = _base_payload(settings, clock, role=4, iss="elsewhere")
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(_forge(settings.jwt_secret, payload))

    @pytest.mark.parametrize(
        "extra",
        [
            {"setup_mode": True, "pending_2fa": True},
            {"setup_mode": True, "role": 1},
            {"pending_2fa": True, "role": 2},
            {},
            {"role": "1"},
            {"role": True},
        ],
    )
    def test_ambiguous_variants_rejected(self, codec, settings, clock, extra):
        token = _forge(settings.jwt_secret, _base_payload(settings, clock, **extra))
        with pytest.raises(InvalidOrExpiredTokenError):
            codec.decode(token)

    def test_failures_share_one_message(self, codec, settings, clock):
        messages = set()
        for token in ("garbage", _forge("wrong", _base_payload(settings, clock, role=4))):
            with pytest.raises(InvalidOrExpiredTokenError) as excinfo:
                codec.decode(token)
            messages.add(excinfo.value.message)
        assert len(messages) == 1
