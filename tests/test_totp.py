import base64
from urllib.parse import parse_qs, urlparse

from archivum.service.totp import TOTPProvisioner

# RFC 6238 appendix B seed, base32 encoded
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


def test_generate_secret_is_unpadded_base32():
    secret = TOTPProvisioner.generate_secret()
    assert "=" not in secret
    assert len(secret) == 32
    base64.b32decode(secret)
    assert secret != TOTPProvisioner.generate_secret()


def test_code_matches_rfc_vectors():
    totp = TOTPProvisioner("Archive")
    # Truncated to six digits from the RFC's eight digit SHA1 values
    assert totp.code_at(RFC_SECRET, 59) == "287082"
    assert totp.code_at(RFC_SECRET, 1111111109) == "081804"
    assert totp.code_at(RFC_SECRET, 1234567890) == "005924"


def test_verify_accepts_adjacent_steps_only():
    now = 1_700_000_000
    totp = TOTPProvisioner("Archive", clock=lambda: now)
    assert totp.verify(RFC_SECRET, totp.code_at(RFC_SECRET, now))
    assert totp.verify(RFC_SECRET, totp.code_at(RFC_SECRET, now - 30))
    assert totp.verify(RFC_SECRET, totp.code_at(RFC_SECRET, now + 30))
    assert not totp.verify(RFC_SECRET, totp.code_at(RFC_SECRET, now - 90))
    assert not totp.verify(RFC_SECRET, totp.code_at(RFC_SECRET, now + 90))


def test_verify_rejects_malformed_codes():
    totp = TOTPProvisioner("Archive")
    assert not totp.verify(RFC_SECRET, "")
    assert not totp.verify(RFC_SECRET, "12345")
    assert not totp.verify(RFC_SECRET, "1234567")
    assert not totp.verify(RFC_SECRET, "abcdef")
    assert not totp.verify(RFC_SECRET, "\u0661\u0662\u0663\u0664\u0665\u0666")
    assert not totp.verify(None, "123456")


def test_invalid_secret_never_verifies():
    totp = TOTPProvisioner("Archive")
    assert totp.code_at("not base32!", 0) == ""
    assert not totp.verify("not base32!", "000000")


def test_provisioning_uri_shape():
    totp = TOTPProvisioner("TestimoniosApp")
    uri = totp.provisioning_uri("ABCDEF", "curator@example.com")
    parsed = urlparse(uri)
    assert parsed.scheme == "otpauth"
    assert parsed.netloc == "totp"
    assert parsed.path == "/TestimoniosApp:curator@example.com"
    query = parse_qs(parsed.query)
    assert query["secret"] == ["ABCDEF"]
    assert query["issuer"] == ["TestimoniosApp"]
    assert query["digits"] == ["6"]
    assert query["period"] == ["30"]


def test_provision_renders_png_data_url():
    totp = TOTPProvisioner("Archive")
    provisioning = totp.provision("admin@example.com")
    assert provisioning.qr_code.startswith("data:image/png;base64,")
    png = base64.b64decode(provisioning.qr_code.split(",", 1)[1])
    assert png[:8] == b"\x89PNG\r\n\x1a\n"
    assert provisioning.secret in provisioning.uri


def test_provision_reuses_existing_secret():
    totp = TOTPProvisioner("Archive")
    provisioning = totp.provision("admin@example.com", "JBSWY3DPEHPK3PXP")
    assert provisioning.secret == "JBSWY3DPEHPK3PXP"
