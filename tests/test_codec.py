"""Tests for credential validation and decoding (pure functions)."""

import base64
import json
import time

import pytest

from maas.auth.codec import (
    VENDOR_KEY_REQUIRED,
    JwtToken,
    OAuthToken,
    VendorKey,
    auth_headers,
    credential_from_dict,
    credential_from_material,
    credential_to_dict,
    decode_payload,
    describe_credential,
    is_expired,
    is_jwt,
    parse_vendor_key,
    validate_vendor_key_format,
)
from maas.errors import ValidationError

SHARED_KEY = "pk_shared123456789.sk_shared123456789012345"


def make_jwt(claims: dict) -> str:
    """Helper: unsigned JWT with the given claims."""

    def seg(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    return f"{seg({'alg': 'HS256', 'typ': 'JWT'})}.{seg(claims)}.signature"


class TestValidateVendorKey:
    @pytest.mark.parametrize(
        "key",
        [
            SHARED_KEY,
            "pk_abcdefgh.sk_abcdefghijklmnop",
            "  pk_ABC12345.sk_0123456789abcdef  ",
        ],
    )
    def test_valid(self, key):
        assert validate_vendor_key_format(key) is None

    @pytest.mark.parametrize("key", ["", " ", "\t\n", None])
    def test_required(self, key):
        assert validate_vendor_key_format(key) == VENDOR_KEY_REQUIRED

    def test_missing_dot(self):
        msg = validate_vendor_key_format("pk_abcdefgh")
        assert msg.startswith("Invalid format: Vendor key must contain a dot")

    def test_too_many_parts(self):
        msg = validate_vendor_key_format("pk_a.sk_b.c")
        assert "exactly two parts" in msg

    def test_prefixes(self):
        assert 'must start with "pk_"' in validate_vendor_key_format("xx_abcdefgh.sk_abcdefghijklmnop")
        assert 'must start with "sk_"' in validate_vendor_key_format("pk_abcdefgh.xx_abcdefghijklmnop")

    def test_empty_parts(self):
        assert "Public key part is empty" in validate_vendor_key_format("pk_.sk_abcdefghijklmnop")
        assert "Secret key part is empty" in validate_vendor_key_format("pk_abcdefgh.sk_")

    def test_invalid_characters(self):
        assert "Public key part contains invalid characters" in validate_vendor_key_format(
            "pk_abc-defgh.sk_abcdefghijklmnop"
        )
        assert "Secret key part contains invalid characters" in validate_vendor_key_format(
            "pk_abcdefgh.sk_abcdefghijklmno!"
        )

    def test_too_short(self):
        assert "Public key part is too short (minimum 8" in validate_vendor_key_format(
            "pk_abc.sk_abcdefghijklmnop"
        )
        assert "Secret key part is too short (minimum 16" in validate_vendor_key_format(
            "pk_abcdefgh.sk_abc"
        )

    def test_custom_bounds(self):
        assert validate_vendor_key_format("pk_abc.sk_abc", min_public=3, min_secret=3) is None

    def test_deterministic(self):
        bad = "pk_abc.sk_abc"
        messages = {validate_vendor_key_format(bad) for _ in range(3)}
        assert len(messages) == 1


class TestParse:
    def test_parse_vendor_key(self):
        key = parse_vendor_key(SHARED_KEY)
        assert key == VendorKey(public="shared123456789", secret="shared123456789012345")
        assert key.text == SHARED_KEY
        assert key.method == "vendor_key"
        assert key.expires_at_epoch is None

    def test_parse_invalid_raises(self):
        with pytest.raises(ValidationError, match="Vendor key is required"):
            parse_vendor_key(" ")

    def test_material_vendor_key(self):
        assert isinstance(credential_from_material(SHARED_KEY), VendorKey)

    def test_material_jwt(self):
        token = make_jwt({"sub": "u1", "exp": 2_000_000_000})
        credential = credential_from_material(token)
        assert isinstance(credential, JwtToken)
        assert credential.expires_at_epoch == 2_000_000_000

    def test_material_garbage(self):
        with pytest.raises(ValidationError):
            credential_from_material("not-a-credential")

    def test_material_empty(self):
        with pytest.raises(ValidationError, match=VENDOR_KEY_REQUIRED):
            credential_from_material("")


class TestJwt:
    def test_decode_payload(self):
        payload = decode_payload(make_jwt({"email": "a@b.test", "exp": 1700000000}))
        assert payload.expires_at_epoch == 1700000000
        assert payload.claims["email"] == "a@b.test"

    def test_no_exp(self):
        assert decode_payload(make_jwt({"sub": "x"})).expires_at_epoch is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "!!!.###.sig"])
    def test_malformed(self, token):
        with pytest.raises(ValidationError):
            decode_payload(token)
        assert not is_jwt(token)

    def test_is_expired(self):
        now = 1_000_000.0
        assert is_expired(None, 300_000, now=now) is False
        assert is_expired(now - 1, 0, now=now) is True
        assert is_expired(now + 600, 0, now=now) is False
        # Inside the refresh buffer counts as expired
        assert is_expired(now + 200, 300_000, now=now) is True

    def test_is_expired_uses_clock(self):
        assert is_expired(time.time() + 3600) is False


class TestPersistence:
    @pytest.mark.parametrize(
        "credential",
        [
            VendorKey(public="shared123456789", secret="shared123456789012345"),
            JwtToken(raw="a.b.c", expires_at_epoch=123.0),
            OAuthToken(access="a.b.c", refresh="r", expires_at_epoch=None),
        ],
    )
    def test_tagged_dict(self, credential):
        data = credential_to_dict(credential)
        assert data["type"] == credential.method
        assert credential_from_dict(data) == credential

    def test_unknown_shape(self):
        assert credential_from_dict({"type": "magic"}) is None
        assert credential_from_dict(None) is None
        assert credential_to_dict(None) is None


class TestHeaders:
    def test_vendor_key_headers(self):
        headers = auth_headers(parse_vendor_key(SHARED_KEY))
        assert headers["X-API-Key"] == SHARED_KEY
        assert headers["Authorization"] == f"Bearer {SHARED_KEY}"

    def test_token_headers(self):
        assert auth_headers(JwtToken(raw="t.o.k")) == {"Authorization": "Bearer t.o.k"}
        assert auth_headers(OAuthToken(access="acc")) == {"Authorization": "Bearer acc"}

    def test_describe_masks_secret(self):
        text = describe_credential(parse_vendor_key(SHARED_KEY))
        assert "shared123456789012345" not in text
        assert text.startswith("vendor key pk_shared123456789")
        assert describe_credential(None) == "none"
