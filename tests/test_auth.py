"""
Test bearer-token verification.

Covers structure, algorithm, signature, temporal claims with leeway, and
issuer/audience checks.
"""

import json

import pytest

from ragchat.auth import TokenVerifier, _b64url_encode, _sign, build_token, extract_bearer_token
from ragchat.errors import AuthError, AuthNotConfiguredError

SECRET = "s3cret"
NOW = 1_700_000_000


def make_token(payload, secret=SECRET, header=None):
    header = header or {"alg": "HS256", "typ": "JWT"}
    h = _b64url_encode(json.dumps(header).encode())
    p = _b64url_encode(json.dumps(payload).encode())
    sig = _b64url_encode(_sign(f"{h}.{p}", secret))
    return f"{h}.{p}.{sig}"


def verifier(**kwargs):
    kwargs.setdefault("issuer", "example.com")
    kwargs.setdefault("audience", "content-chat")
    kwargs.setdefault("leeway_seconds", 0)
    return TokenVerifier(SECRET, clock=lambda: NOW, **kwargs)


def claims(**overrides):
    base = {"iss": "example.com", "aud": "content-chat", "iat": NOW, "exp": NOW + 120}
    base.update(overrides)
    return base


class TestValidTokens:
    def test_built_token_verifies(self):
        token, expires_at = build_token(SECRET, "example.com", "content-chat", 120, now=NOW)
        assert expires_at == NOW + 120
        got = verifier().verify(token)
        assert got["iss"] == "example.com"
        assert got["exp"] == NOW + 120

    def test_audience_list(self):
        token = make_token(claims(aud=["other", "content-chat"]))
        assert verifier().verify(token)["aud"] == ["other", "content-chat"]

    def test_temporal_claims_optional(self):
        token = make_token({"iss": "example.com", "aud": "content-chat"})
        verifier().verify(token)

    def test_issuer_audience_unchecked_when_unset(self):
        token = make_token({"exp": NOW + 10})
        verifier(issuer="", audience="").verify(token)


class TestTemporalClaims:
    """exp/iat are compared against now with the configured leeway."""

    def test_expired_without_leeway(self):
        token = make_token(claims(exp=NOW - 1))
        with pytest.raises(AuthError) as exc:
            verifier(leeway_seconds=0).verify(token)
        assert exc.value.message == "token expired"

    def test_expired_within_leeway(self):
        token = make_token(claims(exp=NOW - 1))
        verifier(leeway_seconds=1).verify(token)

    def test_issued_in_future(self):
        token = make_token(claims(iat=NOW + 30))
        with pytest.raises(AuthError) as exc:
            verifier(leeway_seconds=10).verify(token)
        assert exc.value.message == "token not yet valid"

    @pytest.mark.parametrize("bad", ["soon", True, None])
    def test_non_numeric_exp(self, bad):
        token = make_token(claims(exp=bad))
        with pytest.raises(AuthError):
            verifier().verify(token)


class TestRejections:
    def test_wrong_issuer(self):
        with pytest.raises(AuthError) as exc:
            verifier().verify(make_token(claims(iss="evil.com")))
        assert exc.value.message == "invalid issuer"

    def test_wrong_audience(self):
        with pytest.raises(AuthError) as exc:
            verifier().verify(make_token(claims(aud=["other"])))
        assert exc.value.message == "invalid audience"

    def test_wrong_secret(self):
        with pytest.raises(AuthError):
            verifier().verify(make_token(claims(), secret="other"))

    def test_tampered_payload(self):
        token = make_token(claims())
        h, _, s = token.split(".")
        forged = _b64url_encode(json.dumps(claims(exp=NOW + 99999)).encode())
        with pytest.raises(AuthError):
            verifier().verify(f"{h}.{forged}.{s}")

    @pytest.mark.parametrize("alg", ["none", "HS512", "RS256"])
    def test_other_algorithms(self, alg):
        token = make_token(claims(), header={"alg": alg, "typ": "JWT"})
        with pytest.raises(AuthError) as exc:
            verifier().verify(token)
        assert exc.value.message == "invalid algorithm"

    @pytest.mark.parametrize("token", ["abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_malformed(self, token):
        with pytest.raises(AuthError):
            verifier().verify(token)

    def test_padded_segment(self):
        token = make_token(claims())
        h, p, s = token.split(".")
        with pytest.raises(AuthError):
            verifier().verify(f"{h}==.{p}.{s}")

    def test_missing_token_public_message(self):
        with pytest.raises(AuthError) as exc:
            verifier().verify("")
        assert exc.value.public_message == "missing auth token"

    def test_generic_public_message(self):
        with pytest.raises(AuthError) as exc:
            verifier().verify(make_token(claims(iss="x")))
        assert exc.value.public_message == "invalid auth token"

    def test_not_configured(self):
        v = TokenVerifier("")
        assert not v.configured
        with pytest.raises(AuthNotConfiguredError):
            v.verify("anything")


class TestBuildToken:
    def test_requires_secret(self):
        with pytest.raises(ValueError):
            build_token("", "i", "a", 60)

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_requires_positive_ttl(self, ttl):
        with pytest.raises(ValueError):
            build_token(SECRET, "i", "a", ttl)

    def test_three_unpadded_segments(self):
        token, _ = build_token(SECRET, "i", "a", 60)
        parts = token.split(".")
        assert len(parts) == 3
        assert all("=" not in p for p in parts)


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer tok", "tok"),
            ("Basic dXNlcjpwYXNz", ""),
            ("Bearer", ""),
            ("Bearer a b", ""),
            ("", ""),
            (None, ""),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer_token(header) == expected
