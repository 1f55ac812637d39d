import base64
import time
import unittest
from unittest.mock import Mock, patch

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from jwt.api_jws import PyJWS

from jwt_lru import JwtLruCache
from jwt_lru_verify import (
    EC_ALGORITHMS,
    EDDSA_ALGORITHMS,
    HMAC_ALGORITHMS,
    RSA_ALGORITHMS,
    JwtVerifier,
    VerifyOptions,
    default_algorithms,
    fetch_jwks,
    key_from_jwks,
)

SECRET = "foobar-secret-with-at-least-32-bytes!!"


def b64u(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()


def ed25519_jwks(kid: str):
    priv = ed25519.Ed25519PrivateKey.generate()
    pub_bytes = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )
    jwks = {"keys": [{"kty": "OKP", "crv": "Ed25519", "alg": "EdDSA", "kid": kid, "x": b64u(pub_bytes)}]}
    return priv, jwks


def fake_get_for(jwks: dict):
    def fake_get(url, *args, **kwargs):
        if "/.well-known/" in url:
            m = Mock()
            m.status_code = 200
            m.json = lambda: jwks
            return m
        raise AssertionError("unexpected url: " + url)

    return fake_get


class TestDefaultAlgorithms(unittest.TestCase):
    def test_secret(self):
        self.assertEqual(default_algorithms(SECRET), HMAC_ALGORITHMS)
        self.assertEqual(default_algorithms(SECRET.encode()), HMAC_ALGORITHMS)

    def test_key_objects(self):
        self.assertEqual(default_algorithms(ec.generate_private_key(ec.SECP256R1()).public_key()), EC_ALGORITHMS)
        self.assertEqual(default_algorithms(ed25519.Ed25519PrivateKey.generate().public_key()), EDDSA_ALGORITHMS)

    def test_rsa_pem(self):
        priv = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        pem = priv.public_key().public_bytes(
            encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        self.assertEqual(default_algorithms(pem.decode()), RSA_ALGORITHMS)

        token = jwt.encode({"sub": "u1"}, priv, algorithm="RS256")
        cache = JwtLruCache(1024 * 1024, pem.decode())
        self.assertEqual(cache.verify(token), {"sub": "u1"})

    def test_unsupported_key(self):
        with self.assertRaises(TypeError):
            default_algorithms(12345)


class TestJwtVerifier(unittest.TestCase):
    def setUp(self):
        self.now = 1_000_000
        self.verifier = JwtVerifier(clock=lambda: self.now)

    def test_decode_without_verifying(self):
        token = jwt.encode({"a": 1}, "some-other-secret-that-is-also-32-bytes", algorithm="HS256")
        decoded = self.verifier.decode(token)
        self.assertEqual(decoded["payload"], {"a": 1})
        self.assertEqual(decoded["header"]["alg"], "HS256")
        self.assertEqual(decoded["signature"], token.split(".")[2])

    def test_decode_text_payload(self):
        token = b64u(b'{"alg":"HS256"}') + "." + b64u(b"{not json") + "." + b64u(b"sig")
        self.assertEqual(self.verifier.decode(token)["payload"], "{not json")

    def test_decode_bad_utf8(self):
        token = b64u(b'{"alg":"HS256"}') + "." + b64u(b"\xc3\x28") + "." + b64u(b"sig")
        with self.assertRaises(jwt.DecodeError):
            self.verifier.decode(token)

    def test_text_payload_signature_checked(self):
        token = PyJWS().encode(b"hi", SECRET, algorithm="HS256")
        self.assertEqual(self.verifier.verify(token, SECRET, VerifyOptions()), "hi")
        with self.assertRaises(jwt.InvalidSignatureError):
            self.verifier.verify(token, "another-secret-that-is-at-least-32-bytes", VerifyOptions())

    def test_clock_drives_exp(self):
        token = jwt.encode({"exp": self.now + 10}, SECRET, algorithm="HS256")
        self.assertEqual(self.verifier.verify(token, SECRET, VerifyOptions())["exp"], self.now + 10)
        self.now += 10
        with self.assertRaises(jwt.ExpiredSignatureError):
            self.verifier.verify(token, SECRET, VerifyOptions())
        self.assertEqual(
            self.verifier.verify(token, SECRET, VerifyOptions(clock_tolerance=5))["exp"], self.now
        )
        self.assertIn("exp", self.verifier.verify(token, SECRET, VerifyOptions(ignore_expiration=True)))

    def test_clock_drives_nbf(self):
        token = jwt.encode({"nbf": self.now + 10}, SECRET, algorithm="HS256")
        with self.assertRaises(jwt.ImmatureSignatureError):
            self.verifier.verify(token, SECRET, VerifyOptions())
        self.assertIn("nbf", self.verifier.verify(token, SECRET, VerifyOptions(ignore_not_before=True)))
        self.now += 10
        self.assertIn("nbf", self.verifier.verify(token, SECRET, VerifyOptions()))

    def test_non_numeric_exp(self):
        token = jwt.encode({"exp": "soon"}, SECRET, algorithm="HS256")
        with self.assertRaises(jwt.DecodeError):
            self.verifier.verify(token, SECRET, VerifyOptions())

    def test_issuer_and_subject(self):
        token = jwt.encode({"iss": "me", "sub": "u1"}, SECRET, algorithm="HS256")
        self.assertEqual(self.verifier.verify(token, SECRET, VerifyOptions(issuer="me", subject="u1"))["sub"], "u1")
        with self.assertRaises(jwt.InvalidIssuerError):
            self.verifier.verify(token, SECRET, VerifyOptions(issuer="you"))
        with self.assertRaises(jwt.InvalidTokenError):
            self.verifier.verify(token, SECRET, VerifyOptions(subject="u2"))

    def test_max_age(self):
        token = jwt.encode({"iat": self.now - 10}, SECRET, algorithm="HS256")
        self.assertIn("iat", self.verifier.verify(token, SECRET, VerifyOptions(max_age=20)))
        with self.assertRaises(jwt.ExpiredSignatureError):
            self.verifier.verify(token, SECRET, VerifyOptions(max_age=10))
        self.assertIn("iat", self.verifier.verify(token, SECRET, VerifyOptions(max_age=10, clock_tolerance=1)))

    def test_max_age_needs_iat(self):
        token = jwt.encode({"sub": "u1"}, SECRET, algorithm="HS256")
        with self.assertRaises(jwt.MissingRequiredClaimError):
            self.verifier.verify(token, SECRET, VerifyOptions(max_age=10))

    def test_jwtid(self):
        token = jwt.encode({"jti": "j1"}, SECRET, algorithm="HS256")
        self.assertEqual(self.verifier.verify(token, SECRET, VerifyOptions(jwtid="j1"))["jti"], "j1")
        with self.assertRaises(jwt.InvalidTokenError):
            self.verifier.verify(token, SECRET, VerifyOptions(jwtid="j2"))

    def test_required_claim(self):
        token = jwt.encode({"sub": "u1"}, SECRET, algorithm="HS256")
        with self.assertRaises(jwt.MissingRequiredClaimError):
            self.verifier.verify(token, SECRET, VerifyOptions(require=["jti"]))

    def test_algorithm_not_allowed(self):
        token = jwt.encode({"sub": "u1"}, SECRET, algorithm="HS512")
        with self.assertRaises(jwt.InvalidAlgorithmError):
            self.verifier.verify(token, SECRET, VerifyOptions(algorithms=["HS256"]))


class TestAsymmetricCache(unittest.TestCase):
    def test_es256_valid(self):
        priv = ec.generate_private_key(ec.SECP256R1())
        exp = int(time.time()) + 300
        token = jwt.encode({"exp": exp, "jti": "j2"}, priv, algorithm="ES256")

        cache = JwtLruCache(1024 * 1024, priv.public_key())
        self.assertEqual(cache.verify(token)["jti"], "j2")
        self.assertTrue(cache.has(token))
        self.assertLessEqual(cache.remaining_ttl(token), 300)

    def test_es256_wrong_key(self):
        priv = ec.generate_private_key(ec.SECP256R1())
        other = ec.generate_private_key(ec.SECP256R1())
        token = jwt.encode({"jti": "j3"}, priv, algorithm="ES256")

        cache = JwtLruCache(1024 * 1024, other.public_key())
        with self.assertRaises(jwt.InvalidSignatureError):
            cache.verify(token)
        self.assertTrue(cache.has(token))

    def test_ed25519_from_jwks_url(self):
        kid = "k-ed"
        priv, jwks = ed25519_jwks(kid)
        token = jwt.encode({"jti": "j1"}, priv, algorithm="EdDSA", headers={"kid": kid})

        with patch("jwt_lru_verify.requests.get", side_effect=fake_get_for(jwks)):
            cache = JwtLruCache.from_jwks(1024 * 1024, "http://x/.well-known/jwks.json", kid=kid)
        self.assertEqual(cache.verify(token), {"jti": "j1"})

    def test_jwks_document(self):
        kid = "k-ed"
        priv, jwks = ed25519_jwks(kid)
        with patch("jwt_lru_verify.requests.get", side_effect=fake_get_for(jwks)):
            fetched = fetch_jwks("http://x/.well-known/jwks.json")
        self.assertEqual(fetched, jwks)

        cache = JwtLruCache.from_jwks(1024 * 1024, fetched)
        token = jwt.encode({"jti": "j4"}, priv, algorithm="EdDSA")
        self.assertEqual(cache.verify(token)["jti"], "j4")

    def test_kid_not_found(self):
        _, jwks = ed25519_jwks("k-ed")
        with self.assertRaises(KeyError):
            key_from_jwks(jwks, "missing")


if __name__ == "__main__":
    unittest.main()
