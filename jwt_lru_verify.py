import asyncio
import json
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import jwt
import requests
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from jwt.api_jws import PyJWS

VerificationError = jwt.InvalidTokenError


class UsageError(TypeError):
    """Raised when the cache is called the wrong way, e.g. with per-call options."""


HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")
RSA_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512")
EC_ALGORITHMS = ("ES256", "ES384", "ES512")
EDDSA_ALGORITHMS = ("EdDSA",)


@dataclass(frozen=True)
class VerifyOptions:
    """Options applied to every token verified by one cache."""

    audience: Optional[str | Sequence[str]] = None
    issuer: Optional[str | Sequence[str]] = None
    subject: Optional[str] = None
    algorithms: Optional[Sequence[str]] = None
    jwtid: Optional[str] = None
    max_age: Optional[float] = None
    require: Sequence[str] = ()
    clock_tolerance: float = 0
    ignore_not_before: bool = False
    ignore_expiration: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VerifyOptions":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise UsageError(f"unknown verify options: {', '.join(unknown)}")
        return cls(**data)


def _key_algorithms(key: Any) -> Optional[Sequence[str]]:
    if isinstance(key, (rsa.RSAPublicKey, rsa.RSAPrivateKey)):
        return RSA_ALGORITHMS
    if isinstance(key, (ec.EllipticCurvePublicKey, ec.EllipticCurvePrivateKey)):
        return EC_ALGORITHMS
    if isinstance(key, (ed25519.Ed25519PublicKey, ed25519.Ed25519PrivateKey,
                        ed448.Ed448PublicKey, ed448.Ed448PrivateKey)):
        return EDDSA_ALGORITHMS
    return None


def default_algorithms(key: Any) -> Sequence[str]:
    """
    Pick the algorithm family a key can verify when none is configured.

    HMAC secrets get HS*, PEM text and key objects get the family of their
    key type.
    """
    algs = _key_algorithms(key)
    if algs:
        return algs
    if isinstance(key, (str, bytes)):
        raw = key.encode() if isinstance(key, str) else key
        if raw.lstrip().startswith(b"-----BEGIN"):
            if b"CERTIFICATE" in raw:
                loaded = x509.load_pem_x509_certificate(raw).public_key()
            else:
                loaded = serialization.load_pem_public_key(raw)
            algs = _key_algorithms(loaded)
            if algs:
                return algs
        return HMAC_ALGORITHMS
    raise TypeError(f"unsupported key type: {type(key).__name__}")


class JwtVerifier:
    """
    PyJWT-backed token verifier whose nbf/exp checks follow an injectable clock.

    Signature, audience, issuer and required claims are checked by PyJWT;
    subject and jwtid are compared here. The time claims (nbf, exp and
    iat + max_age) are checked here against ``clock`` so a cache and its
    verifier always agree on what "now" is.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._jws = PyJWS()

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Decode without verifying. Returns {header, payload, signature}.

        A payload that is not JSON is returned as its UTF-8 text.
        """
        unverified = self._jws.decode_complete(token, options={"verify_signature": False})
        raw = unverified["payload"]
        try:
            payload = json.loads(raw)
        except ValueError:
            try:
                payload = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise jwt.DecodeError(f"Invalid payload string: {e}") from e
        return {
            "header": unverified["header"],
            "payload": payload,
            "signature": token.rsplit(".", 1)[-1],
        }

    def verify(self, token: str, key: Any, options: VerifyOptions) -> Any:
        algorithms = list(options.algorithms or default_algorithms(key))
        payload = self.decode(token)["payload"]
        if not isinstance(payload, dict):
            # non-JSON-object payloads carry no claims, only the signature is checked
            self._jws.decode_complete(token, key, algorithms=algorithms)
            return payload

        claims = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=options.audience,
            issuer=options.issuer,
            leeway=options.clock_tolerance,
            options={
                "verify_exp": False,
                "verify_nbf": False,
                "verify_iat": False,
                "verify_aud": options.audience is not None,
                "require": list(options.require),
            },
        )
        if options.subject is not None and claims.get("sub") != options.subject:
            raise jwt.InvalidTokenError(f"Invalid subject, expected: {options.subject}")
        if options.jwtid is not None and claims.get("jti") != options.jwtid:
            raise jwt.InvalidTokenError(f"Invalid jwtid, expected: {options.jwtid}")
        self._check_times(claims, options)
        return claims

    async def verify_async(self, token: str, key: Any, options: VerifyOptions) -> Any:
        return await asyncio.to_thread(self.verify, token, key, options)

    def _check_times(self, claims: Dict[str, Any], options: VerifyOptions) -> None:
        now = self._clock()
        leeway = options.clock_tolerance
        if not options.ignore_not_before and "nbf" in claims:
            nbf = claims["nbf"]
            if not _is_number(nbf):
                raise jwt.DecodeError("Not Before claim (nbf) must be an integer.")
            if nbf > now + leeway:
                raise jwt.ImmatureSignatureError("The token is not yet valid (nbf)")
        if not options.ignore_expiration and "exp" in claims:
            exp = claims["exp"]
            if not _is_number(exp):
                raise jwt.DecodeError("Expiration Time claim (exp) must be an integer.")
            if exp <= now - leeway:
                raise jwt.ExpiredSignatureError("Signature has expired")
        if options.max_age is not None:
            if "iat" not in claims:
                raise jwt.MissingRequiredClaimError("iat")
            iat = claims["iat"]
            if not _is_number(iat):
                raise jwt.DecodeError("Issued At claim (iat) must be an integer.")
            if iat + options.max_age <= now - leeway:
                raise jwt.ExpiredSignatureError("maxAge exceeded")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# -----------------------------
# JWKS key selection
# -----------------------------

def fetch_jwks(url: str, timeout: float = 10) -> dict:
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


def key_from_jwks(jwks: dict, kid: Optional[str] = None) -> Any:
    """Return the public key for ``kid`` (or the first key) from a JWKS document."""
    for k in jwks.get("keys", []):
        if not kid or k.get("kid") == kid:
            return jwt.PyJWK(k).key
    raise KeyError(f"kid_not_found: {kid}")
