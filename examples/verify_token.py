import os

from jwt_lru import JwtLruCache, VerificationError

jwks_url = os.environ.get("JWT_LRU_JWKS_URL")
kid = os.environ.get("JWT_LRU_KID")
token = os.environ.get("JWT_TOKEN")

if not token:
    print("Set JWT_TOKEN to a token to verify")
    raise SystemExit(2)

if jwks_url:
    cache = JwtLruCache.from_jwks(1024 * 1024, jwks_url, kid=kid, options={"clock_tolerance": 10})
else:
    cache = JwtLruCache.from_env()

try:
    claims = cache.verify(token)
except VerificationError as e:
    print("invalid:", e)
    raise SystemExit(1)
print("valid claims:", claims)
print("cached for:", cache.remaining_ttl(token), "seconds")
