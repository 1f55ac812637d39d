import json

from fastapi import FastAPI, Request, Response
from jwt_lru import JwtLruCache, VerificationError

app = FastAPI()
# JWT_LRU_SECRET, JWT_LRU_AUDIENCE, ... are read once at startup
cache = JwtLruCache.from_env()

def bearer_token(auth: str | None) -> str | None:
    if not auth:
        return None
    if auth.lower().startswith('bearer '):
        return auth[7:].strip()
    return auth

@app.middleware('http')
async def cached_jwt(request: Request, call_next):
    token = bearer_token(request.headers.get('authorization'))
    if not token:
        return Response(status_code=401, content='{"error":"missing_token"}', media_type='application/json')
    try:
        request.state.claims = await cache.verify_async(token)
    except VerificationError as e:
        return Response(status_code=401, content=json.dumps({"error": "invalid_token", "reason": str(e)}), media_type='application/json')
    return await call_next(request)

@app.get('/secure')
async def secure(request: Request):
    return { 'ok': True, 'sub': request.state.claims.get('sub') }

@app.get('/cache')
async def cache_stats():
    return cache.stats()
