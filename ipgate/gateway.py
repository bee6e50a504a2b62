import base64
import binascii
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ipgate.config import Settings
from ipgate.core import Address, Credential, parse_address
from ipgate.engine import AccessEngine
from ipgate.renewal import RenewalLoop, Resolver, resolve_host

logger = logging.getLogger(__name__)

METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# httpx has already decoded and de-chunked the body
_RESPONSE_SKIP = {"connection", "content-encoding", "content-length", "keep-alive", "transfer-encoding"}


def read_client_address(request: Request, trust_headers: bool) -> Address:
    if trust_headers:
        ip = request.headers.get("x-real-ip")
        if ip:
            logger.debug("IP from X-Real-Ip: %s", ip)
            return parse_address(ip)
        ip = request.headers.get("x-forwarded-for")
        if ip:
            logger.debug("IP from X-Forwarded-For: %s", ip)
            return parse_address(ip.split(",")[0])

    if request.client is None or not request.client.host:
        raise ValueError("request has no peer address")
    return parse_address(request.client.host)


def parse_basic_auth(header_val: Optional[str]) -> Optional[Credential]:
    if not header_val:
        return None
    scheme, _, encoded = header_val.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    name, secret = decoded.split(":", 1)
    return Credential(name, secret)


def log_event(path: str, event: dict) -> None:
    if not path:
        return
    log_path = Path(path)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")
    except OSError as exc:
        logger.error("could not write event log: path=%s error=%s", path, exc)


def bump_stats(stats: dict, allowed: bool, reason: str) -> None:
    if allowed:
        stats["allowed"] += 1
    else:
        stats["denied"] += 1
    stats["by_reason"][reason] = stats["by_reason"].get(reason, 0) + 1


def _unauthorized(reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"denied": True, "reason": reason},
        headers={"WWW-Authenticate": 'Basic realm=""'},
    )


def _bad_address(exc: Exception) -> JSONResponse:
    logger.error("could not read client address: %s", exc)
    return JSONResponse(status_code=500, content={"error": "could not determine client address"})


async def forward_to_backend(
    settings: Settings,
    request: Request,
    body: bytes,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Response:
    url = f"{settings.target}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"

    headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}

    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            resp = await client.request(
                method=request.method,
                url=url,
                headers=headers,
                content=body,
            )
    except httpx.HTTPError as exc:
        logger.error("upstream request failed: url=%s error=%s", url, exc)
        return JSONResponse(status_code=502, content={"error": "bad gateway"})

    response = Response(content=resp.content, status_code=resp.status_code)
    skip = _RESPONSE_SKIP
    if request.method == "HEAD":
        # no body was read, so the upstream length and encoding still hold
        skip = _RESPONSE_SKIP - {"content-encoding", "content-length"}
        del response.headers["content-length"]
    # multi_items keeps repeated headers such as Set-Cookie apart
    for k, v in resp.headers.multi_items():
        if k.lower() not in skip:
            response.headers.append(k, v)
    return response


def create_app(
    settings: Settings,
    engine: Optional[AccessEngine] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    resolver: Resolver = resolve_host,
) -> FastAPI:
    engine = engine if engine is not None else AccessEngine(settings.policy())
    renewal = RenewalLoop(engine.state, settings.reset_interval, resolver)
    renewal.record_resolved_hosts(settings.allow_hosts)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        renewal.start()
        try:
            yield
        finally:
            renewal.stop()

    app = FastAPI(title="ipgate", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.renewal = renewal
    app.state.stats = {"allowed": 0, "denied": 0, "by_reason": {}}

    @app.get(settings.status_path)
    def status(request: Request):
        try:
            addr = read_client_address(request, settings.trust_headers)
        except ValueError as exc:
            return _bad_address(exc)

        result = engine.classify(addr)
        return {
            "ip": str(addr),
            "status": result.label.value,
            "matched": result.matched,
            "attempts": result.attempts,
        }

    @app.get(settings.status_path + "/stats")
    def admin_stats():
        return {
            **app.state.stats,
            "dynamic": engine.state.dynamic_count(),
            "banned": engine.state.banned_count(settings.max_attempts),
        }

    @app.api_route("/{full_path:path}", methods=METHODS)
    async def gate_proxy(full_path: str, request: Request):
        try:
            addr = read_client_address(request, settings.trust_headers)
        except ValueError as exc:
            return _bad_address(exc)

        credentials = parse_basic_auth(request.headers.get("authorization"))
        decision = engine.decide(addr, credentials)
        bump_stats(app.state.stats, decision.allowed, decision.reason)

        if not decision.allowed:
            logger.info("denied: addr=%s reason=%s", addr, decision.reason)
            log_event(
                settings.event_log,
                {
                    "timestamp": time.time(),
                    "request_id": str(uuid.uuid4()),
                    "client_ip": str(addr),
                    "method": request.method,
                    "path": str(request.url.path),
                    "action": "DENY",
                    "reason": decision.reason,
                    "matched": decision.matched,
                },
            )
            return _unauthorized(decision.reason)

        body = await request.body()
        return await forward_to_backend(settings, request, body, transport)

    return app
