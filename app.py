#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations
import json
import time
import uuid
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, Response, abort, g, jsonify, make_response, render_template, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from settings import Config
from resolver import (CLASS_LOOPBACK, CLASS_PRIVATE, CLASS_PUBLIC, CLASS_RESERVED, CandidateAddress,
                      InvalidAddress, NoAddressDetected, ResolvedConnection, classify, parse_address,
                      resolve_connection)
from subnet import SubnetError, calculate_subnet, ip_details
from enrichment import analyze_dns, assess_security, fingerprint_request, geolocate, reverse_dns

logging.basicConfig(level=Config.LOG_LEVEL,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# ----------------------------- Base paths -----------------------------
BASE_DIR = Path(__file__).resolve().parent
SERVICE_NAME = "ip-probe"
START_TIME = time.time()

app = Flask(__name__, template_folder=str(BASE_DIR / "templates"))

# Headers echoed back in the connection summary; everything else stays private.
SAFE_HEADERS = (
    "User-Agent", "Accept", "Accept-Language", "Accept-Encoding", "Cache-Control",
    "Connection", "DNT", "Upgrade-Insecure-Requests",
)

# ----------------------------- Request lifecycle -----------------------------

def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

@app.before_request
def _start_request():
    g.t0 = time.time()
    g.request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())

@app.after_request
def _finish_request(resp: Response) -> Response:
    rid = getattr(g, "request_id", "")
    resp.headers['X-Request-Id'] = rid
    resp.headers['Server'] = SERVICE_NAME
    resp.headers['Content-Security-Policy'] = "default-src 'self'; style-src 'self' 'unsafe-inline'"
    elapsed = round((time.time() - getattr(g, "t0", time.time())) * 1000, 2)
    logger.info("%s %s -> %s in %sms [request_id=%s]", request.method, request.path, resp.status_code, elapsed, rid)
    return resp

# ----------------------------- CORS & rate limiting -----------------------------

CORS(app, resources={r"/api/*": {"origins": Config.CORS_ORIGINS}}, supports_credentials=True)

def _client_key() -> str:
    """Rate-limit bucket: the resolved client address, else the socket peer."""
    try:
        return resolve_connection(request.remote_addr, request.headers).primary.address
    except NoAddressDetected:
        return get_remote_address() or "unknown"

limiter = Limiter(_client_key, app=app, storage_uri=Config.RATE_LIMIT_STORAGE_URI, strategy="fixed-window",
                  headers_enabled=True)
api_limit = limiter.shared_limit(lambda: f"{Config.RATE_LIMIT_MAX} per {Config.RATE_LIMIT_WINDOW}", scope="api")

# ----------------------------- Envelopes & errors -----------------------------

def _ok(data: Any, status: int = 200) -> Response:
    return make_response(jsonify({"success": True, "data": data, "timestamp": _now_iso()}), status)

def _fail(status: int, error: str, message: str) -> Response:
    return make_response(jsonify({"success": False, "error": error, "message": message, "timestamp": _now_iso()}), status)

@app.errorhandler(NoAddressDetected)
def _no_address(exc: NoAddressDetected):
    logger.error("client IP resolution failed for request %s: %s (remote_addr=%r)",
                 getattr(g, "request_id", ""), exc, request.remote_addr)
    return _fail(500, "Unable to determine client IP", str(exc))

@app.errorhandler(InvalidAddress)
def _invalid_address(exc: InvalidAddress):
    logger.warning("rejected address: %s", exc)
    return _fail(400, "Invalid IP address", str(exc))

@app.errorhandler(SubnetError)
def _subnet_error(exc: SubnetError):
    logger.warning("subnet calculation rejected: %s", exc)
    return _fail(400, "Subnet calculation failed", str(exc))

@app.errorhandler(RateLimitExceeded)
def _rate_limited(exc: RateLimitExceeded):
    logger.warning("rate limit exceeded for %s (%s)", _client_key(), exc.description)
    return _fail(429, "Too many requests from this IP, please try again later.", f"Limit: {exc.description}")

@app.errorhandler(HTTPException)
def _http_error(exc: HTTPException):
    return _fail(exc.code or 500, exc.name, exc.description or "")

@app.errorhandler(Exception)
def _unexpected_error(exc: Exception):
    logger.exception("unhandled error on %s %s [request_id=%s]", request.method, request.path,
                     getattr(g, "request_id", ""))
    return _fail(500, "Internal Server Error", "An unexpected error occurred")

def _require_arg(name: str, hint: str) -> str:
    val = (request.args.get(name) or "").strip()
    if not val:
        abort(400, description=f'Please provide {hint} in the "{name}" query parameter')
    return val

def _require_ip_arg(name: str = "ip") -> str:
    val = _require_arg(name, "a valid IP address")
    ip = parse_address(val)
    if ip is None:
        raise InvalidAddress(f"Invalid IP address: {val}")
    return ip.compressed

# ----------------------------- Analysis builders -----------------------------

def _resolve() -> ResolvedConnection:
    return resolve_connection(request.remote_addr, request.headers)

def _connection_properties() -> Dict[str, Any]:
    secure = bool(request.is_secure)
    port = request.environ.get("SERVER_PORT")
    return {
        "protocol": "HTTPS" if secure else "HTTP",
        "port": int(port) if str(port or "").isdigit() else (443 if secure else 80),
        "encrypted": secure,
        "userAgent": request.headers.get("User-Agent"),
        "acceptLanguage": request.headers.get("Accept-Language"),
        "acceptEncoding": request.headers.get("Accept-Encoding"),
        "dnt": request.headers.get("DNT") == "1",
        "headers": {h.lower(): v for h in SAFE_HEADERS if (v := request.headers.get(h))},
    }

def _enrich(address: str, headers=None) -> Dict[str, Any]:
    details = ip_details(address)
    geo, net = geolocate(address)
    sec = assess_security(net, headers)
    rdns = reverse_dns(address, timeout_ms=Config.RDNS_TIMEOUT_MS) if Config.ENABLE_RDNS else None
    return {
        "geolocation": geo.to_dict(),
        "network": net.to_dict(),
        "security": sec.to_dict(),
        "technical": {"subnet": details.subnet, "cidr": details.cidr, "reverseDNS": rdns},
    }

def build_analysis(resolved: Optional[ResolvedConnection] = None) -> Dict[str, Any]:
    resolved = resolved or _resolve()
    primary = resolved.primary
    ip_block = {**resolved.to_dict(), **_enrich(primary.address, request.headers)}
    logger.info("resolved client %s via %s (%d candidates) [request_id=%s]",
                primary.address, primary.origin, len(resolved.candidates), g.request_id)
    return {"ip": ip_block, "connection": _connection_properties(),
            "timestamp": _now_iso(), "requestId": g.request_id}

def _candidate_with_details(c: CandidateAddress) -> Dict[str, Any]:
    d = ip_details(c.address).to_dict()
    return {**c.to_dict(), "details": {k: d.get(k) for k in ("binary", "decimal", "subnet", "cidr", "range")}}

def _summary(candidates: List[CandidateAddress]) -> Dict[str, Any]:
    confidences = [c.confidence for c in candidates]
    return {
        "totalIPsDetected": len(candidates),
        "publicIPs": sum(1 for c in candidates if c.classification == CLASS_PUBLIC),
        "privateIPs": sum(1 for c in candidates if c.classification == CLASS_PRIVATE),
        "sources": list(dict.fromkeys(c.origin for c in candidates)),
        "highestConfidence": max(confidences),
        "lowestConfidence": min(confidences),
    }

# ----------------------------- Format negotiation -----------------------------

def _preferred_format() -> str:
    fmt = (request.args.get('format') or '').lower()
    if fmt in ('json', 'html'): return fmt
    accept = request.headers.get('Accept', '')
    ua = (request.headers.get('User-Agent', '') or '').lower()
    cli_markers = ('curl/', 'wget/', 'httpie', 'python-requests', 'aiohttp', 'okhttp', 'node-fetch', 'axios', 'powershell', 'go-http-client')
    if any(m in ua for m in cli_markers): return 'json'
    if 'application/json' in accept and 'text/html' not in accept: return 'json'
    if 'text/html' in accept or any(b in ua for b in ('mozilla', 'safari', 'chrome', 'edg')): return 'html'
    return 'json'

# ----------------------------- Endpoints -----------------------------

@app.route("/", methods=["GET"])
def root():
    payload = build_analysis()
    if _preferred_format() == 'html':
        fp = fingerprint_request(request.headers, secure=bool(request.is_secure))
        raw_json = json.dumps(payload, ensure_ascii=False, indent=2)
        return make_response(render_template("dashboard.html", analysis=payload, fingerprint=fp.to_dict(),
                                             raw_json=raw_json, service_version=Config.SERVICE_VERSION))
    return _ok(payload)

@app.route("/api", methods=["GET"])
@app.route("/api/", methods=["GET"])
@api_limit
def api_info():
    return jsonify({
        "name": "IP Probe API",
        "version": Config.SERVICE_VERSION,
        "description": "Network and client IP analysis API",
        "endpoints": {
            "health": "/health",
            "ipAnalysis": "/api/ip",
            "detailed": "/api/ip/detailed",
            "analyze": "/api/ip/analyze?ip=",
            "subnet": "/api/ip/subnet?ip=&mask=",
            "classify": "/api/ip/classify?ip=",
            "fingerprint": "/api/ip/fingerprint",
            "dns": "/api/ip/dns?ip=",
        },
        "features": ["Multi-source IP detection", "Local geolocation table", "Heuristic security assessment",
                     "User-agent fingerprinting", "Reverse DNS"],
        "timestamp": _now_iso(),
    })

@app.route("/api/ip", methods=["GET"])
@api_limit
def current_ip():
    return _ok(build_analysis())

@app.route("/api/ip/detailed", methods=["GET"])
@api_limit
def detailed_analysis():
    resolved = _resolve()
    analysis = build_analysis(resolved)
    analysis["ip"]["allDetectedIPs"] = [_candidate_with_details(c) for c in resolved.candidates]
    analysis["metadata"] = _summary(list(resolved.candidates))
    return _ok(analysis)

@app.route("/api/ip/analyze", methods=["GET"])
@api_limit
def analyze_specific_ip():
    address = _require_ip_arg()
    details = ip_details(address)
    entry = {"address": details.address, "version": details.version, "type": details.type,
             "source": "query-parameter", "confidence": 100}
    enrichment = _enrich(address)
    enrichment["technical"].update({"binary": details.binary, "decimal": details.decimal, "range": details.range})
    return _ok({"ip": {"primaryIP": entry, "allDetectedIPs": [entry], **enrichment},
                "requestId": g.request_id, "timestamp": _now_iso()})

@app.route("/api/ip/subnet", methods=["GET"])
@api_limit
def subnet_calc():
    address = _require_arg("ip", "a valid IP address")
    mask = _require_arg("mask", "a subnet mask or CIDR prefix")
    info = calculate_subnet(address, mask)
    logger.info("subnet %s mask %s -> %s", address, mask, info.cidr)
    return _ok({"input": {"ip": address, "mask": mask, "subnetMask": info.subnet_mask}, "subnet": info.to_dict()})

@app.route("/api/ip/classify", methods=["GET"])
@api_limit
def classify_ip():
    address = _require_arg("ip", "a valid IP address")
    kind = classify(address)
    return _ok({
        "ip": address,
        "classification": kind,
        "details": ip_details(address).to_dict(),
        "isPublic": kind == CLASS_PUBLIC,
        "isPrivate": kind == CLASS_PRIVATE,
        "isReserved": kind == CLASS_RESERVED,
        "isLoopback": kind == CLASS_LOOPBACK,
    })

def _target_or_primary() -> str:
    if request.args.get("ip"): return _require_ip_arg()
    return _resolve().primary.address

@app.route("/api/ip/fingerprint", methods=["GET"])
@api_limit
def fingerprint():
    address = _target_or_primary()
    fp = fingerprint_request(request.headers, secure=bool(request.is_secure))
    logger.info("fingerprint for %s: browser=%s os=%s device=%s", address, fp.browser, fp.os, fp.device_type)
    return _ok({"ipAddress": address, "fingerprint": fp.to_dict()})

@app.route("/api/ip/dns", methods=["GET"])
@api_limit
def dns_lookup():
    return _ok(analyze_dns(_target_or_primary()).to_dict())

@app.route('/ip', methods=['GET'])
def client_ip():
    return Response(_resolve().primary.address + "\n", mimetype='text/plain')

@app.route("/health", methods=["GET"])
def health():
    return jsonify({
        "status": "healthy",
        "timestamp": _now_iso(),
        "uptime": round(time.time() - START_TIME, 3),
        "environment": Config.ENVIRONMENT,
        "version": Config.SERVICE_VERSION,
    })

@app.route("/healthz", methods=["GET", "HEAD"])
def healthz():
    return Response("ok", mimetype="text/plain")

if __name__ == "__main__":
    app.run(host=Config.HOST, port=Config.PORT)
