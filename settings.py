"""
Configuration for ip-probe.
Settings are read from the environment (and a local .env file, if present).
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default) == "1"


class Config:
    """Application configuration"""

    # Server settings
    HOST = os.getenv('SERVER_HOST', '0.0.0.0')
    PORT = int(os.getenv('SERVER_PORT', os.getenv('PORT', '8080')))
    SERVICE_VERSION = os.getenv('SERVICE_VERSION', '1.0.0')

    ENVIRONMENT = os.getenv('APP_ENV', 'development')

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Comma-separated origins allowed to call /api/* from a browser
    CORS_ORIGINS = [o.strip() for o in os.getenv(
        'CORS_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000').split(',') if o.strip()]

    # Requests per client address per RATE_LIMIT_WINDOW on /api/*
    RATE_LIMIT_MAX = int(os.getenv('RATE_LIMIT_MAX', '100' if ENVIRONMENT == 'production' else '1000'))
    RATE_LIMIT_WINDOW = os.getenv('RATE_LIMIT_WINDOW', '15 minutes')
    RATE_LIMIT_STORAGE_URI = os.getenv('RATE_LIMIT_STORAGE_URI', 'memory://')

    # Reverse DNS on the primary address (socket lookup, bounded by RDNS_TIMEOUT_MS)
    ENABLE_RDNS = _flag('ENABLE_RDNS', '1')
    RDNS_TIMEOUT_MS = int(os.getenv('RDNS_TIMEOUT_MS', '500'))

    # dnspython resolver lifetime for /api/ip/dns
    DNS_TIMEOUT_SECONDS = float(os.getenv('DNS_TIMEOUT_SECONDS', '3'))

    # Optional MaxMind City/ASN database; the static table is used when unset
    GEOIP_MMDB = os.getenv('GEOIP_MMDB', '')
