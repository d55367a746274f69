"""
Pytest configuration and fixtures
"""
import pytest
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# No live lookups from the test suite
os.environ['ENABLE_RDNS'] = '0'
os.environ['GEOIP_MMDB'] = ''


@pytest.fixture
def app(monkeypatch):
    """Create application instance for testing"""
    from app import app, limiter
    from settings import Config
    monkeypatch.setattr(Config, 'ENABLE_RDNS', False)
    monkeypatch.setattr(Config, 'GEOIP_MMDB', '')
    app.config['TESTING'] = True
    limiter.reset()
    return app


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()
