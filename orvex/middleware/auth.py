#!/usr/bin/env python3
"""
API Token Authentication Middleware for Orvex.

The bot front end is the only client. It authenticates every request with
a shared token in the X-Orvex-Token header.

Flow:
1. ORVEX_API_TOKEN is used if set; otherwise a random token is generated on
   first startup and saved to .api_token
2. The front end reads the same token and sends it with every request
3. Requests without a matching token get 401 before reaching any route
"""
import os
import secrets
import hashlib
import logging
from pathlib import Path
from typing import Optional

from flask import request, jsonify

from orvex.services.audit import AuditEventType, audit_log

logger = logging.getLogger("auth")

# Configuration
AUTH_ENABLED = os.getenv('ORVEX_AUTH_ENABLED', 'true').lower() == 'true'
AUTH_TOKEN_FILE = os.getenv('ORVEX_API_TOKEN_FILE', '.api_token')
AUTH_HEADER = 'X-Orvex-Token'

# Paths that don't require authentication
PUBLIC_PATHS = {
    '/api/health',
}

# Global state
_auth_token_hash: Optional[str] = None


def _hash_token(token: str) -> str:
    """Hash a token for secure comparison."""
    return hashlib.sha256(token.encode()).hexdigest()


def _get_or_create_auth_token(base_dir: str) -> str:
    """Get the configured token, the stored one, or create a new one."""
    token = os.getenv('ORVEX_API_TOKEN', '').strip()
    if token:
        return token

    token_path = Path(base_dir) / AUTH_TOKEN_FILE
    if token_path.exists():
        token = token_path.read_text().strip()
        if token:
            logger.info(f"Loaded API token from {token_path}")
            return token

    token = secrets.token_urlsafe(32)

    # Write with restricted permissions
    token_path.write_text(token)
    token_path.chmod(0o600)
    logger.info(f"Generated new API token at {token_path}")
    return token


def init_auth(app, base_dir: str = None, token: str = None, enabled: bool = None):
    """
    Initialize authentication middleware.

    Args:
        app: Flask application instance
        base_dir: Directory for the token file
        token: Explicit token (skips env and file lookup)
        enabled: Override ORVEX_AUTH_ENABLED
    """
    global _auth_token_hash

    if enabled is None:
        enabled = AUTH_ENABLED
    if not enabled:
        logger.warning("Authentication is DISABLED (ORVEX_AUTH_ENABLED=false)")
        return

    if base_dir is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    _auth_token_hash = _hash_token(token or _get_or_create_auth_token(base_dir))

    @app.before_request
    def check_auth():
        if request.path in PUBLIC_PATHS:
            return None

        provided = request.headers.get(AUTH_HEADER, '')
        if not provided:
            return jsonify({'error': 'Authentication required', 'code': 'AUTH_REQUIRED'}), 401

        if not verify_auth_token(provided):
            audit_log(
                AuditEventType.AUTH_FAILED,
                details={'path': request.path, 'remote_addr': request.remote_addr},
                severity='warning'
            )
            return jsonify({'error': 'Invalid token', 'code': 'INVALID_TOKEN'}), 401

        return None

    logger.info("Authentication middleware initialized")


def verify_auth_token(token: str) -> bool:
    """Verify the provided token matches the configured API token."""
    if not _auth_token_hash:
        return False
    return secrets.compare_digest(_hash_token(token), _auth_token_hash)
