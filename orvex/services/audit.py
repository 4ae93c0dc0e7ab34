#!/usr/bin/env python3
"""
Security Audit Logging Service for Orvex.

Provides centralized logging of security-relevant events including:
- Wallet custody (create, import, reveal, delete, key mismatch)
- Settings changes
- Trade executions, rejections and ambiguous outcomes
- Relay fallbacks and withdrawals
"""
import os
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from enum import Enum
from logging.handlers import RotatingFileHandler

# Configuration
AUDIT_LOG_DIR = os.getenv('ORVEX_AUDIT_LOG_DIR', 'logs')
AUDIT_LOG_FILE = os.getenv('ORVEX_AUDIT_LOG_FILE', 'audit.log')
AUDIT_LOG_MAX_BYTES = int(os.getenv('ORVEX_AUDIT_LOG_MAX_BYTES', str(10 * 1024 * 1024)))  # 10MB
AUDIT_LOG_BACKUP_COUNT = int(os.getenv('ORVEX_AUDIT_LOG_BACKUP_COUNT', '5'))
AUDIT_LOG_ENABLED = os.getenv('ORVEX_AUDIT_ENABLED', 'true').lower() == 'true'


class AuditEventType(Enum):
    """Types of security events."""
    # Custody
    WALLET_CREATED = "wallet.created"
    WALLET_IMPORTED = "wallet.imported"
    WALLET_IMPORT_FAILED = "wallet.import.failed"
    WALLET_DELETED = "wallet.deleted"
    SECRET_REVEALED = "wallet.secret.revealed"
    KEY_MISMATCH = "wallet.key_mismatch"

    # Configuration
    SETTINGS_CHANGED = "config.settings.changed"

    # Trading
    TRADE_EXECUTED = "trade.executed"
    TRADE_BLOCKED = "trade.blocked"
    TRADE_FAILED = "trade.failed"
    TRADE_TIMEOUT = "trade.timeout"
    TRADE_IN_PROGRESS = "trade.in_progress"
    RELAY_FALLBACK = "trade.relay.fallback"
    WITHDRAWAL_EXECUTED = "wallet.withdrawal.executed"

    # Security
    AUTH_FAILED = "security.auth.failed"

    # System
    SYSTEM_START = "system.start"
    SYSTEM_ERROR = "system.error"


class AuditLogger:
    """
    Security audit logger with structured JSON output.

    Thread-safe singleton that writes to a dedicated audit log file.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize the audit logger."""
        self._enabled = AUDIT_LOG_ENABLED

        if not self._enabled:
            return

        # Create log directory
        log_dir = Path(AUDIT_LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)

        # Set up dedicated audit logger
        self._logger = logging.getLogger('orvex.audit')
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False  # Don't propagate to root logger

        # Rotating file handler
        log_path = log_dir / AUDIT_LOG_FILE
        handler = RotatingFileHandler(
            log_path,
            maxBytes=AUDIT_LOG_MAX_BYTES,
            backupCount=AUDIT_LOG_BACKUP_COUNT
        )
        handler.setFormatter(logging.Formatter('%(message)s'))
        self._logger.addHandler(handler)

        # Also add console handler for critical events
        console = logging.StreamHandler()
        console.setLevel(logging.WARNING)
        console.setFormatter(logging.Formatter('[AUDIT] %(message)s'))
        self._logger.addHandler(console)

    def log(
        self,
        event_type: AuditEventType,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "info",
        user: Optional[str] = None,
    ) -> None:
        """
        Log a security audit event.

        Args:
            event_type: Type of security event
            details: Additional event details (never key material)
            severity: Event severity (info, warning, error, critical)
            user: Front end user id associated with the event
        """
        if not self._enabled:
            return

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "severity": severity,
            "user": user,
            "details": details or {}
        }

        # Log as JSON
        json_line = json.dumps(event, default=str)
        self._logger.log(
            self._get_log_level(severity),
            json_line
        )

    def _get_log_level(self, severity: str) -> int:
        """Map severity string to logging level."""
        return {
            "info": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.INFO)

    # Convenience methods for common events
    def log_wallet_event(self, event_type: AuditEventType, user, public_key: str = None, **details):
        """Log a custody event for a user's wallet."""
        severity = "warning" if event_type in (
            AuditEventType.SECRET_REVEALED,
            AuditEventType.KEY_MISMATCH,
            AuditEventType.WALLET_IMPORT_FAILED,
        ) else "info"
        self.log(
            event_type,
            details={"public_key": public_key, **details},
            severity=severity,
            user=str(user)
        )

    def log_trade(
        self,
        input_mint: str,
        output_mint: str,
        amount: float,
        route: str,
        signature: str = None,
        user: str = None
    ):
        """Log trade execution."""
        self.log(
            AuditEventType.TRADE_EXECUTED,
            details={
                "input_mint": input_mint,
                "output_mint": output_mint,
                "amount": amount,
                "route": route,
                "signature": signature
            },
            severity="info",
            user=user
        )

    def log_trade_blocked(
        self,
        input_mint: str,
        output_mint: str,
        amount: float,
        code: str,
        reason: str,
        user: str = None
    ):
        """Log a trade rejected by the risk gate."""
        self.log(
            AuditEventType.TRADE_BLOCKED,
            details={
                "input_mint": input_mint,
                "output_mint": output_mint,
                "amount": amount,
                "code": code,
                "reason": reason
            },
            severity="warning",
            user=user
        )

    def log_trade_failed(self, code: str, message: str, signature: str = None, user: str = None):
        """Log a trade that failed after it was built."""
        event_type = AuditEventType.TRADE_TIMEOUT if code == "CONFIRMATION_TIMEOUT" else AuditEventType.TRADE_FAILED
        self.log(
            event_type,
            details={"code": code, "message": message, "signature": signature},
            severity="error" if event_type is AuditEventType.TRADE_TIMEOUT else "warning",
            user=user
        )

    def log_relay_fallback(self, endpoints: list, errors: Dict[str, str]):
        """Log protected submission falling back to direct RPC."""
        self.log(
            AuditEventType.RELAY_FALLBACK,
            details={"endpoints": endpoints, "errors": errors},
            severity="warning"
        )

    def log_system_start(self, version: str):
        """Log system startup."""
        self.log(
            AuditEventType.SYSTEM_START,
            details={"version": version},
            severity="info"
        )

    def log_system_error(self, error: str, context: Dict = None):
        """Log system error."""
        self.log(
            AuditEventType.SYSTEM_ERROR,
            details={"error": error, "context": context},
            severity="error"
        )


# Singleton instance
audit_logger = AuditLogger()


def audit_log(
    event_type: AuditEventType,
    details: Optional[Dict[str, Any]] = None,
    severity: str = "info",
    user: Optional[str] = None,
) -> None:
    """Convenience function for audit logging."""
    audit_logger.log(event_type, details, severity, user)
