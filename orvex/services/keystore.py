#!/usr/bin/env python3
"""
Per-user custodial wallet storage with PBKDF2 + Fernet encryption.

Each user owns at most one wallet. The 64-byte Solana secret key is
encrypted at rest under a key derived from the server encryption secret and
a per-wallet random salt. Plaintext key material only ever lives inside a
ScopedSigner (one signature) or a SecretExposure (explicit reveal).
"""
import os
import json
import time
import base64
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import base58
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from orvex import config
from orvex.errors import (
    CustodyError,
    InvalidFormatError,
    KeyMismatchError,
    ValidationError,
    WalletExistsError,
    WalletNotFoundError,
)
from orvex.models import WALLET
from orvex.services.audit import AuditEventType, audit_logger

logger = logging.getLogger("keystore")

# Constants
KEYSTORE_VERSION = 1
SALT_SIZE = 32
SECRET_KEY_LENGTH = 64


def _derive_key(secret: str, salt: bytes, iterations: int) -> bytes:
    """Derive encryption key from the server secret using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


def decode_secret_material(secret_material: str) -> Keypair:
    """
    Parse user-supplied secret key material into a Keypair.

    Accepts a base58 string (Phantom / Solflare export) or a solana-keygen
    JSON byte array. The decoded secret must be exactly 64 bytes and its
    public half must match the key derived from its seed.

    Raises:
        InvalidFormatError: On any decoding or consistency failure
    """
    text = (secret_material or "").strip()
    if not text:
        raise InvalidFormatError("Private key is empty")

    try:
        if text.startswith('['):
            raw = bytes(json.loads(text))
        else:
            raw = base58.b58decode(text)
    except (ValueError, TypeError):
        raise InvalidFormatError("Invalid private key. Expected base58 or a JSON byte array.")

    if len(raw) != SECRET_KEY_LENGTH:
        raise InvalidFormatError(
            f"Invalid private key format. Should be {SECRET_KEY_LENGTH} bytes.",
            details={"length": len(raw)}
        )

    keypair = Keypair.from_seed(raw[:32])
    if keypair.pubkey() != Pubkey.from_bytes(raw[32:]):
        raise InvalidFormatError("Invalid private key: public key does not match secret")
    return keypair


@dataclass(frozen=True)
class Wallet:
    """Public view of a stored wallet."""
    user_id: str
    public_key: str
    created_at: str

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "public_key": self.public_key, "created_at": self.created_at}


class ScopedSigner:
    """
    Signs exactly one transaction with a decrypted keypair.

    Obtained through WalletVault.signer(); the keypair reference is dropped
    when the scope exits or after the first signature.
    """

    def __init__(self, keypair: Keypair):
        self._keypair: Optional[Keypair] = keypair
        self._pubkey = keypair.pubkey()
        self.used = False

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    @property
    def public_key(self) -> str:
        return str(self._pubkey)

    def sign_transaction(self, unsigned_tx: bytes) -> bytes:
        """
        Sign a serialized VersionedTransaction whose only signer is this wallet.

        Returns:
            The signed transaction bytes
        """
        if self._keypair is None:
            raise CustodyError("Signer already used or closed")

        try:
            txn = VersionedTransaction.from_bytes(unsigned_tx)
        except Exception as e:
            raise ValidationError(f"Unsigned transaction could not be decoded: {e}")

        message = txn.message
        if message.header.num_required_signatures != 1 or message.account_keys[0] != self._pubkey:
            raise ValidationError(
                "Transaction fee payer does not match wallet",
                details={"expected": self.public_key, "payer": str(message.account_keys[0])}
            )

        signature = self._keypair.sign_message(to_bytes_versioned(message))
        signed = VersionedTransaction.populate(message, [signature])
        self.used = True
        self.close()
        return bytes(signed)

    def close(self):
        self._keypair = None


class SecretExposure:
    """
    A revealed private key with a caller-supplied lifetime.

    The holder (e.g. the chat message showing the key) registers what to do
    on expiry with on_expire(); dismiss() ends the exposure early. The
    callback runs at most once and the secret is dropped afterwards.
    """

    def __init__(self, public_key: str, secret: str, lifetime_seconds: float):
        self.public_key = public_key
        self.secret: Optional[str] = secret
        self.lifetime_seconds = lifetime_seconds
        self.revealed_at = time.time()
        self._callback: Optional[Callable[[], None]] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def expires_at(self) -> float:
        return self.revealed_at + self.lifetime_seconds

    @property
    def expired(self) -> bool:
        return self._closed or time.time() >= self.expires_at

    def on_expire(self, callback: Callable[[], None]) -> "SecretExposure":
        """Schedule ``callback`` for when the lifetime runs out."""
        with self._lock:
            if self._closed:
                raise CustodyError("Exposure already closed")
            self._callback = callback
            remaining = max(0.0, self.expires_at - time.time())
            self._timer = threading.Timer(remaining, self._close)
            self._timer.daemon = True
            self._timer.start()
        return self

    def dismiss(self) -> None:
        """End the exposure now (user tapped "delete now")."""
        self._close()

    def _close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._timer:
                self._timer.cancel()
            callback, self._callback = self._callback, None
            self.secret = None
        if callback:
            callback()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dismiss()

    def to_dict(self) -> dict:
        return {
            "public_key": self.public_key,
            "secret": self.secret,
            "expires_in": max(0, round(self.expires_at - time.time())),
            "expires_at": self.expires_at,
        }


class WalletVault:
    """Custodial per-user wallet store."""

    def __init__(self, db, encryption_key: str = None, iterations: int = None):
        self.db = db
        self._secret = encryption_key if encryption_key is not None else config.ENCRYPTION_KEY
        if not self._secret:
            raise ValueError(
                "ORVEX_ENCRYPTION_KEY not set! Set it in .env (minimum 32 characters) "
                "before storing user wallets."
            )
        self.iterations = iterations or config.KDF_ITERATIONS

    # ─── Encryption ───────────────────────────────────────────────────────

    def _encrypt(self, keypair: Keypair, user_id: str) -> dict:
        salt = os.urandom(SALT_SIZE)
        fernet = Fernet(_derive_key(self._secret, salt, self.iterations))
        encrypted_secret = fernet.encrypt(bytes(keypair))
        return {
            'version': KEYSTORE_VERSION,
            'user_id': user_id,
            'public_key': str(keypair.pubkey()),
            'encrypted_secret': base64.b64encode(encrypted_secret).decode('utf-8'),
            'salt': base64.b64encode(salt).decode('utf-8'),
            'kdf': {
                'algorithm': 'pbkdf2-sha256',
                'iterations': self.iterations
            },
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

    def _decrypt(self, record: dict) -> Keypair:
        user_id = record.get('user_id')
        try:
            salt = base64.b64decode(record['salt'])
            encrypted_secret = base64.b64decode(record['encrypted_secret'])
            iterations = record.get('kdf', {}).get('iterations', self.iterations)
        except (KeyError, ValueError) as e:
            raise CustodyError(f"Stored wallet record is corrupted: {e}")

        fernet = Fernet(_derive_key(self._secret, salt, iterations))
        try:
            secret_bytes = fernet.decrypt(encrypted_secret)
        except InvalidToken:
            audit_logger.log_wallet_event(AuditEventType.KEY_MISMATCH, user_id, record.get('public_key'))
            raise KeyMismatchError(
                "Could not decrypt private key: the encryption key has changed since the wallet was created",
                details={"public_key": record.get('public_key')}
            )

        if len(secret_bytes) != SECRET_KEY_LENGTH:
            raise KeyMismatchError("Decrypted key material has the wrong length")

        keypair = Keypair.from_bytes(secret_bytes)
        if str(keypair.pubkey()) != record.get('public_key'):
            raise KeyMismatchError("Keypair verification failed - pubkey mismatch")
        return keypair

    def _load(self, user_id) -> dict:
        record = self.db.get_record(WALLET, user_id)
        if not record:
            raise WalletNotFoundError("No wallet on file", details={"user_id": str(user_id)})
        return record

    def _store_new(self, user_id: str, keypair: Keypair) -> Wallet:
        record = self._encrypt(keypair, user_id)
        if not self.db.insert_record_if_absent(WALLET, user_id, record):
            raise WalletExistsError("A wallet already exists for this user")
        return Wallet(user_id=user_id, public_key=record['public_key'], created_at=record['created_at'])

    def _ensure_absent(self, user_id: str):
        existing = self.db.get_record(WALLET, user_id)
        if existing:
            raise WalletExistsError(
                "A wallet already exists for this user",
                details={"public_key": existing.get('public_key')}
            )

    # ─── Operations ───────────────────────────────────────────────────────

    def get_wallet(self, user_id) -> Optional[Wallet]:
        record = self.db.get_record(WALLET, user_id)
        if not record:
            return None
        return Wallet(user_id=str(user_id), public_key=record['public_key'], created_at=record['created_at'])

    def generate(self, user_id) -> Wallet:
        """Create a fresh keypair for a user without a wallet."""
        user_id = str(user_id)
        self._ensure_absent(user_id)
        wallet = self._store_new(user_id, Keypair())
        audit_logger.log_wallet_event(AuditEventType.WALLET_CREATED, user_id, wallet.public_key)
        logger.info(f"Wallet created for user {user_id}: {wallet.public_key}")
        return wallet

    def import_wallet(self, user_id, secret_material: str) -> Wallet:
        """Import an existing secret key for a user without a wallet."""
        user_id = str(user_id)
        self._ensure_absent(user_id)
        try:
            keypair = decode_secret_material(secret_material)
        except InvalidFormatError as e:
            audit_logger.log_wallet_event(AuditEventType.WALLET_IMPORT_FAILED, user_id, reason=e.message)
            raise
        wallet = self._store_new(user_id, keypair)
        audit_logger.log_wallet_event(AuditEventType.WALLET_IMPORTED, user_id, wallet.public_key)
        logger.info(f"Wallet imported for user {user_id}: {wallet.public_key}")
        return wallet

    @contextmanager
    def signer(self, user_id):
        """
        Decrypt a user's key for a single signing operation.

        Raises:
            WalletNotFoundError: If the user has no wallet
            KeyMismatchError: If the wallet cannot be decrypted with the current secret
        """
        scoped = ScopedSigner(self._decrypt(self._load(user_id)))
        try:
            yield scoped
        finally:
            scoped.close()

    def reveal(self, user_id, lifetime_seconds: float = None) -> SecretExposure:
        """
        Decrypt a user's key for display.

        The returned exposure recommends how long the UI may keep it; the
        vault does not track it.
        """
        record = self._load(user_id)
        keypair = self._decrypt(record)
        lifetime = lifetime_seconds if lifetime_seconds is not None else config.SECRET_REVEAL_SECONDS
        audit_logger.log_wallet_event(
            AuditEventType.SECRET_REVEALED, user_id, record['public_key'], lifetime_seconds=lifetime
        )
        return SecretExposure(
            public_key=record['public_key'],
            secret=base58.b58encode(bytes(keypair)).decode('utf-8'),
            lifetime_seconds=lifetime,
        )

    def delete(self, user_id) -> bool:
        """Remove a user's wallet. Returns True if one existed."""
        existed = self.db.delete_record(WALLET, user_id)
        if existed:
            audit_logger.log_wallet_event(AuditEventType.WALLET_DELETED, user_id)
            logger.info(f"Deleted wallet for user {user_id}")
        return existed
