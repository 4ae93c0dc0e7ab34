#!/usr/bin/env python3
"""Shared service wiring and the Flask application factory for Orvex."""
import logging
from dataclasses import dataclass

from flask import Flask

from orvex.database import OrvexDB
from orvex.middleware.auth import init_auth
from orvex.services.chain import ChainClient
from orvex.services.intents import IntentDispatcher
from orvex.services.jito import default_relays
from orvex.services.jupiter import JupiterClient
from orvex.services.keystore import WalletVault
from orvex.services.pending_actions import PendingActionTracker
from orvex.services.positions import PositionLedger
from orvex.services.router import Router
from orvex.services.trading import SwapExecutor
from orvex.services.user_settings import SettingsStore

logger = logging.getLogger("extensions")


@dataclass
class OrvexCore:
    db: OrvexDB
    vault: WalletVault
    settings: SettingsStore
    ledger: PositionLedger
    pending: PendingActionTracker
    executor: SwapExecutor
    chain: ChainClient
    dispatcher: IntentDispatcher


def build_core(db: OrvexDB = None, chain=None, jupiter=None, relays=None, vault: WalletVault = None) -> OrvexCore:
    """Wire the services together. Anything not passed in uses the configured default."""
    db = db or OrvexDB()
    db.create_tables()
    chain = chain or ChainClient()
    jupiter = jupiter or JupiterClient()
    vault = vault or WalletVault(db)
    settings = SettingsStore(db)
    ledger = PositionLedger(db)
    pending = PendingActionTracker(db, vault)
    router = Router(chain, default_relays() if relays is None else relays)
    executor = SwapExecutor(vault, settings, ledger, jupiter, chain, router)
    dispatcher = IntentDispatcher(vault, settings, ledger, pending, executor, chain)
    return OrvexCore(
        db=db, vault=vault, settings=settings, ledger=ledger, pending=pending,
        executor=executor, chain=chain, dispatcher=dispatcher,
    )


def create_app(core: OrvexCore = None, auth_token: str = None, auth_enabled: bool = None):
    """Application factory."""
    from orvex.routes import api_bp

    app = Flask(__name__)
    app.extensions['orvex'] = core or build_core()

    # SECURITY: Add security headers
    @app.after_request
    def add_security_headers(response):
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Referrer-Policy'] = 'no-referrer'
        # Responses may carry a revealed private key
        response.headers['Cache-Control'] = 'no-store'
        return response

    init_auth(app, token=auth_token, enabled=auth_enabled)
    app.register_blueprint(api_bp)
    return app
