"""SQLAlchemy Core table definitions for Orvex.

Single source of truth for the database schema.
"""
import sqlalchemy as sa
from sqlalchemy import func

metadata = sa.MetaData()

# Namespaces stored in the records table
WALLET = 'wallet'
SETTINGS = 'settings'
POSITIONS = 'positions'
PENDING_ACTION = 'pending_action'

# ─── Keyed records (wallets, settings, positions, pending actions) ──────────
# One row per (namespace, user_id). `version` is bumped on every write and
# guards read-modify-write cycles against concurrent writers.
records = sa.Table('records', metadata,
    sa.Column('namespace', sa.Text, primary_key=True),
    sa.Column('user_id', sa.Text, primary_key=True),
    sa.Column('value_json', sa.Text, nullable=False),
    sa.Column('version', sa.Integer, nullable=False, server_default='1'),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=func.now()),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=func.now()),
)
