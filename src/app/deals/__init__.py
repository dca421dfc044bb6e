"""Deal management module -- negotiation, escrow and audit for advertiser/creator deals.

Provides SQLAlchemy models (deals, terms versions, invoices, escrow
milestones, audit log, files), Pydantic schemas (typed terms, read models),
the pure transition table (state_machine), and DealLifecycleManager
(lifecycle), the single entry point that turns commands into committed
state plus an audit trail.
"""
