"""
Moderation module (admin surface).

Scope:
- Pending queue (oldest first)
- APPROVE / REJECT decisions, one ledger row each
- Moderation history with filters

Decisions are final; fan-out to followers runs after commit.
"""
